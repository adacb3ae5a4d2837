"""
FastAPI server for the front desk turn engine.

Endpoints:
- GET /health: Health check
- GET /metrics: JSON metrics
- POST /turn: Process one caller utterance and return the agent reply
- POST /tenants/{tenant_id}/invalidate: Drop a tenant's cached scenario pool
"""

import sys
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Dict, Any, Optional
import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
import structlog
import uvicorn

from src.frontdesk.config import get_config, init_config, ConfigError
from src.frontdesk.engine import TurnAction
from src.frontdesk.errors import StateMismatchError, TenantConfigError
from src.frontdesk.models import Mode
from src.frontdesk.service import TurnRequest, TurnService


# Initialize structured logging
def configure_logging(log_level: str = "INFO") -> None:
    """Configure structured logging."""
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.processors.JSONRenderer() if log_level != "DEBUG" else structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    # Set log level
    logging.basicConfig(
        format="%(message)s",
        level=getattr(logging, log_level.upper(), logging.INFO),
    )

logger = structlog.get_logger(__name__)

HANDOFF_REPLY = "I'm sorry, I'm having trouble right now. Let me connect you with someone who can help."


@dataclass
class ServerMetrics:
    """Server-wide metrics."""
    start_time: float = field(default_factory=time.time)
    total_turns: int = 0
    escalations: int = 0
    no_match: int = 0
    repeated_prompts: int = 0
    completed_flows: int = 0
    errors: int = 0
    total_latency_ms: float = 0.0

    def record(self, action: TurnAction, latency_ms: float) -> None:
        self.total_turns += 1
        self.total_latency_ms += latency_ms
        if action == TurnAction.ESCALATE:
            self.escalations += 1
        elif action == TurnAction.NO_MATCH:
            self.no_match += 1
        elif action == TurnAction.REPEAT_LAST_PROMPT:
            self.repeated_prompts += 1
        elif action in (TurnAction.BOOKING_COMPLETE, TurnAction.MESSAGE_TAKEN):
            self.completed_flows += 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            "uptime_seconds": round(time.time() - self.start_time, 2),
            "total_turns": self.total_turns,
            "escalations": self.escalations,
            "no_match": self.no_match,
            "repeated_prompts": self.repeated_prompts,
            "completed_flows": self.completed_flows,
            "errors": self.errors,
            "avg_turn_latency_ms": round(self.total_latency_ms / self.total_turns, 2) if self.total_turns else 0.0,
        }


# Global metrics
metrics = ServerMetrics()


class TurnPayload(BaseModel):
    """Inbound turn from the telephony webhook."""

    model_config = ConfigDict(populate_by_name=True)

    tenant_id: str = Field(alias="tenantId", min_length=1)
    session_id: str = Field(alias="sessionId", min_length=1)
    utterance_text: str = Field(default="", alias="utteranceText")
    caller_phone: Optional[str] = Field(default=None, alias="callerPhone")
    mode: Optional[Mode] = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    # Startup
    logger.info("Starting front desk turn server...")

    try:
        # Initialize and validate configuration
        config = init_config()
        configure_logging(config.log_level)

        app.state.service = TurnService.from_config(config)

        logger.info(
            "Server ready",
            port=config.port,
            public_host=config.public_host,
            config_dir=config.config_dir,
            state_store=config.state_store,
        )

    except ConfigError as e:
        logger.error("Configuration error", error=str(e))
        sys.exit(1)
    except SystemExit:
        raise
    except Exception as e:
        logger.error("Startup failed", error=str(e))
        sys.exit(1)

    yield

    # Shutdown
    logger.info("Shutting down server...")
    await app.state.service.close()


# Create FastAPI app
app = FastAPI(
    title="Front Desk Turn Engine",
    description="Deterministic turn processing for phone AI agents",
    version="1.0.0",
    lifespan=lifespan,
)


@app.get("/health")
async def health_check() -> JSONResponse:
    """Health check endpoint."""
    return JSONResponse(
        content={
            "status": "healthy",
            "timestamp": time.time(),
            "total_turns": metrics.total_turns,
        }
    )


@app.get("/metrics")
async def get_metrics(request: Request) -> JSONResponse:
    """Metrics endpoint."""
    content = metrics.to_dict()
    service: Optional[TurnService] = getattr(request.app.state, "service", None)
    if service is not None:
        content["scenario_pools"] = service.pools.stats()
    return JSONResponse(content=content)


@app.post("/turn")
async def process_turn(payload: TurnPayload, request: Request) -> JSONResponse:
    """Process one caller utterance."""
    service: TurnService = request.app.state.service
    started = time.perf_counter()

    try:
        response = await service.handle_turn(
            TurnRequest(
                tenant_id=payload.tenant_id,
                session_id=payload.session_id,
                utterance=payload.utterance_text,
                caller_phone=payload.caller_phone,
                mode=payload.mode,
            )
        )
    except TenantConfigError as e:
        logger.warning("Tenant configuration error", tenant_id=payload.tenant_id, error=str(e))
        metrics.errors += 1
        return JSONResponse(status_code=404, content={"error": "tenant configuration unavailable"})
    except StateMismatchError as e:
        logger.error("State mismatch", tenant_id=payload.tenant_id, session_id=payload.session_id, error=str(e))
        metrics.errors += 1
        return JSONResponse(status_code=409, content={"error": str(e)})

    latency_ms = (time.perf_counter() - started) * 1000
    metrics.record(response.action, latency_ms)

    content: Dict[str, Any] = {
        "replyText": response.reply_text,
        "nextStateBlob": response.next_state_blob.decode("utf-8") if response.next_state_blob else None,
        "action": response.action.value,
    }
    if response.escalation_reason:
        content["escalationReason"] = response.escalation_reason
    return JSONResponse(content=content)


@app.post("/tenants/{tenant_id}/invalidate")
async def invalidate_tenant(tenant_id: str, request: Request) -> JSONResponse:
    """Drop the cached scenario pool so the next turn sees configuration edits."""
    service: TurnService = request.app.state.service
    dropped = service.invalidate(tenant_id)
    return JSONResponse(content={"tenantId": tenant_id, "invalidated": dropped})


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Global exception handler."""
    logger.error(
        "Unhandled exception",
        path=request.url.path,
        error=str(exc),
        exc_info=exc,
    )
    metrics.errors += 1

    if request.url.path == "/turn":
        # The caller is on the line: never answer with silence.
        return JSONResponse(
            status_code=200,
            content={
                "replyText": HANDOFF_REPLY,
                "nextStateBlob": None,
                "action": TurnAction.ESCALATE.value,
                "escalationReason": "internal_error",
            },
        )
    return JSONResponse(
        status_code=500,
        content={"error": "Internal server error"},
    )


def main() -> None:
    """Run the server."""
    try:
        config = get_config()
    except Exception:
        # Use defaults if config fails
        config = type('Config', (), {'port': 7860, 'log_level': 'INFO'})()

    configure_logging(getattr(config, 'log_level', 'INFO'))

    logger.info(
        "Starting server",
        port=getattr(config, 'port', 7860),
    )

    uvicorn.run(
        "server.app:app",
        host="0.0.0.0",
        port=getattr(config, 'port', 7860),
        log_level=getattr(config, 'log_level', 'INFO').lower(),
        reload=False,
    )


if __name__ == "__main__":
    main()
