"""
Escalation hand-off.

When a turn ends in ESCALATE the service notifies a handler with
{sessionId, tenantId, reason}. The caller has already been told they are being
transferred, so a failed notification is logged and reported, not raised.
"""

from dataclasses import dataclass
from typing import Optional, Protocol

import httpx
import structlog

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class EscalationRequest:
    session_id: str
    tenant_id: str
    reason: str
    last_prompt: Optional[str] = None

    def to_payload(self) -> dict:
        payload = {
            "sessionId": self.session_id,
            "tenantId": self.tenant_id,
            "reason": self.reason,
        }
        if self.last_prompt:
            payload["lastPrompt"] = self.last_prompt
        return payload


class EscalationHandler(Protocol):
    async def escalate(self, request: EscalationRequest) -> bool: ...


class LoggingEscalationHandler:
    """Default handler: records the transfer request in the log stream."""

    async def escalate(self, request: EscalationRequest) -> bool:
        logger.warning(
            "Escalation requested",
            session_id=request.session_id,
            tenant_id=request.tenant_id,
            reason=request.reason,
        )
        return True


class WebhookEscalationHandler:
    """POSTs the escalation payload to a transfer webhook."""

    def __init__(self, url: str, *, timeout: float = 5.0, client: Optional[httpx.AsyncClient] = None):
        self.url = url
        self.timeout = timeout
        self._client = client

    async def escalate(self, request: EscalationRequest) -> bool:
        payload = request.to_payload()
        try:
            if self._client is not None:
                response = await self._client.post(self.url, json=payload, timeout=self.timeout)
            else:
                async with httpx.AsyncClient() as client:
                    response = await client.post(self.url, json=payload, timeout=self.timeout)
        except httpx.RequestError as e:
            logger.error(
                "Escalation webhook unreachable",
                session_id=request.session_id,
                url=self.url,
                error=str(e),
            )
            return False

        if response.status_code >= 400:
            logger.error(
                "Escalation webhook rejected request",
                session_id=request.session_id,
                status=response.status_code,
                body=response.text[:200],
            )
            return False

        logger.info(
            "Escalation delivered",
            session_id=request.session_id,
            tenant_id=request.tenant_id,
            reason=request.reason,
        )
        return True


def create_escalation_handler(config) -> EscalationHandler:
    if config.escalation_webhook_url:
        return WebhookEscalationHandler(
            config.escalation_webhook_url, timeout=config.escalation_timeout_seconds
        )
    return LoggingEscalationHandler()
