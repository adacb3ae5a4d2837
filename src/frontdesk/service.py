"""
Turn service: the I/O boundary around the pure engine.

handle_turn():
1. load the state blob for (tenant, session)
2. resolve tenant config and the cached scenario pool
3. run ConversationEngine.process_turn
4. save the new blob
5. hand off to the escalation handler when the turn newly escalated

If the save fails, nothing advances: the previous prompt is repeated and the
previous blob is returned unchanged.
"""

from dataclasses import dataclass
from typing import Optional

import structlog

from src.frontdesk.config_source import ConfigSource, FileConfigSource
from src.frontdesk.engine import ConversationEngine, TenantContext, TurnAction
from src.frontdesk.errors import StateDecodeError, StatePersistenceFailure
from src.frontdesk.escalation import (
    EscalationHandler,
    EscalationRequest,
    LoggingEscalationHandler,
    create_escalation_handler,
)
from src.frontdesk.models import Mode
from src.frontdesk.scenarios import ScenarioPoolCache
from src.frontdesk.state import ConversationState, decode_state, encode_state
from src.frontdesk.store import StateStore, create_state_store

logger = structlog.get_logger(__name__)

REPEAT_FALLBACK = "I'm sorry, could you say that again?"


@dataclass(frozen=True)
class TurnRequest:
    tenant_id: str
    session_id: str
    utterance: str
    caller_phone: Optional[str] = None
    mode: Optional[Mode] = None


@dataclass(frozen=True)
class TurnResponse:
    reply_text: str
    next_state_blob: Optional[bytes]
    action: TurnAction
    escalation_reason: Optional[str] = None
    escalation_delivered: Optional[bool] = None


class TurnService:
    def __init__(
        self,
        *,
        engine: ConversationEngine,
        source: ConfigSource,
        store: StateStore,
        pools: Optional[ScenarioPoolCache] = None,
        escalation: Optional[EscalationHandler] = None,
        state_ttl_seconds: int = 3600,
    ):
        self.engine = engine
        self.source = source
        self.store = store
        self.pools = pools or ScenarioPoolCache(source)
        self.escalation = escalation or LoggingEscalationHandler()
        self.state_ttl_seconds = state_ttl_seconds

    @classmethod
    def from_config(
        cls,
        config,
        *,
        source: Optional[ConfigSource] = None,
        store: Optional[StateStore] = None,
        escalation: Optional[EscalationHandler] = None,
    ) -> "TurnService":
        source = source or FileConfigSource(config.config_dir)
        return cls(
            engine=ConversationEngine.from_config(config),
            source=source,
            store=store or create_state_store(config),
            pools=ScenarioPoolCache(source),
            escalation=escalation or create_escalation_handler(config),
            state_ttl_seconds=config.state_ttl_seconds,
        )

    def context_for(self, tenant_id: str) -> TenantContext:
        tenant = self.source.get_tenant(tenant_id)
        pool = self.pools.get(tenant_id)
        return TenantContext(tenant=tenant, pool=pool.scenarios)

    async def _load(self, request: TurnRequest) -> Optional[ConversationState]:
        blob = await self.store.get(request.tenant_id, request.session_id)
        if blob is None:
            return None
        try:
            return decode_state(blob)
        except StateDecodeError as e:
            # Unreadable blobs would block the call forever; start the session over.
            logger.error(
                "Discarding undecodable state",
                tenant_id=request.tenant_id,
                session_id=request.session_id,
                error=str(e),
            )
            return None

    async def handle_turn(self, request: TurnRequest) -> TurnResponse:
        try:
            loaded = await self._load(request)
        except StatePersistenceFailure as e:
            logger.error(
                "State unavailable, repeating prompt",
                tenant_id=request.tenant_id,
                session_id=request.session_id,
                operation=e.operation,
                error=str(e),
            )
            return TurnResponse(REPEAT_FALLBACK, None, TurnAction.REPEAT_LAST_PROMPT)

        context = self.context_for(request.tenant_id)
        result = self.engine.process_turn(
            request.tenant_id,
            request.session_id,
            request.utterance,
            loaded,
            context,
            caller_phone=request.caller_phone,
            mode=request.mode,
        )

        blob = encode_state(result.state)
        try:
            await self.store.put(request.tenant_id, request.session_id, blob, self.state_ttl_seconds)
        except StatePersistenceFailure as e:
            logger.error(
                "State save failed, repeating prompt",
                tenant_id=request.tenant_id,
                session_id=request.session_id,
                error=str(e),
            )
            return self._repeat(loaded)

        reason = result.state.escalation_reason or None
        delivered = None
        if result.action == TurnAction.ESCALATE and reason and (
            loaded is None or loaded.escalation_reason != result.state.escalation_reason
        ):
            delivered = await self.escalation.escalate(
                EscalationRequest(
                    session_id=request.session_id,
                    tenant_id=request.tenant_id,
                    reason=reason,
                    last_prompt=result.reply_text,
                )
            )

        return TurnResponse(
            reply_text=result.reply_text,
            next_state_blob=blob,
            action=result.action,
            escalation_reason=reason,
            escalation_delivered=delivered,
        )

    def _repeat(self, loaded: Optional[ConversationState]) -> TurnResponse:
        if loaded is None:
            return TurnResponse(REPEAT_FALLBACK, None, TurnAction.REPEAT_LAST_PROMPT)
        reply = loaded.last_prompt or REPEAT_FALLBACK
        return TurnResponse(reply, encode_state(loaded), TurnAction.REPEAT_LAST_PROMPT)

    def invalidate(self, tenant_id: str) -> bool:
        return self.pools.invalidate(tenant_id)

    async def close(self) -> None:
        await self.store.close()
