"""
Tests for the turn service: state persistence and escalation hand-off.
"""

from unittest.mock import AsyncMock, MagicMock

import pytest

from src.frontdesk.engine import TurnAction
from src.frontdesk.errors import StatePersistenceFailure, TenantConfigError
from src.frontdesk.service import REPEAT_FALLBACK, TurnRequest, TurnService
from src.frontdesk.state import decode_state
from src.frontdesk.store import InMemoryStateStore


@pytest.fixture
def escalation():
    handler = MagicMock()
    handler.escalate = AsyncMock(return_value=True)
    return handler


@pytest.fixture
def service(engine, file_source, escalation):
    return TurnService(
        engine=engine,
        source=file_source,
        store=InMemoryStateStore(),
        escalation=escalation,
    )


def _request(utterance, session_id="call-1", **kwargs):
    return TurnRequest(tenant_id="demo", session_id=session_id, utterance=utterance, **kwargs)


class TestTurnService:
    """Tests for the load -> process -> save loop."""

    @pytest.mark.asyncio
    async def test_state_carries_between_turns(self, service):
        first = await service.handle_turn(_request("Hi, my name is Mark, I'm having AC problems"))
        second = await service.handle_turn(_request("My last name is Gonzalez"))

        assert first.action == TurnAction.ASK
        assert second.reply_text == "And what's the best phone number to reach you?"
        state = decode_state(second.next_state_blob)
        assert state.slot_value("name") == "Mark Gonzalez"
        assert state.turn_count == 2

    @pytest.mark.asyncio
    async def test_sessions_are_independent(self, service):
        await service.handle_turn(_request("Hi, my name is Mark, I'm having AC problems"))
        other = await service.handle_turn(_request("what are your business hours", session_id="call-2"))
        assert other.action == TurnAction.RESPOND
        assert decode_state(other.next_state_blob).turn_count == 1

    @pytest.mark.asyncio
    async def test_save_failure_repeats_last_prompt(self, service):
        first = await service.handle_turn(_request("Hi, my name is Mark, I'm having AC problems"))

        service.store.put = AsyncMock(
            side_effect=StatePersistenceFailure("redis down", session_id="call-1", operation="put")
        )
        second = await service.handle_turn(_request("My last name is Gonzalez"))

        assert second.action == TurnAction.REPEAT_LAST_PROMPT
        assert second.reply_text == first.reply_text
        assert decode_state(second.next_state_blob) == decode_state(first.next_state_blob)

    @pytest.mark.asyncio
    async def test_save_failure_on_first_turn(self, service):
        service.store.put = AsyncMock(
            side_effect=StatePersistenceFailure("redis down", operation="put")
        )
        response = await service.handle_turn(_request("hello"))
        assert response.reply_text == REPEAT_FALLBACK
        assert response.next_state_blob is None

    @pytest.mark.asyncio
    async def test_load_failure_does_not_run_engine(self, service):
        service.store.get = AsyncMock(
            side_effect=StatePersistenceFailure("timeout", operation="get")
        )
        service.engine = MagicMock()

        response = await service.handle_turn(_request("hello"))
        assert response.action == TurnAction.REPEAT_LAST_PROMPT
        assert response.next_state_blob is None
        service.engine.process_turn.assert_not_called()

    @pytest.mark.asyncio
    async def test_undecodable_state_starts_over(self, service):
        await service.store.put("demo", "call-1", b"not a state", 60)
        response = await service.handle_turn(_request("what are your business hours"))
        assert response.action == TurnAction.RESPOND
        assert decode_state(response.next_state_blob).turn_count == 1

    @pytest.mark.asyncio
    async def test_unknown_tenant(self, service):
        with pytest.raises(TenantConfigError):
            await service.handle_turn(TurnRequest(tenant_id="nobody", session_id="s", utterance="hi"))

    def test_invalidate(self, service):
        service.context_for("demo")
        assert service.invalidate("demo") is True
        assert service.invalidate("demo") is False


class TestEscalationHandoff:
    """The escalation handler hears about each escalation once."""

    @pytest.mark.asyncio
    async def test_triage_escalation_notifies_handler(self, service, escalation):
        response = await service.handle_turn(_request("I smell gas"))

        assert response.action == TurnAction.ESCALATE
        assert response.escalation_reason == "triage:gas_leak"
        assert response.escalation_delivered is True
        escalation.escalate.assert_awaited_once()
        request = escalation.escalate.await_args.args[0]
        assert request.session_id == "call-1"
        assert request.tenant_id == "demo"
        assert request.reason == "triage:gas_leak"

    @pytest.mark.asyncio
    async def test_repeat_escalation_is_not_resent(self, service, escalation):
        await service.handle_turn(_request("I smell gas"))
        second = await service.handle_turn(_request("the gas smell is getting worse"))

        assert second.action == TurnAction.ESCALATE
        assert second.escalation_delivered is None
        escalation.escalate.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_flow_escalation_notifies_handler(self, service, escalation):
        await service.handle_turn(_request("Hi, my name is Mark, I'm having AC problems"))
        for _ in range(3):
            response = await service.handle_turn(_request("uh what?"))

        assert response.action == TurnAction.ESCALATE
        assert response.escalation_reason == "attempts_exhausted:lastName"
        escalation.escalate.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_failed_delivery_still_answers(self, service, escalation):
        escalation.escalate = AsyncMock(return_value=False)
        response = await service.handle_turn(_request("I smell gas"))
        assert response.escalation_delivered is False
        assert "call 911" in response.reply_text


def test_from_config():
    from src.frontdesk.config import get_config

    service = TurnService.from_config(get_config())
    assert isinstance(service.store, InMemoryStateStore)
    assert service.context_for("demo").settings.company_name == "Penguin Air"
