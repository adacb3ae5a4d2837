"""
Tests for state stores and escalation handlers.
"""

import json
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from src.frontdesk.config import Config
from src.frontdesk.errors import StatePersistenceFailure
from src.frontdesk.escalation import (
    EscalationRequest,
    LoggingEscalationHandler,
    WebhookEscalationHandler,
    create_escalation_handler,
)
from src.frontdesk.store import InMemoryStateStore, RedisStateStore, create_state_store


class TestInMemoryStateStore:
    """Tests for the process-local store."""

    @pytest.mark.asyncio
    async def test_put_get_delete(self):
        store = InMemoryStateStore()
        await store.put("demo", "s1", b"blob", 60)
        assert await store.get("demo", "s1") == b"blob"
        assert await store.get("other", "s1") is None

        await store.delete("demo", "s1")
        assert await store.get("demo", "s1") is None

    @pytest.mark.asyncio
    async def test_expired_entry(self):
        store = InMemoryStateStore()
        await store.put("demo", "s1", b"blob", 0)
        assert await store.get("demo", "s1") is None
        assert len(store) == 0


class TestRedisStateStore:
    """Tests for the Redis store with a mocked client."""

    @pytest.mark.asyncio
    async def test_put_uses_namespaced_key_and_ttl(self):
        client = MagicMock()
        client.set = AsyncMock()
        store = RedisStateStore(client)

        await store.put("demo", "s1", b"blob", 120)
        client.set.assert_awaited_once_with("frontdesk:demo:session:s1", b"blob", ex=120)

    @pytest.mark.asyncio
    async def test_get_decoded_string(self):
        client = MagicMock()
        client.get = AsyncMock(return_value='{"session_id":"s1"}')
        store = RedisStateStore(client)
        assert await store.get("demo", "s1") == b'{"session_id":"s1"}'

    @pytest.mark.asyncio
    async def test_errors_become_persistence_failures(self):
        client = MagicMock()
        client.get = AsyncMock(side_effect=RedisConnectionError("refused"))
        client.set = AsyncMock(side_effect=RedisConnectionError("refused"))
        store = RedisStateStore(client)

        with pytest.raises(StatePersistenceFailure) as exc_info:
            await store.get("demo", "s1")
        assert exc_info.value.operation == "get"

        with pytest.raises(StatePersistenceFailure) as exc_info:
            await store.put("demo", "s1", b"x", 60)
        assert exc_info.value.operation == "put"

    @pytest.mark.asyncio
    async def test_ping_failure(self):
        client = MagicMock()
        client.ping = AsyncMock(side_effect=RedisConnectionError("refused"))
        assert await RedisStateStore(client).ping() is False

    def test_factory(self):
        assert isinstance(create_state_store(Config()), InMemoryStateStore)
        assert isinstance(create_state_store(Config(state_store="redis")), RedisStateStore)


class TestEscalationHandlers:
    """Tests for escalation delivery."""

    def _request(self):
        return EscalationRequest(
            session_id="s1", tenant_id="demo", reason="triage:gas_leak", last_prompt="Hold on."
        )

    def test_payload(self):
        assert self._request().to_payload() == {
            "sessionId": "s1",
            "tenantId": "demo",
            "reason": "triage:gas_leak",
            "lastPrompt": "Hold on.",
        }

    @pytest.mark.asyncio
    async def test_logging_handler(self):
        assert await LoggingEscalationHandler().escalate(self._request()) is True

    @pytest.mark.asyncio
    async def test_webhook_delivers(self):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(json.loads(request.content))
            return httpx.Response(200)

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            webhook = WebhookEscalationHandler("https://pbx.test/transfer", client=client)
            assert await webhook.escalate(self._request()) is True

        assert seen[0]["reason"] == "triage:gas_leak"

    @pytest.mark.asyncio
    async def test_webhook_rejection(self):
        transport = httpx.MockTransport(lambda request: httpx.Response(503, text="busy"))
        async with httpx.AsyncClient(transport=transport) as client:
            webhook = WebhookEscalationHandler("https://pbx.test/transfer", client=client)
            assert await webhook.escalate(self._request()) is False

    @pytest.mark.asyncio
    async def test_webhook_unreachable(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            webhook = WebhookEscalationHandler("https://pbx.test/transfer", client=client)
            assert await webhook.escalate(self._request()) is False

    def test_factory(self):
        assert isinstance(create_escalation_handler(Config()), LoggingEscalationHandler)
        handler = create_escalation_handler(Config(escalation_webhook_url="https://pbx.test/x"))
        assert isinstance(handler, WebhookEscalationHandler)
