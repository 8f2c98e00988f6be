"""WA Gateway – Redis Bus Unit Tests.

Tests: connection state, publishing, health check, session event
publishing. Uses fakeredis, no Redis server needed.
"""

import asyncio
import json

import fakeredis.aioredis
import pytest

from app.gateway import dependencies
from app.gateway.dependencies import publish_session_event
from app.gateway.redis_bus import RedisBus
from app.whatsapp.registry import ConnectionStatus, Identity, SessionClass, SessionRecord


class TestRedisBusConnection:
    """Test Redis connection lifecycle."""

    @pytest.mark.anyio
    async def test_health_check_returns_false_when_disconnected(self) -> None:
        bus = RedisBus(redis_url="redis://fake:6379/0")
        assert await bus.health_check() is False
        assert not bus.connected

    @pytest.mark.anyio
    async def test_publish_raises_when_disconnected(self) -> None:
        bus = RedisBus(redis_url="redis://fake:6379/0")
        with pytest.raises(RuntimeError, match="not connected"):
            await bus.publish("test-channel", "test-message")


class TestRedisBusPubSub:
    """Pub/Sub against fakeredis."""

    @pytest.fixture
    async def bus(self):
        bus = RedisBus(client=fakeredis.aioredis.FakeRedis(decode_responses=True))
        yield bus
        await bus.disconnect()

    @pytest.mark.anyio
    async def test_health_check_returns_true_when_connected(self, bus: RedisBus) -> None:
        assert await bus.health_check() is True
        assert bus.connected

    @pytest.mark.anyio
    async def test_publish_without_subscribers(self, bus: RedisBus) -> None:
        assert await bus.publish(RedisBus.CHANNEL_EVENTS, '{"event": "test"}') == 0

    @pytest.mark.anyio
    async def test_published_event_reaches_a_subscriber(self, bus: RedisBus) -> None:
        listener = bus._client.pubsub()
        await listener.subscribe(RedisBus.CHANNEL_EVENTS)

        async def next_message() -> dict:
            while True:
                message = await listener.get_message(ignore_subscribe_messages=True, timeout=0.05)
                if message is not None:
                    return message

        try:
            await bus.publish(RedisBus.CHANNEL_EVENTS, '{"status": "open"}')
            message = await asyncio.wait_for(next_message(), timeout=2.0)
        finally:
            await listener.aclose()

        assert message["channel"] == RedisBus.CHANNEL_EVENTS
        assert json.loads(message["data"]) == {"status": "open"}

    @pytest.mark.anyio
    async def test_disconnect_resets_state(self, bus: RedisBus) -> None:
        await bus.disconnect()
        assert not bus.connected


def test_events_channel_name() -> None:
    assert RedisBus.CHANNEL_EVENTS == "wagw:events"


class TestSessionEventPublishing:
    def _record(self) -> SessionRecord:
        record = SessionRecord(
            session_id="s1", session_class=SessionClass.GENERAL, epoch=1, status=ConnectionStatus.OPEN
        )
        record.identity = Identity(jid="6281234567890@s.whatsapp.net", name="Shop")
        return record

    @pytest.mark.anyio
    async def test_transition_is_published_as_json(self, mock_redis_bus, monkeypatch) -> None:
        monkeypatch.setattr(dependencies.redis_bus, "_client", object())

        await publish_session_event(self._record())

        channel, payload = mock_redis_bus.publish.await_args.args
        assert channel == "wagw:events"
        event = json.loads(payload)
        assert event["session_id"] == "s1"
        assert event["status"] == "open"
        assert event["identity"]["phone"] == "6281234567890"

    @pytest.mark.anyio
    async def test_skipped_without_redis(self, mock_redis_bus, monkeypatch) -> None:
        monkeypatch.setattr(dependencies.redis_bus, "_client", None)
        await publish_session_event(self._record())
        mock_redis_bus.publish.assert_not_awaited()

    @pytest.mark.anyio
    async def test_publish_failure_is_swallowed(self, mock_redis_bus, monkeypatch) -> None:
        monkeypatch.setattr(dependencies.redis_bus, "_client", object())
        mock_redis_bus.publish.side_effect = ConnectionError("redis gone")
        await publish_session_event(self._record())
