"""Connection manager: lifecycle, reconnect policy and stale-attempt handling."""

import asyncio
from unittest.mock import AsyncMock

import pytest

from app.whatsapp.auth_state import CREDS_ID, CREDS_TYPE
from app.whatsapp.connection import ConnectionManager, disconnect_code
from app.whatsapp.registry import ConnectionStatus, SessionClass, SessionRegistry
from app.whatsapp.transport import EVENT_CONNECTION_UPDATE, DisconnectReason
from tests.fakes import FakeTransportLibrary, inbound

TENANT = "123e4567-e89b-12d3-a456-426614174000"


@pytest.fixture
def registry() -> SessionRegistry:
    return SessionRegistry()


@pytest.fixture
def dispatcher() -> AsyncMock:
    return AsyncMock()


@pytest.fixture
def identity_store() -> AsyncMock:
    return AsyncMock()


@pytest.fixture
async def manager(registry, credential_store, transport_lib, dispatcher, identity_store):
    mgr = ConnectionManager(
        registry=registry,
        store=credential_store,
        transport_lib=transport_lib,
        dispatcher=dispatcher,
        identity_store=identity_store,
        reconnect_delay=0.01,
        open_timeout=1.0,
    )
    yield mgr
    await mgr.shutdown()


async def _wait_for(predicate, timeout: float = 2.0) -> None:
    async def poll() -> None:
        while not predicate():
            await asyncio.sleep(0.005)

    await asyncio.wait_for(poll(), timeout=timeout)


async def _stored_creds(store, session_id: str, session_class: SessionClass = SessionClass.GENERAL):
    return await store.read(session_id, CREDS_TYPE, CREDS_ID, session_class=session_class)


def test_disconnect_code_extraction() -> None:
    assert disconnect_code({"lastDisconnect": {"error": {"output": {"statusCode": 401}}}}) == 401
    assert disconnect_code({"lastDisconnect": {"error": {"statusCode": "515"}}}) == 515
    assert disconnect_code({"connection": "close"}) is None


class TestConnect:
    @pytest.mark.anyio
    async def test_connect_installs_record_and_wires_socket(self, manager, registry, transport_lib) -> None:
        await manager.connect("main-session")

        record = registry.get("main-session")
        assert record.status == ConnectionStatus.CONNECTING
        assert record.session_class == SessionClass.GENERAL
        assert record.transport is transport_lib.last
        assert transport_lib.last.started
        assert transport_lib.last.ev.listener_count(EVENT_CONNECTION_UPDATE) == 1

    @pytest.mark.anyio
    async def test_connect_is_idempotent_while_busy(self, manager, transport_lib) -> None:
        await manager.connect("s1")
        await manager.connect("s1")
        assert transport_lib.open_count == 1

        await transport_lib.last.emit_open()
        await manager.connect("s1")
        assert transport_lib.open_count == 1

    @pytest.mark.anyio
    async def test_concurrent_connects_open_one_transport(self, manager, transport_lib) -> None:
        await asyncio.gather(*(manager.connect("s1") for _ in range(5)))
        assert transport_lib.open_count == 1

    @pytest.mark.anyio
    async def test_tenant_session_uses_bot_namespace(self, manager, registry, credential_store) -> None:
        await manager.connect(TENANT)
        assert registry.get(TENANT).session_class == SessionClass.BOT


class TestConnectionEvents:
    @pytest.mark.anyio
    async def test_qr_then_open(self, manager, registry, transport_lib) -> None:
        await manager.connect("s1")
        sock = transport_lib.last

        await sock.emit_qr("2@abc")
        assert registry.get("s1").status == ConnectionStatus.WAITING_QR
        assert manager.get_qr("s1") == "2@abc"

        await sock.emit_open(jid="6281234567890:7@s.whatsapp.net", name="Shop")
        status = manager.get_status("s1")
        assert status["status"] == "open"
        assert status["is_connected"] is True
        assert status["phone_number"] == "6281234567890"
        assert manager.get_qr("s1") is None

    @pytest.mark.anyio
    async def test_open_tenant_session_records_identity_mapping(self, manager, transport_lib, identity_store) -> None:
        await manager.connect(TENANT)
        await transport_lib.last.emit_open(jid="6281111111111@s.whatsapp.net")
        await _wait_for(lambda: identity_store.record_mapping.await_count == 1)

        identity_store.record_mapping.assert_awaited_once()
        tenant_id, identity = identity_store.record_mapping.await_args.args
        assert tenant_id == TENANT
        assert identity.jid == "6281111111111@s.whatsapp.net"

    @pytest.mark.anyio
    async def test_open_general_session_records_no_mapping(self, manager, transport_lib, identity_store) -> None:
        await manager.connect("main-session")
        await transport_lib.last.emit_open()
        await asyncio.sleep(0.01)
        identity_store.record_mapping.assert_not_awaited()

    @pytest.mark.anyio
    async def test_creds_update_is_persisted(self, manager, transport_lib, credential_store) -> None:
        await manager.connect("s1")
        await transport_lib.last.emit_creds({"registered": True, "me": {"id": "62811@s.whatsapp.net"}})

        stored = await _stored_creds(credential_store, "s1")
        assert stored["registered"] is True
        assert stored["me"]["id"] == "62811@s.whatsapp.net"


class TestDisconnectPolicy:
    @pytest.mark.anyio
    async def test_transient_close_reconnects_once(self, manager, registry, transport_lib) -> None:
        await manager.connect("s1")
        first = transport_lib.last
        await first.emit_open()

        await first.emit_close(DisconnectReason.CONNECTION_LOST)
        assert registry.get("s1").status == ConnectionStatus.CLOSE
        assert manager.has_pending_reconnect("s1")

        await _wait_for(lambda: transport_lib.open_count == 2 and transport_lib.last.started)
        assert transport_lib.open_count == 2
        assert first.ended
        assert first.ev.listener_count(EVENT_CONNECTION_UPDATE) == 0
        assert registry.get("s1").transport is transport_lib.last

    @pytest.mark.anyio
    async def test_identity_survives_transient_reconnect(self, manager, registry, transport_lib) -> None:
        await manager.connect("main-session")
        first = transport_lib.last
        assert manager.get_status("main-session")["status"] == "connecting"

        await first.emit_qr("2@main")
        assert manager.get_status("main-session")["status"] == "waiting_qr"

        await first.emit_open(jid="6281234567890:4@s.whatsapp.net", name="Main")
        opened = manager.get_status("main-session")
        assert opened["status"] == "open"

        await first.emit_close(DisconnectReason.CONNECTION_LOST)
        assert manager.get_status("main-session")["status"] == "close"
        await _wait_for(lambda: transport_lib.open_count == 2 and transport_lib.last.started)

        status = manager.get_status("main-session")
        assert status["status"] == "connecting"
        assert status["identity"] == opened["identity"]
        assert status["identity"] == {"id": "6281234567890:4@s.whatsapp.net", "name": "Main", "phone": "6281234567890"}
        assert status["phone_number"] == "6281234567890"

    @pytest.mark.anyio
    async def test_repeated_close_events_arm_a_single_retry(self, manager, transport_lib) -> None:
        manager.reconnect_delay = 0.05
        await manager.connect("s1")
        sock = transport_lib.last
        await sock.emit_close(DisconnectReason.RESTART_REQUIRED)
        await sock.emit_close(DisconnectReason.RESTART_REQUIRED)

        await _wait_for(lambda: transport_lib.open_count == 2 and transport_lib.last.started)
        await asyncio.sleep(0.1)
        assert transport_lib.open_count == 2

    @pytest.mark.anyio
    async def test_logged_out_close_is_terminal(
        self, manager, registry, transport_lib, credential_store, identity_store
    ) -> None:
        await manager.connect(TENANT)
        sock = transport_lib.last
        await sock.emit_creds({"registered": True})
        await sock.emit_open()
        assert await _stored_creds(credential_store, TENANT, SessionClass.BOT) is not None

        await sock.emit_close(DisconnectReason.LOGGED_OUT)

        assert registry.get(TENANT) is None
        assert not manager.has_pending_reconnect(TENANT)
        assert sock.ended
        assert await _stored_creds(credential_store, TENANT, SessionClass.BOT) is None
        identity_store.remove_mapping.assert_awaited_once_with(TENANT)

        await asyncio.sleep(0.05)
        assert transport_lib.open_count == 1


class TestStaleAttempts:
    @pytest.mark.anyio
    async def test_events_from_superseded_handle_are_ignored(
        self, manager, registry, transport_lib, credential_store
    ) -> None:
        await manager.connect("s1")
        old = transport_lib.last
        stale_update = old.ev.listeners(EVENT_CONNECTION_UPDATE)[0]
        await old.emit_creds({"registered": True})
        await old.emit_close(DisconnectReason.CONNECTION_LOST)
        await _wait_for(lambda: transport_lib.open_count == 2 and transport_lib.last.started)
        assert transport_lib.open_count == 2

        await stale_update({"connection": "close", "lastDisconnect": {"error": {"output": {"statusCode": 401}}}})

        assert registry.get("s1") is not None
        assert registry.get("s1").transport is transport_lib.last
        assert await _stored_creds(credential_store, "s1") is not None

    @pytest.mark.anyio
    async def test_open_finishing_after_logout_is_discarded(self, manager, registry, transport_lib) -> None:
        transport_lib.gate = asyncio.Event()
        pending = asyncio.create_task(manager.connect("s1"))
        await _wait_for(lambda: transport_lib.open_count == 1)
        assert registry.get("s1").status == ConnectionStatus.CONNECTING

        await manager.logout("s1")
        transport_lib.gate.set()
        await pending

        assert registry.get("s1") is None
        assert transport_lib.last.ended
        assert not transport_lib.last.started

    @pytest.mark.anyio
    async def test_logout_during_bootstrap_wipes_stored_credentials(
        self, manager, registry, transport_lib, credential_store
    ) -> None:
        await credential_store.write("s1", CREDS_TYPE, CREDS_ID, {"me": "old"}, session_class=SessionClass.GENERAL)
        transport_lib.version_gate = asyncio.Event()
        pending = asyncio.create_task(manager.connect("s1"))
        await _wait_for(lambda: transport_lib.version_requests == 1)
        assert registry.get("s1").release_credentials is None

        await manager.logout("s1")
        assert await _stored_creds(credential_store, "s1") is None

        transport_lib.version_gate.set()
        await pending

        assert registry.get("s1") is None
        assert transport_lib.open_count == 0
        assert await _stored_creds(credential_store, "s1") is None


class TestOpenFailures:
    @pytest.mark.anyio
    async def test_open_error_schedules_retry(self, manager, registry, transport_lib) -> None:
        manager.reconnect_delay = 5
        transport_lib.fail_with = ConnectionError("bridge unreachable")

        await manager.connect("s1")

        assert registry.get("s1").status == ConnectionStatus.CLOSE
        assert manager.has_pending_reconnect("s1")

    @pytest.mark.anyio
    async def test_open_timeout_counts_as_failure(self, manager, registry, transport_lib) -> None:
        manager.reconnect_delay = 5
        manager.open_timeout = 0.05
        transport_lib.gate = asyncio.Event()

        await manager.connect("s1")

        assert registry.get("s1").status == ConnectionStatus.CLOSE
        assert manager.has_pending_reconnect("s1")


class TestMessages:
    @pytest.mark.anyio
    async def test_only_notify_batches_from_others_are_dispatched(self, manager, transport_lib, dispatcher) -> None:
        await manager.connect("s1")
        sock = transport_lib.last

        await sock.emit_messages([inbound("history")], batch_type="append")
        await sock.emit_messages([inbound("mine", from_me=True), inbound("hello", msg_id="IN2")])

        assert dispatcher.dispatch.await_count == 1
        session_id, handle, message = dispatcher.dispatch.await_args.args
        assert session_id == "s1"
        assert handle is sock
        assert message["key"]["id"] == "IN2"

    @pytest.mark.anyio
    async def test_dispatch_failure_is_isolated_per_message(self, manager, transport_lib, dispatcher) -> None:
        dispatcher.dispatch.side_effect = [RuntimeError("responder crashed"), None]
        await manager.connect("s1")

        await transport_lib.last.emit_messages([inbound("one", msg_id="A"), inbound("two", msg_id="B")])

        assert dispatcher.dispatch.await_count == 2


class TestLogout:
    @pytest.mark.anyio
    async def test_logout_clears_everything(self, manager, registry, transport_lib, credential_store) -> None:
        await manager.connect("s1")
        sock = transport_lib.last
        await sock.emit_creds({"registered": True})
        await sock.emit_open()

        await manager.logout("s1")

        assert sock.logged_out
        assert sock.ended
        assert registry.get("s1") is None
        assert await _stored_creds(credential_store, "s1") is None
        assert manager.get_status("s1")["status"] == "disconnected"

    @pytest.mark.anyio
    async def test_logout_is_idempotent(self, manager) -> None:
        await manager.logout("never-seen")
        await manager.logout("never-seen")

    @pytest.mark.anyio
    async def test_logout_cancels_pending_retry(self, manager, transport_lib) -> None:
        manager.reconnect_delay = 0.05
        await manager.connect("s1")
        await transport_lib.last.emit_close(DisconnectReason.CONNECTION_CLOSED)
        assert manager.has_pending_reconnect("s1")

        await manager.logout("s1")
        await asyncio.sleep(0.1)
        assert transport_lib.open_count == 1


class TestStatusAndShutdown:
    def test_unknown_session_status_placeholder(self, registry, credential_store) -> None:
        mgr = ConnectionManager(registry, credential_store, FakeTransportLibrary())
        assert mgr.get_status("nope") == {
            "session_id": "nope",
            "status": "disconnected",
            "is_connected": False,
            "phone_number": None,
            "has_qr": False,
            "identity": None,
        }
        assert mgr.get_qr("nope") is None

    @pytest.mark.anyio
    async def test_shutdown_cancels_timers_and_ends_sockets(self, manager, transport_lib) -> None:
        manager.reconnect_delay = 5
        await manager.connect("a")
        await manager.connect("b")
        await transport_lib.sockets[0].emit_close(DisconnectReason.CONNECTION_LOST)
        assert manager.has_pending_reconnect("a")

        await manager.shutdown()

        assert not manager.has_pending_reconnect("a")
        assert transport_lib.sockets[1].ended
        await manager.connect("c")
        assert transport_lib.open_count == 2

    @pytest.mark.anyio
    async def test_event_sink_sees_transitions(self, registry, credential_store, transport_lib) -> None:
        seen = []

        async def sink(record) -> None:
            seen.append(record.status.value)

        mgr = ConnectionManager(registry, credential_store, transport_lib, event_sink=sink, reconnect_delay=5)
        await mgr.connect("s1")
        await transport_lib.last.emit_qr()
        await transport_lib.last.emit_open()
        await mgr.logout("s1")
        await mgr.shutdown()

        assert seen == ["connecting", "waiting_qr", "open", "disconnected"]
