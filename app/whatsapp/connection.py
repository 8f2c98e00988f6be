"""Connection manager: the per-session connection state machine.

States: ``disconnected → connecting → {waiting_qr ⇄ connecting} → open →
close → {connecting (reconnect) | removed (logout)}``.

Invariants:
  * at most one in-flight attempt per session id (``connect`` is a no-op
    while the record is ``open`` or ``connecting``);
  * before a new record is installed the previous transport handle is
    detached (listeners removed, socket ended);
  * every attempt gets a fresh epoch and every handler it wires checks that
    its epoch is still current before touching shared state, so events of a
    superseded handle are inert;
  * retry timers are tasks owned by the manager and die with ``shutdown()``.
"""

from __future__ import annotations

import asyncio
import itertools
from typing import Any, Awaitable, Callable, Protocol

import structlog

from app.core.instrumentation import CONNECT_ATTEMPTS, DISCONNECTS
from app.whatsapp.auth_state import load_auth_state
from app.whatsapp.credential_store import CredentialStore
from app.whatsapp.registry import (
    ConnectionStatus,
    Identity,
    SessionRecord,
    SessionRegistry,
    classify_session,
    is_tenant_session,
)
from app.whatsapp.transport import (
    EVENT_CONNECTION_UPDATE,
    EVENT_CREDS_UPDATE,
    EVENT_MESSAGES_UPSERT,
    DisconnectReason,
    TransportConfig,
    TransportLibrary,
    detach,
    maybe_await,
)

logger = structlog.get_logger()

BUSY_STATUSES = {ConnectionStatus.OPEN, ConnectionStatus.CONNECTING}


class IdentityMappingStore(Protocol):
    async def record_mapping(self, tenant_id: str, identity: Identity) -> None: ...

    async def remove_mapping(self, tenant_id: str) -> None: ...


class MessageDispatcher(Protocol):
    async def dispatch(self, session_id: str, handle: Any, message: dict[str, Any]) -> None: ...


SessionEventSink = Callable[[SessionRecord], Awaitable[None]]


def identity_from_user(user: dict[str, Any] | None) -> Identity | None:
    if not user or not user.get("id"):
        return None
    return Identity(jid=str(user["id"]), name=user.get("name"))


def disconnect_code(update: dict[str, Any]) -> int | None:
    """Pull the status code out of a ``connection.update`` close payload."""
    last = update.get("lastDisconnect") or {}
    error = last.get("error") or {}
    if isinstance(error, dict):
        output = error.get("output") or {}
        code = output.get("statusCode", error.get("statusCode"))
    else:
        code = getattr(getattr(error, "output", None), "status_code", None)
    try:
        return int(code) if code is not None else None
    except (TypeError, ValueError):
        return None


class ConnectionManager:
    def __init__(
        self,
        registry: SessionRegistry,
        store: CredentialStore,
        transport_lib: TransportLibrary,
        dispatcher: MessageDispatcher | None = None,
        identity_store: IdentityMappingStore | None = None,
        event_sink: SessionEventSink | None = None,
        reconnect_delay: float = 10.0,
        open_timeout: float | None = 60.0,
        ai_bot_prefix: str = "wa-bot-ai",
        browser: tuple[str, ...] = ("WhatsApp Gateway", "Chrome", "120.0.0"),
    ) -> None:
        self.registry = registry
        self.store = store
        self.transport_lib = transport_lib
        self.dispatcher = dispatcher
        self.identity_store = identity_store
        self.event_sink = event_sink
        self.reconnect_delay = reconnect_delay
        self.open_timeout = open_timeout
        self.ai_bot_prefix = ai_bot_prefix
        self.browser = browser
        self._epochs = itertools.count(1)
        self._retry_tasks: dict[str, asyncio.Task] = {}
        self._background: set[asyncio.Task] = set()
        self._closed = False

    # ──────────────────────────────────────────────────────────────
    # Public operations
    # ──────────────────────────────────────────────────────────────

    async def connect(self, session_id: str) -> None:
        """Open (or reopen) the transport for ``session_id``.

        Idempotent while a connection is open or being established. Never
        raises: failures are logged and a retry is scheduled.
        """
        if self._closed:
            return
        existing = self.registry.get(session_id)
        if existing is not None and existing.status in BUSY_STATUSES:
            CONNECT_ATTEMPTS.labels(outcome="skipped").inc()
            logger.info("wa.connection.skipped", session_id=session_id, status=existing.status.value)
            return

        self._cancel_retry(session_id)

        if existing is not None and existing.transport is not None:
            logger.info("wa.connection.cleanup_stale_socket", session_id=session_id)
            detach(existing.transport)
            existing.transport = None

        record = SessionRecord(
            session_id=session_id,
            session_class=classify_session(session_id, self.ai_bot_prefix),
            epoch=next(self._epochs),
            status=ConnectionStatus.CONNECTING,
            identity=existing.identity if existing is not None else None,
        )
        self.registry.set(session_id, record)
        CONNECT_ATTEMPTS.labels(outcome="started").inc()
        logger.info("wa.connection.connecting", session_id=session_id, epoch=record.epoch)
        await self._publish(record)

        try:
            await self._open(record)
        except Exception as e:
            CONNECT_ATTEMPTS.labels(outcome="failed").inc()
            logger.error(
                "wa.connection.open_failed",
                session_id=session_id,
                epoch=record.epoch,
                error=f"{e.__class__.__name__}: {e}",
            )
            if self._is_current(record):
                if record.transport is not None:
                    detach(record.transport)
                    record.transport = None
                record.status = ConnectionStatus.CLOSE
                self.schedule_reconnect(session_id)

    async def logout(self, session_id: str) -> None:
        """Log the session out and forget its credentials. Idempotent."""
        record = self.registry.get(session_id)
        self._cancel_retry(session_id)
        if record is None:
            logger.info("wa.connection.logout_unknown", session_id=session_id)
            return

        # Drop the record first so events raised by the logout itself are stale.
        self.registry.delete(session_id)
        handle = record.transport
        if handle is not None:
            try:
                await handle.logout()
            except Exception as e:
                logger.warning("wa.connection.logout_error", session_id=session_id, error=str(e))
            detach(handle)
            record.transport = None

        await self._release(record)
        record.status = ConnectionStatus.DISCONNECTED
        logger.info("wa.connection.logged_out", session_id=session_id)
        await self._publish(record)

    def start_connect(self, session_id: str) -> None:
        """Fire-and-forget ``connect`` owned by the manager."""
        self._spawn(self.connect(session_id), name=f"wa-connect-{session_id}")

    def get_status(self, session_id: str) -> dict[str, Any]:
        """Best-effort status snapshot; unknown ids read as ``disconnected``."""
        record = self.registry.get(session_id)
        if record is None:
            return {
                "session_id": session_id,
                "status": ConnectionStatus.DISCONNECTED.value,
                "is_connected": False,
                "phone_number": None,
                "has_qr": False,
                "identity": None,
            }
        return {
            "session_id": session_id,
            "status": record.status.value,
            "is_connected": record.status == ConnectionStatus.OPEN,
            "phone_number": record.identity.phone_number if record.identity else None,
            "has_qr": bool(record.qr),
            "identity": record.identity.as_dict() if record.identity else None,
        }

    def get_qr(self, session_id: str) -> str | None:
        """Pending QR challenge, or None while none is available."""
        record = self.registry.get(session_id)
        return record.qr if record is not None else None

    def get_transport(self, session_id: str) -> Any:
        record = self.registry.get(session_id)
        return record.transport if record is not None else None

    def list_sessions(self) -> list[dict[str, Any]]:
        return self.registry.list()

    def schedule_reconnect(self, session_id: str, delay: float | None = None) -> None:
        """Arm exactly one delayed ``connect`` for ``session_id``."""
        if self._closed:
            return
        pending = self._retry_tasks.get(session_id)
        if pending is not None and not pending.done():
            return
        wait = self.reconnect_delay if delay is None else delay
        logger.info("wa.connection.reconnect_scheduled", session_id=session_id, delay_seconds=wait)
        self._retry_tasks[session_id] = asyncio.create_task(
            self._reconnect_later(session_id, wait), name=f"wa-reconnect-{session_id}"
        )

    def has_pending_reconnect(self, session_id: str) -> bool:
        task = self._retry_tasks.get(session_id)
        return task is not None and not task.done()

    async def shutdown(self) -> None:
        """Cancel every timer and background task and end all sockets."""
        self._closed = True
        tasks = [*self._retry_tasks.values(), *self._background]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._retry_tasks.clear()
        self._background.clear()
        for record in self.registry.snapshot():
            if record.transport is not None:
                detach(record.transport)
                record.transport = None
        logger.info("wa.connection.shutdown", sessions=self.registry.count())

    # ──────────────────────────────────────────────────────────────
    # Attempt internals
    # ──────────────────────────────────────────────────────────────

    def _is_current(self, record: SessionRecord) -> bool:
        return self.registry.is_current(record.session_id, record.epoch)

    async def _open(self, record: SessionRecord) -> None:
        session_id = record.session_id
        version = await self.transport_lib.fetch_latest_version()
        auth = await load_auth_state(session_id, record.session_class, self.store, self.transport_lib)
        if not self._is_current(record):
            logger.info("wa.connection.attempt_superseded", session_id=session_id, epoch=record.epoch)
            return
        record.auth_state = auth
        record.release_credentials = auth.clear_session

        config = TransportConfig(
            session_id=session_id,
            version=tuple(version),
            creds=auth.creds,
            keys=auth.keys,
            browser=self.browser,
        )
        opening = self.transport_lib.open_connection(config)
        if self.open_timeout:
            handle = await asyncio.wait_for(opening, timeout=self.open_timeout)
        else:
            handle = await opening

        if not self._is_current(record):
            logger.info("wa.connection.attempt_superseded", session_id=session_id, epoch=record.epoch)
            detach(handle)
            return

        record.transport = handle
        self._wire(record, handle)
        await maybe_await(handle.start())

    def _wire(self, record: SessionRecord, handle: Any) -> None:
        session_id = record.session_id

        async def on_connection_update(update: dict[str, Any]) -> None:
            if not self._is_current(record):
                logger.debug("wa.connection.stale_event", session_id=session_id, epoch=record.epoch)
                return
            await self._on_connection_update(record, handle, update or {})

        async def on_creds_update(update: dict[str, Any] | None) -> None:
            if not self._is_current(record) or record.auth_state is None:
                return
            await record.auth_state.save_creds(update)

        async def on_messages_upsert(payload: dict[str, Any]) -> None:
            if not self._is_current(record):
                return
            await self._on_messages_upsert(record, handle, payload or {})

        handle.ev.on(EVENT_CONNECTION_UPDATE, on_connection_update)
        handle.ev.on(EVENT_CREDS_UPDATE, on_creds_update)
        handle.ev.on(EVENT_MESSAGES_UPSERT, on_messages_upsert)

    async def _on_connection_update(self, record: SessionRecord, handle: Any, update: dict[str, Any]) -> None:
        session_id = record.session_id
        qr = update.get("qr")
        if qr:
            record.qr = qr
            record.status = ConnectionStatus.WAITING_QR
            logger.info("wa.connection.qr_generated", session_id=session_id)
            await self._publish(record)

        connection = update.get("connection")
        if not connection:
            return
        try:
            status = ConnectionStatus(connection)
        except ValueError:
            logger.warning("wa.connection.unknown_status", session_id=session_id, connection=connection)
            return
        record.status = status

        if status == ConnectionStatus.OPEN:
            record.qr = None
            record.identity = identity_from_user(handle.user) or record.identity
            logger.info(
                "wa.connection.opened",
                session_id=session_id,
                phone=record.identity.phone_number if record.identity else None,
            )
            if is_tenant_session(session_id) and record.identity is not None and self.identity_store:
                self._spawn(
                    self._record_mapping(session_id, record.identity),
                    name=f"wa-mapping-{session_id}",
                )
        elif status == ConnectionStatus.CLOSE:
            record.qr = None
            code = disconnect_code(update)
            logger.info(
                "wa.connection.closed",
                session_id=session_id,
                reason=DisconnectReason.describe(code),
                status_code=code,
            )
            if code == DisconnectReason.LOGGED_OUT:
                DISCONNECTS.labels(kind="terminal").inc()
                await self._terminate(record, handle)
                return
            DISCONNECTS.labels(kind="reconnect").inc()
            self.schedule_reconnect(session_id)

        await self._publish(record)

    async def _on_messages_upsert(self, record: SessionRecord, handle: Any, payload: dict[str, Any]) -> None:
        session_id = record.session_id
        messages = payload.get("messages") or []
        batch_type = payload.get("type")
        logger.info("wa.messages.upsert", session_id=session_id, batch_type=batch_type, count=len(messages))
        if batch_type != "notify" or self.dispatcher is None:
            return
        for message in messages:
            if (message.get("key") or {}).get("fromMe"):
                continue
            try:
                await self.dispatcher.dispatch(session_id, handle, message)
            except Exception as e:
                logger.error(
                    "wa.messages.dispatch_failed",
                    session_id=session_id,
                    message_id=(message.get("key") or {}).get("id"),
                    error=str(e),
                )

    async def _terminate(self, record: SessionRecord, handle: Any) -> None:
        """Remote logout: wipe credentials and forget the session, no retry."""
        session_id = record.session_id
        logger.info("wa.connection.logged_out_remotely", session_id=session_id)
        self._cancel_retry(session_id)
        await self._release(record)
        detach(handle)
        record.transport = None
        record.status = ConnectionStatus.DISCONNECTED
        if self._is_current(record):
            self.registry.delete(session_id)
        await self._publish(record)

    async def _release(self, record: SessionRecord) -> None:
        session_id = record.session_id
        if is_tenant_session(session_id) and self.identity_store is not None:
            try:
                await self.identity_store.remove_mapping(session_id)
            except Exception as e:
                logger.error("wa.connection.mapping_remove_failed", session_id=session_id, error=str(e))
        if record.release_credentials is None:
            # Attempt still bootstrapping: no hook installed yet, clear the rows directly.
            await self.store.remove_all_for_session(session_id, session_class=record.session_class)
            return
        try:
            await record.release_credentials()
        except Exception as e:
            logger.error("wa.connection.credential_release_failed", session_id=session_id, error=str(e))

    async def _record_mapping(self, session_id: str, identity: Identity) -> None:
        try:
            await self.identity_store.record_mapping(session_id, identity)
        except Exception as e:
            logger.error("wa.connection.mapping_record_failed", session_id=session_id, error=str(e))

    # ──────────────────────────────────────────────────────────────
    # Timers and background work
    # ──────────────────────────────────────────────────────────────

    async def _reconnect_later(self, session_id: str, delay: float) -> None:
        await asyncio.sleep(delay)
        if self._retry_tasks.get(session_id) is asyncio.current_task():
            self._retry_tasks.pop(session_id, None)
        logger.info("wa.connection.reconnecting", session_id=session_id)
        await self.connect(session_id)

    def _cancel_retry(self, session_id: str) -> None:
        task = self._retry_tasks.pop(session_id, None)
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()

    def _spawn(self, coro: Awaitable[Any], name: str) -> None:
        task = asyncio.ensure_future(coro)
        task.set_name(name)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _publish(self, record: SessionRecord) -> None:
        if self.event_sink is None:
            return
        try:
            await self.event_sink(record)
        except Exception as e:
            logger.warning("wa.connection.event_publish_failed", session_id=record.session_id, error=str(e))
