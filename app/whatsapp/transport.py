"""Transport boundary.

The WhatsApp wire protocol lives in an external client library. This module
pins down the narrow surface the session core consumes: an event-emitting
socket handle and a library object that opens handles, reports the protocol
version and creates or reconstructs credential material.
"""

from __future__ import annotations

import inspect
from collections import defaultdict
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any, Callable, Protocol

import structlog

logger = structlog.get_logger()

EVENT_CONNECTION_UPDATE = "connection.update"
EVENT_CREDS_UPDATE = "creds.update"
EVENT_MESSAGES_UPSERT = "messages.upsert"

SYNC_KEY_TYPE = "app-state-sync-key"


class DisconnectReason(IntEnum):
    """Status codes carried by a transport close."""

    CONNECTION_CLOSED = 428
    CONNECTION_LOST = 408
    CONNECTION_REPLACED = 440
    LOGGED_OUT = 401
    BAD_SESSION = 500
    RESTART_REQUIRED = 515
    MULTIDEVICE_MISMATCH = 411
    FORBIDDEN = 403
    UNAVAILABLE_SERVICE = 503

    @classmethod
    def describe(cls, code: int | None) -> str:
        try:
            return cls(code).name.lower()
        except (TypeError, ValueError):
            return "unknown"


Handler = Callable[[Any], Any]


class EventEmitter:
    """Sequential async event emitter.

    Handlers for one event run in registration order and each one is awaited
    before the next, so a handle's events are applied in the order received.
    """

    def __init__(self) -> None:
        self._listeners: dict[str, list[Handler]] = defaultdict(list)

    def on(self, event: str, handler: Handler) -> None:
        if handler not in self._listeners[event]:
            self._listeners[event].append(handler)

    def off(self, event: str, handler: Handler) -> None:
        if handler in self._listeners[event]:
            self._listeners[event].remove(handler)

    def remove_all_listeners(self, event: str | None = None) -> None:
        if event is None:
            self._listeners.clear()
        else:
            self._listeners.pop(event, None)

    def listener_count(self, event: str) -> int:
        return len(self._listeners.get(event, []))

    def listeners(self, event: str) -> list[Handler]:
        return list(self._listeners.get(event, []))

    async def emit(self, event: str, payload: Any) -> None:
        for handler in list(self._listeners.get(event, [])):
            try:
                result = handler(payload)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error("wa.transport.handler_failed", transport_event=event, error=str(e))


@dataclass
class TransportConfig:
    """Everything a transport needs to open one session's socket."""

    session_id: str
    version: tuple[int, ...]
    creds: dict[str, Any]
    keys: "SignalKeyStore"
    browser: tuple[str, ...] = ("WhatsApp Gateway", "Chrome", "120.0.0")
    extra: dict[str, Any] = field(default_factory=dict)


class SignalKeyStore(Protocol):
    async def get(self, artifact_type: str, ids: list[str]) -> dict[str, Any]: ...

    async def set(self, data: dict[str, dict[str, Any]]) -> None: ...


class TransportHandle(Protocol):
    """One live socket. ``ev`` emits connection, creds and message events."""

    ev: EventEmitter

    @property
    def user(self) -> dict[str, Any] | None: ...

    async def start(self) -> None:
        """Begin delivering events; called once listeners are attached."""

    async def send_message(self, jid: str, content: dict[str, Any]) -> dict[str, Any]: ...

    async def send_presence_update(self, presence: str, jid: str | None = None) -> None: ...

    async def logout(self) -> None: ...

    def end(self) -> None: ...


class TransportLibrary(Protocol):
    async def fetch_latest_version(self) -> tuple[int, ...]: ...

    def init_auth_creds(self) -> dict[str, Any]: ...

    def deserialize_sync_key(self, value: Any) -> Any: ...

    async def open_connection(self, config: TransportConfig) -> TransportHandle: ...


def detach(handle: Any) -> None:
    """Strip every listener from ``handle`` and ask it to close.

    Closing is best effort: a socket that is already gone must not stop the
    caller from installing its replacement.
    """
    try:
        handle.ev.remove_all_listeners()
    except Exception as e:
        logger.warning("wa.transport.detach_listeners_failed", error=str(e))
    try:
        handle.end()
    except Exception as e:
        logger.warning("wa.transport.end_failed", error=str(e))


async def maybe_await(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value
