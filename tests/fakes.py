"""In-process stand-ins for the WhatsApp transport.

``FakeTransportLibrary`` hands out ``FakeSocket``s whose events are driven by
the test, so connection scenarios play out deterministically.
"""

import asyncio
from typing import Any

from app.whatsapp.transport import (
    EVENT_CONNECTION_UPDATE,
    EVENT_CREDS_UPDATE,
    EVENT_MESSAGES_UPSERT,
    EventEmitter,
    TransportConfig,
)


class FakeSocket:
    def __init__(self, config: TransportConfig) -> None:
        self.config = config
        self.ev = EventEmitter()
        self.user: dict[str, Any] | None = None
        self.started = False
        self.ended = False
        self.logged_out = False
        self.sent: list[tuple[str, dict[str, Any]]] = []
        self.presence: list[tuple[str, str | None]] = []
        self.fail_sends = False
        self.fail_presence = False

    async def start(self) -> None:
        self.started = True

    async def send_message(self, jid: str, content: dict[str, Any]) -> dict[str, Any]:
        if self.fail_sends:
            raise RuntimeError("send failed")
        self.sent.append((jid, content))
        return {"key": {"id": f"MSG{len(self.sent)}", "remoteJid": jid}}

    async def send_presence_update(self, presence: str, jid: str | None = None) -> None:
        if self.fail_presence:
            raise RuntimeError("presence failed")
        self.presence.append((presence, jid))

    async def logout(self) -> None:
        self.logged_out = True

    def end(self) -> None:
        self.ended = True

    # ── scenario helpers ──────────────────────────────────────────

    async def emit_qr(self, qr: str = "qr-payload") -> None:
        await self.ev.emit(EVENT_CONNECTION_UPDATE, {"qr": qr})

    async def emit_open(self, jid: str = "6281234567890:12@s.whatsapp.net", name: str = "Gateway") -> None:
        self.user = {"id": jid, "name": name}
        await self.ev.emit(EVENT_CONNECTION_UPDATE, {"connection": "open"})

    async def emit_close(self, status_code: int) -> None:
        await self.ev.emit(
            EVENT_CONNECTION_UPDATE,
            {"connection": "close", "lastDisconnect": {"error": {"output": {"statusCode": status_code}}}},
        )

    async def emit_creds(self, update: dict[str, Any]) -> None:
        await self.ev.emit(EVENT_CREDS_UPDATE, update)

    async def emit_messages(self, messages: list[dict[str, Any]], batch_type: str = "notify") -> None:
        await self.ev.emit(EVENT_MESSAGES_UPSERT, {"messages": messages, "type": batch_type})


class FakeTransportLibrary:
    def __init__(self) -> None:
        self.sockets: list[FakeSocket] = []
        self.open_count = 0
        self.fail_with: Exception | None = None
        self.gate: asyncio.Event | None = None
        self.version_gate: asyncio.Event | None = None
        self.version_requests = 0

    async def fetch_latest_version(self) -> tuple[int, ...]:
        self.version_requests += 1
        if self.version_gate is not None:
            await self.version_gate.wait()
        return (2, 3000, 1)

    def init_auth_creds(self) -> dict[str, Any]:
        return {"noiseKey": {"private": b"\x01" * 32, "public": b"\x02" * 32}, "registered": False}

    def deserialize_sync_key(self, value: Any) -> Any:
        return {"deserialized": value}

    async def open_connection(self, config: TransportConfig) -> FakeSocket:
        self.open_count += 1
        if self.gate is not None:
            await self.gate.wait()
        if self.fail_with is not None:
            raise self.fail_with
        socket = FakeSocket(config)
        self.sockets.append(socket)
        return socket

    @property
    def last(self) -> FakeSocket:
        return self.sockets[-1]


def inbound(text: str, jid: str = "6289876543210@s.whatsapp.net", from_me: bool = False, msg_id: str = "IN1") -> dict[str, Any]:
    return {
        "key": {"remoteJid": jid, "fromMe": from_me, "id": msg_id},
        "pushName": "Tester",
        "message": {"conversation": text},
    }
