"""WhatsApp Web bridge transport.

The WhatsApp Web protocol is spoken by a separate bridge process (Baileys
based). This module is the gateway's side of it:

  * one websocket per session carries inbound events and the bridge's
    signal-key requests (``keys.get`` / ``keys.set``), answered from the
    session's credential store;
  * outbound commands (send, presence, logout) are plain HTTP calls.

Event frames are re-emitted on the socket's :class:`EventEmitter`, so the
connection manager sees the same surface as with an in-process library.

Frames (JSON, bytes in the tagged base64 form of :mod:`app.whatsapp.codec`)::

    → {"type": "open", "session_id", "version", "browser", "creds"}
    ← {"type": "event", "event": "connection.update", "data": {...}, "user": {...}}
    ← {"type": "keys.get", "id", "key_type", "ids"}   → {"type": "keys.result", "id", "data"}
    ← {"type": "keys.set", "id", "data"}              → {"type": "keys.result", "id", "data": null}
"""

from __future__ import annotations

import asyncio
import json
from typing import Any, Callable

import httpx
import structlog
import websockets
from websockets.exceptions import ConnectionClosed

from app.whatsapp import codec
from app.whatsapp.transport import (
    EVENT_CONNECTION_UPDATE,
    DisconnectReason,
    EventEmitter,
    TransportConfig,
)

logger = structlog.get_logger()

DEFAULT_VERSION = (2, 3000, 1015901307)


def closed_update(code: int) -> dict[str, Any]:
    """``connection.update`` payload for a close with ``code``."""
    return {
        "connection": "close",
        "lastDisconnect": {"error": {"output": {"statusCode": code}}},
    }


class BridgeSocket:
    """One session's live connection to the bridge.

    The reader task answers key requests itself and queues event frames for a
    separate dispatcher task, so a slow event handler (a responder sending a
    reply) never holds up the key traffic that reply depends on. Events are
    still emitted one at a time in arrival order.
    """

    def __init__(
        self,
        transport: "BridgeTransport",
        config: TransportConfig,
        ws: Any,
    ) -> None:
        self.ev = EventEmitter()
        self.session_id = config.session_id
        self._transport = transport
        self._keys = config.keys
        self._ws = ws
        self._user: dict[str, Any] | None = None
        self._events: asyncio.Queue = asyncio.Queue()
        self._reader: asyncio.Task | None = None
        self._dispatcher: asyncio.Task | None = None
        self._ended = False

    @property
    def user(self) -> dict[str, Any] | None:
        return self._user

    async def start(self) -> None:
        if self._reader is None and not self._ended:
            self._reader = asyncio.create_task(self._read_loop(), name=f"wa-bridge-read-{self.session_id}")
            self._dispatcher = asyncio.create_task(self._dispatch_loop(), name=f"wa-bridge-events-{self.session_id}")

    # ──────────────────────────────────────────────────────────────
    # Commands
    # ──────────────────────────────────────────────────────────────

    async def send_message(self, jid: str, content: dict[str, Any]) -> dict[str, Any]:
        return await self._transport.command(self.session_id, "messages", {"jid": jid, "content": content})

    async def send_presence_update(self, presence: str, jid: str | None = None) -> None:
        await self._transport.command(self.session_id, "presence", {"presence": presence, "jid": jid})

    async def logout(self) -> None:
        await self._transport.command(self.session_id, "logout", {})

    def end(self) -> None:
        """Stop reading, drop queued events and close the websocket. Safe to call repeatedly."""
        if self._ended:
            return
        self._ended = True
        current = asyncio.current_task()
        for task in (self._reader, self._dispatcher):
            # From inside an event handler the dispatcher exits on its own.
            if task is not None and task is not current and not task.done():
                task.cancel()
        asyncio.ensure_future(self._close_ws())

    # ──────────────────────────────────────────────────────────────
    # Inbound frames
    # ──────────────────────────────────────────────────────────────

    async def _read_loop(self) -> None:
        close_code: int | None = None
        try:
            async for raw in self._ws:
                await self._handle_frame(raw)
                if self._ended:
                    return
            close_code = DisconnectReason.CONNECTION_CLOSED
        except ConnectionClosed as e:
            logger.warning("wa.bridge.connection_lost", session_id=self.session_id, error=str(e))
            close_code = DisconnectReason.CONNECTION_LOST
        finally:
            await self._close_ws()
        if close_code is not None and not self._ended:
            # Queued behind pending events so the close is seen last.
            self._events.put_nowait((EVENT_CONNECTION_UPDATE, closed_update(int(close_code))))

    async def _dispatch_loop(self) -> None:
        while not self._ended:
            event, payload = await self._events.get()
            if self._ended:
                return
            await self.ev.emit(event, payload)

    async def _handle_frame(self, raw: str | bytes) -> None:
        try:
            frame = json.loads(raw)
        except (TypeError, ValueError):
            logger.warning("wa.bridge.bad_frame", session_id=self.session_id)
            return
        kind = frame.get("type")
        if frame.get("user"):
            self._user = frame["user"]

        if kind == "event":
            self._events.put_nowait((frame.get("event", ""), codec.decode_binary(frame.get("data"))))
        elif kind == "keys.get":
            data = await self._keys.get(frame.get("key_type", ""), list(frame.get("ids") or []))
            await self._reply(frame.get("id"), data)
        elif kind == "keys.set":
            await self._keys.set(codec.decode_binary(frame.get("data") or {}))
            await self._reply(frame.get("id"), None)
        else:
            logger.debug("wa.bridge.unknown_frame", session_id=self.session_id, frame_type=kind)

    async def _reply(self, request_id: Any, data: Any) -> None:
        await self._ws.send(json.dumps({"type": "keys.result", "id": request_id, "data": codec.encode_binary(data)}))

    async def _close_ws(self) -> None:
        try:
            await self._ws.close()
        except Exception as e:
            logger.debug("wa.bridge.close_failed", session_id=self.session_id, error=str(e))


class BridgeTransport:
    """Transport library backed by the bridge process."""

    def __init__(
        self,
        base_url: str,
        ws_url: str,
        api_key: str = "",
        timeout: float = 15.0,
        ws_connect: Callable[..., Any] = websockets.connect,
        http_transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._ws_url = ws_url.rstrip("/")
        self._api_key = api_key
        self._timeout = timeout
        self._ws_connect = ws_connect
        self._http_transport = http_transport

    def _headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self._api_key}"} if self._api_key else {}

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self._base_url,
            timeout=self._timeout,
            headers=self._headers(),
            transport=self._http_transport,
        )

    async def fetch_latest_version(self) -> tuple[int, ...]:
        try:
            async with self._client() as client:
                resp = await client.get("/version")
                resp.raise_for_status()
                return tuple(int(part) for part in resp.json()["version"])
        except Exception as e:
            logger.warning("wa.bridge.version_unavailable", error=str(e))
            return DEFAULT_VERSION

    def init_auth_creds(self) -> dict[str, Any]:
        # Key material is generated bridge-side on first open and comes back as creds.update.
        return {"registered": False}

    def deserialize_sync_key(self, value: Any) -> Any:
        if isinstance(value, dict):
            return {"keyData": value.get("keyData"), "fingerprint": value.get("fingerprint"), "timestamp": value.get("timestamp")}
        return value

    async def open_connection(self, config: TransportConfig) -> BridgeSocket:
        ws = await self._ws_connect(f"{self._ws_url}/{config.session_id}", additional_headers=self._headers())
        await ws.send(
            json.dumps(
                {
                    "type": "open",
                    "session_id": config.session_id,
                    "version": list(config.version),
                    "browser": list(config.browser),
                    "creds": codec.encode_binary(config.creds),
                }
            )
        )
        logger.info("wa.bridge.opened", session_id=config.session_id)
        return BridgeSocket(self, config, ws)

    async def command(self, session_id: str, action: str, payload: dict[str, Any]) -> dict[str, Any]:
        async with self._client() as client:
            try:
                resp = await client.post(f"/sessions/{session_id}/{action}", json=codec.encode_binary(payload))
                resp.raise_for_status()
                return resp.json() if resp.content else {}
            except Exception as e:
                logger.error("wa.bridge.command_failed", session_id=session_id, action=action, error=str(e))
                raise
