"""Inbound message router.

Maps a session to its responder and applies the delivery policy before the
responder sees a message: broadcast and group chats are ignored, the socket
must be logged in, and allow-listed responders only hear from contacts the
tenant permits.
"""

from __future__ import annotations

from typing import Any, Protocol

import structlog

from app.core.instrumentation import MESSAGES_DISPATCHED
from app.responders.base import Responder
from app.whatsapp.registry import is_tenant_session

logger = structlog.get_logger()

STATUS_BROADCAST = "status@broadcast"
GROUP_SUFFIX = "@g.us"


class AllowListPolicy(Protocol):
    async def is_contact_allowed(self, jid: str, user_id: str | None = None) -> bool: ...


def remote_jid(message: dict[str, Any]) -> str | None:
    return (message.get("key") or {}).get("remoteJid")


def is_direct_chat(jid: str | None) -> bool:
    return bool(jid) and not jid.endswith(GROUP_SUFFIX) and jid != STATUS_BROADCAST


class MessageRouter:
    def __init__(self, policy: AllowListPolicy | None = None) -> None:
        self._policy = policy
        self._responders: list[Responder] = []

    def register(self, responder: Responder) -> None:
        self._responders.append(responder)
        logger.info("wa.router.responder_registered", responder=responder.name)

    def resolve(self, session_id: str) -> Responder | None:
        for responder in self._responders:
            if responder.accepts(session_id):
                return responder
        return None

    def proactive_responder(self, session_id: str) -> Responder | None:
        responder = self.resolve(session_id)
        if responder is not None and responder.supports_proactive:
            return responder
        return None

    async def dispatch(self, session_id: str, handle: Any, message: dict[str, Any]) -> None:
        """Hand ``message`` to the session's responder if policy allows.

        Responder errors propagate to the caller, which isolates them per
        message.
        """
        jid = remote_jid(message)
        if not is_direct_chat(jid):
            return
        responder = self.resolve(session_id)
        if responder is None:
            logger.debug("wa.router.no_responder", session_id=session_id)
            return
        if handle is None or not getattr(handle, "user", None):
            logger.warning("wa.router.socket_not_ready", session_id=session_id, responder=responder.name)
            MESSAGES_DISPATCHED.labels(responder=responder.name, status="not_ready").inc()
            return

        if responder.requires_allow_list and self._policy is not None:
            user_id = session_id if is_tenant_session(session_id) else None
            if not await self._policy.is_contact_allowed(jid, user_id):
                logger.info("wa.router.sender_not_allowed", session_id=session_id, sender=jid)
                MESSAGES_DISPATCHED.labels(responder=responder.name, status="blocked").inc()
                return

        try:
            await responder.handle_incoming_message(session_id, handle, message)
        except Exception:
            MESSAGES_DISPATCHED.labels(responder=responder.name, status="error").inc()
            raise
        MESSAGES_DISPATCHED.labels(responder=responder.name, status="ok").inc()
