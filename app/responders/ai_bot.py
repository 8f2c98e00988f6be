"""AI bot responder.

Serves the fixed AI bot session and every tenant-scoped (UUID) session. For
tenant sessions the tenant id is the session id, so prompts, keys, contacts
and history are all looked up per tenant.
"""

from __future__ import annotations

import asyncio
import time
from typing import Any

import structlog

from app.responders.base import Responder
from app.responders.llm import CompletionConfig, GeminiClient
from app.services.config_service import ConfigService
from app.services.history_service import HistoryService
from app.whatsapp.messaging import extract_text, send_text_message, sender_number
from app.whatsapp.registry import is_tenant_session
from app.whatsapp.router import remote_jid

logger = structlog.get_logger()

NUDGE_PROMPT = (
    "Write a short, friendly follow-up to restart this conversation. "
    "Refer to what was discussed and do not repeat your last message."
)
NUDGE_INPUT = "..."


def _completion_config(key_config: dict[str, Any]) -> CompletionConfig:
    return CompletionConfig(
        api_key=key_config.get("key"),
        model=key_config.get("model") or "gemini-1.5-flash",
        api_version=key_config.get("version") or "v1beta",
    )


class AIBotResponder(Responder):
    requires_allow_list = True

    def __init__(
        self,
        config_service: ConfigService,
        history_service: HistoryService,
        llm: GeminiClient | None = None,
        session_id: str = "wa-bot-ai",
    ) -> None:
        self.config_service = config_service
        self.history_service = history_service
        self.llm = llm or GeminiClient()
        self.session_id = session_id

    @property
    def name(self) -> str:
        return "ai_bot"

    def accepts(self, session_id: str) -> bool:
        return session_id == self.session_id or is_tenant_session(session_id)

    @staticmethod
    def tenant_of(session_id: str) -> str | None:
        return session_id if is_tenant_session(session_id) else None

    async def handle_incoming_message(self, session_id: str, handle: Any, message: dict[str, Any]) -> None:
        jid = remote_jid(message)
        text = extract_text(message)
        if not jid or not text:
            return
        user_id = self.tenant_of(session_id)
        push_name = message.get("pushName") or "User"
        logger.info("ai_bot.message_received", session_id=session_id, sender=sender_number(jid), length=len(text))

        system_prompt = await asyncio.to_thread(self.config_service.get_system_prompt, user_id)
        history = await asyncio.to_thread(self.history_service.get_history, jid, user_id)

        await handle.send_presence_update("composing", jid)
        await asyncio.to_thread(self.config_service.increment_stat, "requests", user_id)

        key_config = await asyncio.to_thread(self.config_service.get_gemini_api_key, user_id)
        start_time = time.time()
        reply = await self.llm.generate_response(
            text,
            self.history_service.format_for_prompt(history),
            system_prompt,
            _completion_config(key_config),
        )
        latency = round((time.time() - start_time) * 1000)

        result = await send_text_message(handle, jid, reply)
        if not result.get("success"):
            logger.error("ai_bot.reply_failed", session_id=session_id, error=result.get("error"))
            return
        await asyncio.to_thread(self.config_service.increment_stat, "responses", user_id)
        await asyncio.to_thread(self.history_service.save_message, jid, push_name, "user", text, user_id)
        await asyncio.to_thread(
            self.history_service.save_message, jid, push_name, "model", reply, user_id, latency
        )
        logger.info("ai_bot.replied", session_id=session_id, sender=sender_number(jid), latency_ms=latency)

    async def check_proactive_opportunity(self, session_id: str, handle: Any) -> None:
        """Nudge conversations that went quiet after the bot's last reply."""
        user_id = self.tenant_of(session_id)
        candidates = await asyncio.to_thread(self.history_service.proactive_candidates, user_id)
        if not candidates:
            return
        key_config = await asyncio.to_thread(self.config_service.get_gemini_api_key, user_id)
        for candidate in candidates:
            jid = candidate["jid"]
            try:
                reply = await self.llm.generate_response(
                    NUDGE_INPUT,
                    self.history_service.format_for_prompt(candidate["history"]),
                    NUDGE_PROMPT,
                    _completion_config(key_config),
                )
                result = await send_text_message(handle, jid, reply)
                if not result.get("success"):
                    logger.warning("ai_bot.nudge_not_sent", session_id=session_id, error=result.get("error"))
                    continue
                await asyncio.to_thread(
                    self.history_service.save_message,
                    jid,
                    candidate.get("push_name"),
                    "model",
                    reply,
                    user_id,
                    None,
                    True,
                )
                logger.info("ai_bot.nudge_sent", session_id=session_id, recipient=sender_number(jid))
            except Exception as e:
                logger.error("ai_bot.nudge_failed", session_id=session_id, error=str(e))
