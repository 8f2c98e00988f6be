"""Customer-service bot: a keyword menu on the dedicated CS session."""

from __future__ import annotations

from typing import Any

import structlog

from app.responders.base import Responder
from app.whatsapp.messaging import extract_text, send_text_message, sender_number
from app.whatsapp.router import remote_jid

logger = structlog.get_logger()

MENU_TEXT = (
    "*CS-BOT MENU*\n\n"
    "1. *Login* - Help signing in to the app\n"
    "2. *Register* - Create a new account\n"
    "3. *OTP* - Problems receiving a one-time code\n"
    "4. *Payment* - Payment confirmation and issues\n\n"
    "Type one of the keywords above for help."
)
LOGIN_REPLY = "Please send the phone number or email you registered with to receive a login code."
OTP_REPLY = "Your one-time code is being processed. Please wait a moment."
PAYMENT_REPLY = "To confirm a payment, please send your transfer receipt here."
DEFAULT_REPLY = "Hello! I'm the Customer Service Bot. Can I help you with Login, Register or Payment?"

GREETINGS = {"hi", "hello", "halo", "menu"}


def reply_for(text: str) -> str:
    """Pick the canned reply for an inbound message."""
    clean = text.lower().strip()
    if clean in GREETINGS:
        return MENU_TEXT
    if "login" in clean or "masuk" in clean:
        return LOGIN_REPLY
    if "otp" in clean:
        return OTP_REPLY
    if "payment" in clean or "bayar" in clean:
        return PAYMENT_REPLY
    return DEFAULT_REPLY


class CSBotResponder(Responder):
    def __init__(self, session_id: str = "CS-BOT") -> None:
        self.session_id = session_id

    @property
    def name(self) -> str:
        return "cs_bot"

    def accepts(self, session_id: str) -> bool:
        return session_id == self.session_id

    async def handle_incoming_message(self, session_id: str, handle: Any, message: dict[str, Any]) -> None:
        jid = remote_jid(message)
        text = extract_text(message, quote_prefix="")
        if not jid or not text:
            return
        logger.info("cs_bot.message_received", sender=sender_number(jid))
        result = await send_text_message(handle, jid, reply_for(text))
        if not result.get("success"):
            logger.error("cs_bot.reply_failed", sender=sender_number(jid), error=result.get("error"))
