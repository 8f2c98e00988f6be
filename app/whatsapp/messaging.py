"""Outbound messaging helpers.

Thin wrappers around a live transport handle. Every send helper validates
its input and returns a ``{"success": bool, ...}`` dict; transport errors
are reported in that dict rather than raised.
"""

from __future__ import annotations

import re
from datetime import datetime, timezone
from typing import Any

import structlog

logger = structlog.get_logger()

USER_JID_SUFFIX = "@s.whatsapp.net"
COUNTRY_PREFIX = "62"
MAX_MESSAGE_LENGTH = 4096
MEDIA_TYPES = ("image", "video", "document", "audio")

_NON_DIGITS = re.compile(r"\D")


def format_phone_number(number: str) -> str:
    """Normalise a phone number to a user JID. JIDs pass through untouched."""
    if "@" in number:
        return number
    cleaned = _NON_DIGITS.sub("", number)
    if cleaned.startswith("0"):
        cleaned = COUNTRY_PREFIX + cleaned[1:]
    if not cleaned.startswith(COUNTRY_PREFIX) and len(cleaned) <= 12:
        cleaned = COUNTRY_PREFIX + cleaned
    return f"{cleaned}{USER_JID_SUFFIX}"


def validate_phone_number(number: Any) -> tuple[bool, str | None]:
    if not number:
        return False, "Phone number is required"
    cleaned = _NON_DIGITS.sub("", str(number).split("@")[0])
    if len(cleaned) < 10:
        return False, "Phone number too short"
    if len(cleaned) > 15:
        return False, "Phone number too long"
    return True, None


def validate_message(message: Any) -> tuple[bool, str | None]:
    if not message:
        return False, "Message is required"
    if not isinstance(message, str):
        return False, "Message must be a string"
    if len(message) > MAX_MESSAGE_LENGTH:
        return False, f"Message too long (max {MAX_MESSAGE_LENGTH} characters)"
    return True, None


def _is_ready(handle: Any) -> bool:
    return handle is not None and bool(getattr(handle, "user", None))


def _sent(result: Any, jid: str) -> dict[str, Any]:
    message_id = None
    if isinstance(result, dict):
        message_id = (result.get("key") or {}).get("id")
    return {
        "success": True,
        "message_id": message_id,
        "to": jid,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


async def send_text_message(handle: Any, number: str, message: str) -> dict[str, Any]:
    ok, error = validate_phone_number(number)
    if not ok:
        return {"success": False, "error": error}
    ok, error = validate_message(message)
    if not ok:
        return {"success": False, "error": error}
    if not _is_ready(handle):
        return {"success": False, "error": "WhatsApp not connected"}

    jid = format_phone_number(number)
    try:
        result = await handle.send_message(jid, {"text": message})
    except Exception as e:
        logger.error("wa.messaging.send_failed", to=jid, error=str(e))
        return {"success": False, "error": str(e) or "Failed to send message"}
    return _sent(result, jid)


def build_media_content(media: dict[str, Any]) -> dict[str, Any] | None:
    media_type = media.get("type")
    url = media.get("url")
    caption = media.get("caption") or ""
    if media_type == "image":
        return {"image": {"url": url}, "caption": caption}
    if media_type == "video":
        return {"video": {"url": url}, "caption": caption}
    if media_type == "document":
        return {"document": {"url": url}, "fileName": media.get("file_name") or "document", "caption": caption}
    if media_type == "audio":
        return {"audio": {"url": url}, "ptt": bool(media.get("ptt", False))}
    return None


async def send_media_message(handle: Any, number: str, media: dict[str, Any]) -> dict[str, Any]:
    ok, error = validate_phone_number(number)
    if not ok:
        return {"success": False, "error": error}
    if not _is_ready(handle):
        return {"success": False, "error": "WhatsApp not connected"}
    content = build_media_content(media)
    if content is None:
        return {"success": False, "error": "Invalid media type"}

    jid = format_phone_number(number)
    try:
        result = await handle.send_message(jid, content)
    except Exception as e:
        logger.error("wa.messaging.send_media_failed", to=jid, media_type=media.get("type"), error=str(e))
        return {"success": False, "error": str(e) or "Failed to send media message"}
    return _sent(result, jid)


def get_connection_status(handle: Any, status: dict[str, Any], qr: str | None = None) -> dict[str, Any]:
    """Control-surface view of one session, joining status and live handle."""
    return {
        "status": status.get("status") or "disconnected",
        "is_connected": status.get("status") == "open",
        "phone_number": status.get("phone_number"),
        "has_qr": bool(qr),
        "qr": qr,
        "user": getattr(handle, "user", None) if handle is not None else None,
    }


def _plain_text(content: dict[str, Any] | None) -> str:
    if not content:
        return ""
    return content.get("conversation") or (content.get("extendedTextMessage") or {}).get("text") or ""


def extract_text(message: dict[str, Any], quote_prefix: str = "(Replying to: \"{}\") ") -> str:
    """Text of an inbound message, prefixed with the quoted message if any."""
    content = message.get("message") or {}
    text = _plain_text(content)
    if not text:
        return ""
    context = (content.get("extendedTextMessage") or {}).get("contextInfo") or {}
    quoted = _plain_text(context.get("quotedMessage"))
    if quoted:
        return quote_prefix.format(quoted) + text
    return text


def sender_number(jid: str) -> str:
    return _NON_DIGITS.sub("", jid.split("@")[0].split(":")[0])
