"""Text completion client for the AI bot (Google Generative Language REST API).

Never raises: provider and transport errors map to short fallback replies so
the bot always answers something.
"""

import time
from dataclasses import dataclass
from typing import Any, Optional

import httpx
import structlog

logger = structlog.get_logger()

GEMINI_BASE_URL = "https://generativelanguage.googleapis.com"

NOT_CONFIGURED_REPLY = "Sorry, the AI assistant is not configured yet (missing API key)."
BUSY_REPLY = "Sorry, I'm a bit overloaded right now. Let's continue a little later."
INVALID_KEY_REPLY = "The configured Gemini API key looks invalid or expired. Please check the dashboard."
CONFUSED_REPLY = "Sorry, I didn't quite get that. Could you say it again?"


@dataclass
class CompletionConfig:
    api_key: Optional[str]
    model: str = "gemini-1.5-flash"
    api_version: str = "v1beta"


def build_prompt(user_message: str, history: str, system_prompt: str) -> str:
    parts = [f"System: {system_prompt}", f"User: {user_message}", "Response:"]
    if history:
        parts.insert(1, f"History: {history}")
    return "\n\n".join(parts)


def fallback_reply(status_code: int | None, detail: str = "") -> str:
    if status_code in (404, 429):
        return BUSY_REPLY
    if "API_KEY_INVALID" in detail or "API key not valid" in detail or "API key not found" in detail:
        return INVALID_KEY_REPLY
    return CONFUSED_REPLY


class GeminiClient:
    def __init__(self, base_url: str = GEMINI_BASE_URL, timeout: float = 60.0, transport: Any = None) -> None:
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._transport = transport

    async def generate_response(
        self,
        user_message: str,
        history: str,
        system_prompt: str,
        config: CompletionConfig,
    ) -> str:
        if not config.api_key:
            logger.warning("llm.api_key_missing")
            return NOT_CONFIGURED_REPLY

        url = f"{self._base_url}/{config.api_version}/models/{config.model}:generateContent"
        payload = {"contents": [{"role": "user", "parts": [{"text": build_prompt(user_message, history, system_prompt)}]}]}
        start_time = time.time()
        try:
            async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                resp = await client.post(url, params={"key": config.api_key}, json=payload)
            latency = round((time.time() - start_time) * 1000)
            if resp.status_code != 200:
                detail = resp.text[:200]
                logger.error("llm.provider_error", status=resp.status_code, detail=detail, model=config.model)
                return fallback_reply(resp.status_code, detail)

            data = resp.json()
            text = data["candidates"][0]["content"]["parts"][0]["text"]
            if not text or not text.strip():
                logger.error("llm.empty_response", model=config.model)
                return CONFUSED_REPLY
            logger.info("llm.success", model=config.model, latency_ms=latency)
            return text.strip()
        except Exception as e:
            logger.error("llm.request_failed", model=config.model, error=str(e))
            return fallback_reply(None, str(e))
