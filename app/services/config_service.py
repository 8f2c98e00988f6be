"""WA Gateway – Bot configuration service.

Owns the per-tenant bot configuration: JSON settings and counters, system
prompts, the contact allow-list, provider API keys and the tenant → WhatsApp
identity mapping. ``user_id`` is the tenant UUID; ``None`` addresses the
global (single-tenant) bot.

Methods are blocking SQLAlchemy calls guarded by one lock. Async callers use
``asyncio.to_thread``; the router and connection manager get the awaitable
``is_contact_allowed`` / ``record_mapping`` / ``remove_mapping`` wrappers.
"""

from __future__ import annotations

import asyncio
import json
import re
import threading
from datetime import datetime, timezone
from typing import Any, Callable

import structlog
from sqlalchemy.orm import Session

from app.core.crypto import decrypt_value, encrypt_value, mask_secret
from app.core.db import SessionLocal
from app.core.errors import ValidationFailed
from app.core.models import BotApiKey, BotContact, BotPrompt, BotSetting, UserSession
from config.settings import get_settings

logger = structlog.get_logger()

TARGET_MODES = ("all", "whitelist")
DEFAULT_STATS = {"requests": 0, "responses": 0}


def scoped_key(key: str, user_id: str | None) -> str:
    return f"{key}:{user_id}" if user_id else key


def normalize_contact_jid(jid: str) -> str:
    if "@" in jid:
        return jid
    digits = re.sub(r"\D", "", jid)
    return f"{digits}@s.whatsapp.net"


def _owned_by(model: Any, user_id: str | None):
    if user_id:
        return model.user_id == user_id
    return model.user_id.is_(None)


class ConfigService:
    def __init__(self, session_factory: Callable[[], Session] = SessionLocal) -> None:
        self._session_factory = session_factory
        self._lock = threading.RLock()

    # ──────────────────────────────────────────────────────────────
    # Settings & stats
    # ──────────────────────────────────────────────────────────────

    def get_setting(self, setting_id: str, default: Any = None) -> Any:
        with self._lock:
            db = self._session_factory()
            try:
                row = db.query(BotSetting).filter(BotSetting.id == setting_id).first()
                if row is None:
                    return default
                try:
                    return json.loads(row.value)
                except (TypeError, ValueError):
                    logger.warning("config.setting_corrupt", setting_id=setting_id)
                    return default
            finally:
                db.close()

    def update_setting(self, setting_id: str, value: Any) -> bool:
        with self._lock:
            db = self._session_factory()
            try:
                db.merge(
                    BotSetting(
                        id=setting_id,
                        value=json.dumps(value),
                        updated_at=datetime.now(timezone.utc),
                    )
                )
                db.commit()
                return True
            except Exception as e:
                db.rollback()
                logger.error("config.setting_update_failed", setting_id=setting_id, error=str(e))
                return False
            finally:
                db.close()

    def get_stats(self, user_id: str | None = None) -> dict[str, int]:
        stats = self.get_setting(scoped_key("global_stats", user_id))
        return stats if isinstance(stats, dict) else dict(DEFAULT_STATS)

    def increment_stat(self, key: str, user_id: str | None = None) -> None:
        with self._lock:
            stats = self.get_stats(user_id)
            stats[key] = int(stats.get(key, 0)) + 1
            self.update_setting(scoped_key("global_stats", user_id), stats)

    # ──────────────────────────────────────────────────────────────
    # System prompts
    # ──────────────────────────────────────────────────────────────

    def get_system_prompt(self, user_id: str | None = None) -> str:
        """Active prompt, else the stored prompt setting, else the configured default."""
        with self._lock:
            db = self._session_factory()
            try:
                active = (
                    db.query(BotPrompt)
                    .filter(BotPrompt.is_active.is_(True), _owned_by(BotPrompt, user_id))
                    .order_by(BotPrompt.id.desc())
                    .first()
                )
                if active is not None and active.content:
                    return active.content
            finally:
                db.close()
        stored = self.get_setting(scoped_key("system_prompt", user_id)) or {}
        return stored.get("text") or get_settings().ai_bot_system_prompt

    def set_system_prompt(self, text: str, user_id: str | None = None) -> bool:
        return self.update_setting(scoped_key("system_prompt", user_id), {"text": text})

    def list_prompts(self, user_id: str | None = None) -> list[dict[str, Any]]:
        with self._lock:
            db = self._session_factory()
            try:
                rows = (
                    db.query(BotPrompt)
                    .filter(_owned_by(BotPrompt, user_id))
                    .order_by(BotPrompt.created_at.desc(), BotPrompt.id.desc())
                    .all()
                )
                return [
                    {
                        "id": row.id,
                        "name": row.name,
                        "content": row.content,
                        "is_active": bool(row.is_active),
                        "user_id": row.user_id,
                        "created_at": row.created_at.isoformat() if row.created_at else None,
                    }
                    for row in rows
                ]
            finally:
                db.close()

    def create_prompt(self, name: str, content: str, user_id: str | None = None, is_active: bool = False) -> int:
        with self._lock:
            db = self._session_factory()
            try:
                row = BotPrompt(name=name, content=content, user_id=user_id, is_active=False)
                db.add(row)
                db.commit()
                db.refresh(row)
                prompt_id = int(row.id)
            finally:
                db.close()
            if is_active:
                self.activate_prompt(prompt_id, user_id)
            return prompt_id

    def update_prompt(self, prompt_id: int, name: str | None, content: str | None, user_id: str | None = None) -> bool:
        with self._lock:
            db = self._session_factory()
            try:
                row = (
                    db.query(BotPrompt)
                    .filter(BotPrompt.id == prompt_id, _owned_by(BotPrompt, user_id))
                    .first()
                )
                if row is None:
                    return False
                if name is not None:
                    row.name = name
                if content is not None:
                    row.content = content
                db.commit()
                return True
            finally:
                db.close()

    def delete_prompt(self, prompt_id: int, user_id: str | None = None) -> bool:
        with self._lock:
            db = self._session_factory()
            try:
                deleted = (
                    db.query(BotPrompt)
                    .filter(BotPrompt.id == prompt_id, _owned_by(BotPrompt, user_id))
                    .delete(synchronize_session=False)
                )
                db.commit()
                return bool(deleted)
            finally:
                db.close()

    def activate_prompt(self, prompt_id: int, user_id: str | None = None) -> bool:
        """Make ``prompt_id`` the only active prompt of its owner."""
        with self._lock:
            db = self._session_factory()
            try:
                row = (
                    db.query(BotPrompt)
                    .filter(BotPrompt.id == prompt_id, _owned_by(BotPrompt, user_id))
                    .first()
                )
                if row is None:
                    return False
                db.query(BotPrompt).filter(
                    _owned_by(BotPrompt, user_id), BotPrompt.id != prompt_id
                ).update({BotPrompt.is_active: False}, synchronize_session=False)
                row.is_active = True
                db.commit()
                return True
            finally:
                db.close()

    # ──────────────────────────────────────────────────────────────
    # Allow-list
    # ──────────────────────────────────────────────────────────────

    def get_target_mode(self, user_id: str | None = None) -> str:
        setting = self.get_setting(scoped_key("target_mode", user_id)) or {}
        mode = setting.get("mode") if isinstance(setting, dict) else None
        return mode if mode in TARGET_MODES else "all"

    def set_target_mode(self, mode: str, user_id: str | None = None) -> bool:
        if mode not in TARGET_MODES:
            raise ValidationFailed(f"mode must be one of: {', '.join(TARGET_MODES)}")
        return self.update_setting(scoped_key("target_mode", user_id), {"mode": mode})

    def contact_allowed(self, jid: str, user_id: str | None = None) -> bool:
        if self.get_target_mode(user_id) == "all":
            return True
        with self._lock:
            db = self._session_factory()
            try:
                row = (
                    db.query(BotContact)
                    .filter(BotContact.jid == normalize_contact_jid(jid), _owned_by(BotContact, user_id))
                    .first()
                )
                return bool(row is not None and row.is_allowed)
            finally:
                db.close()

    async def is_contact_allowed(self, jid: str, user_id: str | None = None) -> bool:
        try:
            return await asyncio.to_thread(self.contact_allowed, jid, user_id)
        except Exception as e:
            logger.error("config.allow_list_check_failed", error=str(e))
            return False

    def list_contacts(self, user_id: str | None = None) -> list[dict[str, Any]]:
        with self._lock:
            db = self._session_factory()
            try:
                rows = (
                    db.query(BotContact)
                    .filter(BotContact.is_allowed.is_(True), _owned_by(BotContact, user_id))
                    .order_by(BotContact.id)
                    .all()
                )
                return [
                    {"jid": row.jid, "push_name": row.push_name, "is_allowed": bool(row.is_allowed), "user_id": row.user_id}
                    for row in rows
                ]
            finally:
                db.close()

    def add_contact(self, jid: str, name: str | None, user_id: str | None) -> str:
        if not user_id:
            raise ValidationFailed("A user id is required to manage contacts")
        if not jid:
            raise ValidationFailed("jid is required")
        clean = normalize_contact_jid(jid)
        with self._lock:
            db = self._session_factory()
            try:
                row = db.query(BotContact).filter(BotContact.jid == clean, BotContact.user_id == user_id).first()
                if row is None:
                    row = BotContact(jid=clean, user_id=user_id)
                    db.add(row)
                row.push_name = name
                row.is_allowed = True
                db.commit()
                logger.info("config.contact_added", user_id=user_id, jid=clean)
                return clean
            finally:
                db.close()

    def update_contact(self, jid: str, name: str | None, user_id: str | None = None) -> bool:
        with self._lock:
            db = self._session_factory()
            try:
                updated = (
                    db.query(BotContact)
                    .filter(BotContact.jid == normalize_contact_jid(jid), _owned_by(BotContact, user_id))
                    .update({BotContact.push_name: name}, synchronize_session=False)
                )
                db.commit()
                return bool(updated)
            finally:
                db.close()

    def remove_contact(self, jid: str, user_id: str | None = None) -> bool:
        with self._lock:
            db = self._session_factory()
            try:
                deleted = (
                    db.query(BotContact)
                    .filter(BotContact.jid == normalize_contact_jid(jid), _owned_by(BotContact, user_id))
                    .delete(synchronize_session=False)
                )
                db.commit()
                return bool(deleted)
            finally:
                db.close()

    # ──────────────────────────────────────────────────────────────
    # Provider API keys
    # ──────────────────────────────────────────────────────────────

    def get_gemini_api_key(self, user_id: str | None = None) -> dict[str, Any]:
        """Active key for ``user_id`` as ``{key, model, version}``, else env defaults."""
        settings = get_settings()
        fallback = {
            "key": settings.gemini_api_key or None,
            "model": settings.gemini_model,
            "version": settings.gemini_api_version,
        }
        with self._lock:
            db = self._session_factory()
            try:
                row = (
                    db.query(BotApiKey)
                    .filter(BotApiKey.is_active.is_(True), _owned_by(BotApiKey, user_id))
                    .order_by(BotApiKey.id.desc())
                    .first()
                )
            except Exception as e:
                logger.error("config.api_key_lookup_failed", user_id=user_id, error=str(e))
                return fallback
            finally:
                db.close()
        if row is None:
            return fallback
        return {
            "key": decrypt_value(row.key_value) or fallback["key"],
            "model": row.model_name or fallback["model"],
            "version": row.api_version or fallback["version"],
        }

    def list_api_keys(self, user_id: str | None = None) -> list[dict[str, Any]]:
        with self._lock:
            db = self._session_factory()
            try:
                rows = (
                    db.query(BotApiKey)
                    .filter(_owned_by(BotApiKey, user_id))
                    .order_by(BotApiKey.created_at.desc(), BotApiKey.id.desc())
                    .all()
                )
                return [
                    {
                        "id": row.id,
                        "name": row.name,
                        "key_value": mask_secret(decrypt_value(row.key_value)),
                        "model_name": row.model_name,
                        "api_version": row.api_version,
                        "is_active": bool(row.is_active),
                    }
                    for row in rows
                ]
            finally:
                db.close()

    def add_api_key(
        self,
        name: str,
        key: str,
        model: str | None = None,
        version: str | None = None,
        user_id: str | None = None,
    ) -> int:
        if not name or not key:
            raise ValidationFailed("name and key are required")
        settings = get_settings()
        with self._lock:
            db = self._session_factory()
            try:
                row = BotApiKey(
                    name=name,
                    key_value=encrypt_value(key),
                    model_name=model or settings.gemini_model,
                    api_version=version or settings.gemini_api_version,
                    is_active=False,
                    user_id=user_id,
                )
                db.add(row)
                db.commit()
                db.refresh(row)
                return int(row.id)
            finally:
                db.close()

    def update_api_key(
        self,
        key_id: int,
        name: str | None = None,
        key: str | None = None,
        model: str | None = None,
        version: str | None = None,
        user_id: str | None = None,
    ) -> bool:
        with self._lock:
            db = self._session_factory()
            try:
                row = db.query(BotApiKey).filter(BotApiKey.id == key_id, _owned_by(BotApiKey, user_id)).first()
                if row is None:
                    return False
                if name:
                    row.name = name
                if key:
                    row.key_value = encrypt_value(key)
                if model:
                    row.model_name = model
                if version:
                    row.api_version = version
                db.commit()
                return True
            finally:
                db.close()

    def delete_api_key(self, key_id: int, user_id: str | None = None) -> bool:
        with self._lock:
            db = self._session_factory()
            try:
                deleted = (
                    db.query(BotApiKey)
                    .filter(BotApiKey.id == key_id, _owned_by(BotApiKey, user_id))
                    .delete(synchronize_session=False)
                )
                db.commit()
                return bool(deleted)
            finally:
                db.close()

    def activate_api_key(self, key_id: int, user_id: str | None = None) -> bool:
        with self._lock:
            db = self._session_factory()
            try:
                row = db.query(BotApiKey).filter(BotApiKey.id == key_id, _owned_by(BotApiKey, user_id)).first()
                if row is None:
                    return False
                db.query(BotApiKey).filter(
                    _owned_by(BotApiKey, user_id), BotApiKey.id != key_id
                ).update({BotApiKey.is_active: False}, synchronize_session=False)
                row.is_active = True
                db.commit()
                return True
            finally:
                db.close()

    # ──────────────────────────────────────────────────────────────
    # Tenant → WhatsApp identity mapping
    # ──────────────────────────────────────────────────────────────

    def upsert_user_session(self, user_id: str, wa_session_id: str, is_primary: bool = False) -> bool:
        with self._lock:
            db = self._session_factory()
            try:
                row = (
                    db.query(UserSession)
                    .filter(UserSession.user_id == user_id, UserSession.wa_session_id == wa_session_id)
                    .first()
                )
                if row is None:
                    row = UserSession(user_id=user_id, wa_session_id=wa_session_id)
                    db.add(row)
                row.is_primary = is_primary
                db.commit()
                return True
            except Exception:
                db.rollback()
                raise
            finally:
                db.close()

    def remove_user_sessions(self, user_id: str) -> int:
        with self._lock:
            db = self._session_factory()
            try:
                deleted = db.query(UserSession).filter(UserSession.user_id == user_id).delete(synchronize_session=False)
                db.commit()
                return int(deleted or 0)
            except Exception:
                db.rollback()
                raise
            finally:
                db.close()

    def list_user_sessions(self, user_id: str) -> list[str]:
        with self._lock:
            db = self._session_factory()
            try:
                rows = db.query(UserSession).filter(UserSession.user_id == user_id).all()
                return [row.wa_session_id for row in rows]
            finally:
                db.close()

    async def record_mapping(self, tenant_id: str, identity: Any) -> None:
        await asyncio.to_thread(self.upsert_user_session, tenant_id, identity.jid)
        logger.info("config.identity_mapped", tenant_id=tenant_id, jid=identity.jid)

    async def remove_mapping(self, tenant_id: str) -> None:
        removed = await asyncio.to_thread(self.remove_user_sessions, tenant_id)
        logger.info("config.identity_unmapped", tenant_id=tenant_id, rows=removed)
