from datetime import datetime, timezone
from sqlalchemy import Column, Integer, String, DateTime, Text, Boolean, UniqueConstraint
from app.core.db import Base
from config.settings import get_settings

# Non-production deployments keep their rows in the *_local table family.
TABLE_SUFFIX = "" if get_settings().use_production_db else "_local"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CredentialRowMixin:
    """One persisted credential artifact.

    ``id`` is the composite key ``<session_id>:<artifact_type>:<artifact_id>``.
    ``session_id`` is stored separately so bulk deletes match the session
    segment exactly instead of relying on a string prefix.
    """

    id = Column(String, primary_key=True)
    session_id = Column(String, index=True, nullable=False)
    artifact_type = Column(String, nullable=False)
    artifact_id = Column(String, nullable=False)
    value = Column(Text, nullable=False)  # binary-safe encoded JSON
    created_at = Column(DateTime, default=_utcnow)
    updated_at = Column(DateTime, default=_utcnow, onupdate=_utcnow)


class WaSession(CredentialRowMixin, Base):
    """Credentials of general sessions (fixed bot names, ad-hoc ids)."""

    __tablename__ = f"wa_sessions{TABLE_SUFFIX}"


class WaAiSession(CredentialRowMixin, Base):
    """Credentials of AI-bot and tenant-scoped sessions."""

    __tablename__ = f"wa_ai_sessions{TABLE_SUFFIX}"


class UserSession(Base):
    """Durable tenant → WhatsApp identity mapping."""

    __tablename__ = "user_sessions"
    __table_args__ = (UniqueConstraint("user_id", "wa_session_id", name="uq_user_sessions_user_wa"),)

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String, index=True, nullable=False)
    wa_session_id = Column(String, index=True, nullable=False)
    is_primary = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime, default=_utcnow)


class BotSetting(Base):
    __tablename__ = "wa_bot_settings"

    id = Column(String, primary_key=True)
    value = Column(Text, nullable=False)  # JSON
    updated_at = Column(DateTime, default=_utcnow, onupdate=_utcnow)


class BotPrompt(Base):
    __tablename__ = "wa_bot_prompts"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String, index=True, nullable=True)
    name = Column(String, nullable=False)
    content = Column(Text, nullable=False)
    is_active = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime, default=_utcnow)


class BotContact(Base):
    __tablename__ = "wa_bot_contacts"
    __table_args__ = (UniqueConstraint("jid", "user_id", name="uq_wa_bot_contacts_jid_user"),)

    id = Column(Integer, primary_key=True, index=True)
    jid = Column(String, index=True, nullable=False)
    user_id = Column(String, index=True, nullable=True)
    push_name = Column(String, nullable=True)
    is_allowed = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, default=_utcnow)


class BotApiKey(Base):
    __tablename__ = "wa_bot_api_keys"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String, index=True, nullable=True)
    name = Column(String, nullable=False)
    key_value = Column(String, nullable=False)  # Fernet encrypted, "ENC:" prefix
    model_name = Column(String, default="gemini-1.5-flash", nullable=False)
    api_version = Column(String, default="v1beta", nullable=False)
    is_active = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime, default=_utcnow)


class ChatHistory(Base):
    __tablename__ = f"wa_chat_history{TABLE_SUFFIX}"
    __table_args__ = (UniqueConstraint("jid", "user_id", name=f"uq_wa_chat_history{TABLE_SUFFIX}_jid_user"),)

    id = Column(Integer, primary_key=True, index=True)
    jid = Column(String, index=True, nullable=False)
    user_id = Column(String, index=True, nullable=True)
    push_name = Column(String, nullable=True)
    history = Column(Text, default="[]", nullable=False)  # JSON list
    msg_count = Column(Integer, default=0, nullable=False)
    proactive_count = Column(Integer, default=0, nullable=False)
    last_sender = Column(String, nullable=True)
    last_active = Column(DateTime, default=_utcnow)
    created_at = Column(DateTime, default=_utcnow)
