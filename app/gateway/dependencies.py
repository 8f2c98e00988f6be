"""Shared dependencies for the Gateway routers.

The one place where the session core is assembled: a single registry is
created here and injected into the connection manager, router and
supervisors. Routers reach the objects through the ``get_*`` functions so
tests can override them with ``app.dependency_overrides``.
"""

from typing import Optional

import structlog
from fastapi import Header

from app.gateway.redis_bus import RedisBus
from app.gateway.schemas import SessionEvent
from app.responders.ai_bot import AIBotResponder
from app.responders.cs_bot import CSBotResponder
from app.responders.llm import GeminiClient
from app.services.config_service import ConfigService
from app.services.history_service import HistoryService
from app.whatsapp.bridge import BridgeTransport
from app.whatsapp.connection import ConnectionManager
from app.whatsapp.credential_store import CredentialStore
from app.whatsapp.registry import SessionRecord, SessionRegistry
from app.whatsapp.router import MessageRouter
from app.whatsapp.supervisors import LivenessSupervisor, SweepIntervals
from config.settings import get_settings

logger = structlog.get_logger()
settings = get_settings()

# Initialize Singletons
redis_bus = RedisBus(redis_url=settings.redis_url)
registry = SessionRegistry()
credential_store = CredentialStore()
config_service = ConfigService()
history_service = HistoryService()

transport_lib = BridgeTransport(
    base_url=settings.bridge_url,
    ws_url=settings.bridge_ws_url,
    api_key=settings.bridge_api_key,
)

message_router = MessageRouter(policy=config_service)
message_router.register(CSBotResponder(session_id=settings.cs_bot_session_id))
message_router.register(
    AIBotResponder(
        config_service=config_service,
        history_service=history_service,
        llm=GeminiClient(),
        session_id=settings.ai_bot_session_id,
    )
)


async def publish_session_event(record: SessionRecord) -> None:
    """Mirror a lifecycle transition onto the Redis bus, if connected."""
    if not redis_bus.connected:
        return
    event = SessionEvent(
        session_id=record.session_id,
        status=record.status.value,
        identity=record.identity.as_dict() if record.identity else None,
    )
    try:
        await redis_bus.publish(RedisBus.CHANNEL_EVENTS, event.model_dump_json())
    except Exception as e:
        logger.warning("gateway.session_event_publish_failed", session_id=record.session_id, error=str(e))


connection_manager = ConnectionManager(
    registry=registry,
    store=credential_store,
    transport_lib=transport_lib,
    dispatcher=message_router,
    identity_store=config_service,
    event_sink=publish_session_event,
    reconnect_delay=settings.reconnect_delay_seconds,
    open_timeout=settings.transport_open_timeout_seconds,
    ai_bot_prefix=settings.ai_bot_session_id,
    browser=tuple(part.strip() for part in settings.bridge_browser.split(",")),
)

supervisor = LivenessSupervisor(
    manager=connection_manager,
    registry=registry,
    router=message_router,
    history_service=history_service,
    intervals=SweepIntervals(
        auto_heal=settings.auto_heal_interval_seconds,
        keepalive=settings.keepalive_interval_seconds,
        proactive=settings.proactive_interval_seconds,
        history_retention=settings.history_retention_interval_seconds,
    ),
)


def get_redis_bus() -> RedisBus:
    return redis_bus


def get_registry() -> SessionRegistry:
    return registry


def get_connection_manager() -> ConnectionManager:
    return connection_manager


def get_config_service() -> ConfigService:
    return config_service


def get_history_service() -> HistoryService:
    return history_service


def get_user_id(x_user_id: Optional[str] = Header(default=None)) -> Optional[str]:
    """Tenant scope from the optional ``X-User-Id`` header."""
    value = (x_user_id or "").strip()
    if not value or value in {"null", "undefined"}:
        return None
    return value
