"""WA Gateway – Application Configuration.

Pydantic Settings, loaded from a .env file or environment variables.
"""

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Central application configuration."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # --- Gateway ---
    environment: str = "development"
    log_level: str = "info"
    gateway_host: str = "0.0.0.0"
    gateway_port: int = 3001
    cors_allowed_origins: str = "http://localhost:5173,http://localhost:5174"

    # --- Storage ---
    database_url: str = ""
    use_production_db: bool = False  # wa_sessions vs wa_sessions_local table families

    # --- Redis (session lifecycle events, optional) ---
    redis_url: str = "redis://127.0.0.1:6379/0"

    # --- WhatsApp Web bridge ---
    bridge_url: str = "http://localhost:8085"
    bridge_ws_url: str = "ws://localhost:8085/ws"
    bridge_api_key: str = ""
    bridge_browser: str = "WhatsApp Gateway,Chrome,120.0.0"

    # --- Sessions ---
    boot_sessions: str = "main-session,CS-BOT"
    ai_bot_session_id: str = "wa-bot-ai"
    cs_bot_session_id: str = "CS-BOT"
    reconnect_delay_seconds: float = 10.0
    transport_open_timeout_seconds: float = 60.0

    # --- Supervisors ---
    auto_heal_interval_seconds: float = 300.0
    keepalive_interval_seconds: float = 30.0
    proactive_interval_seconds: float = 900.0
    history_retention_interval_seconds: float = 86400.0

    # --- AI responder ---
    gemini_api_key: str = ""
    gemini_model: str = "gemini-1.5-flash"
    gemini_api_version: str = "v1beta"
    ai_bot_system_prompt: str = "You are a friendly AI assistant."

    # --- Outbound ---
    bulk_send_delay_seconds: float = 1.0
    admin_notify_number: str = ""
    admin_dashboard_url: str = ""

    # --- Security ---
    auth_secret: str = "change-me-long-random-secret"

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    @property
    def boot_session_ids(self) -> list[str]:
        return [item.strip() for item in (self.boot_sessions or "").split(",") if item.strip()]


def get_settings() -> Settings:
    """Factory function for settings singleton."""
    return Settings()
