"""WA Gateway – Multi-session WhatsApp gateway.

FastAPI control surface over the session core: boots the configured
sessions, runs the liveness supervisors and exposes session, messaging and
bot configuration routes.
"""

import asyncio
import time
from contextlib import asynccontextmanager
from typing import Any

import structlog
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from app.core.db import run_migrations
from app.core.errors import GatewayError
from app.core.instrumentation import set_session_counts_provider, setup_instrumentation
from app.gateway.dependencies import connection_manager, redis_bus, registry, supervisor
from config.settings import Settings, get_settings

logger = structlog.get_logger()

VERSION = "1.0.0"

# --- Globals ---
settings: Settings = get_settings()
started_at = time.time()


def _parse_cors_origins(raw: str) -> list[str]:
    origins = [item.strip() for item in (raw or "").split(",") if item.strip()]
    return origins or ["http://localhost:5173"]


def _enforce_startup_guards() -> None:
    if not settings.is_production:
        return
    if settings.auth_secret in {"", "change-me-long-random-secret", "changeme", "password123"}:
        raise RuntimeError("Refusing startup in production due to weak/default AUTH_SECRET.")


def _handle_loop_exception(loop: asyncio.AbstractEventLoop, context: dict[str, Any]) -> None:
    exc = context.get("exception")
    logger.error(
        "gateway.unhandled_async_error",
        message=context.get("message"),
        error=f"{exc.__class__.__name__}: {exc}" if exc else None,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):  # type: ignore[type-arg]
    """Boot sessions and supervisors on startup; close every socket on shutdown."""
    _enforce_startup_guards()
    asyncio.get_running_loop().set_exception_handler(_handle_loop_exception)
    run_migrations()
    logger.info("gateway.startup", version=VERSION, env=settings.environment)
    try:
        await redis_bus.connect()
    except Exception:
        logger.warning("gateway.redis_unavailable", msg="Starting without Redis")

    for session_id in settings.boot_session_ids:
        logger.info("gateway.boot_session", session_id=session_id)
        connection_manager.start_connect(session_id)
    supervisor.start()

    yield

    await supervisor.stop()
    await connection_manager.shutdown()
    await redis_bus.disconnect()
    logger.info("gateway.shutdown")


app = FastAPI(
    title="WA Gateway",
    description="Multi-tenant WhatsApp gateway – session lifecycle, messaging and bot configuration",
    version=VERSION,
    lifespan=lifespan,
)

setup_instrumentation(app, settings.log_level)
set_session_counts_provider(registry.status_counts)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_parse_cors_origins(settings.cors_allowed_origins),
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["*"],
)

from app.gateway.routers.config import router as config_router
app.include_router(config_router)

from app.gateway.routers.whatsapp import router as whatsapp_router
app.include_router(whatsapp_router)


# ──────────────────────────────────────────
# Error handling
# ──────────────────────────────────────────

@app.exception_handler(GatewayError)
async def gateway_error_handler(request: Request, exc: GatewayError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content={"success": False, "error": exc.message})


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    detail = exc.detail
    if exc.status_code == 404 and detail == "Not Found":
        detail = "Endpoint not found"
    return JSONResponse(status_code=exc.status_code, content={"success": False, "error": detail})


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = [
        f"{'.'.join(str(part) for part in err.get('loc', ()) if part != 'body')}: {err.get('msg')}"
        for err in exc.errors()
    ]
    return JSONResponse(status_code=400, content={"success": False, "error": "; ".join(errors)})


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error("gateway.unhandled_error", path=request.url.path, error=f"{exc.__class__.__name__}: {exc}")
    return JSONResponse(status_code=500, content={"success": False, "error": "Internal server error"})


# ──────────────────────────────────────────
# Service endpoints
# ──────────────────────────────────────────

@app.get("/")
async def root() -> dict[str, Any]:
    sessions = connection_manager.list_sessions()
    return {
        "message": "WhatsApp Gateway API",
        "status": "running",
        "version": VERSION,
        "sessions_count": len(sessions),
        "sessions": sessions,
    }


@app.get("/health")
async def health_check() -> dict[str, Any]:
    redis_ok = await redis_bus.health_check()
    return {
        "status": "healthy",
        "uptime": round(time.time() - started_at, 3),
        "sessions_count": registry.count(),
        "redis": "connected" if redis_ok else "disconnected",
    }
