"""WA Gateway – Session and messaging routes."""

import asyncio
from typing import Any

import structlog
from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from app.core.errors import GatewayError, SessionNotConnectedError, SessionNotFoundError, ValidationFailed
from app.gateway.dependencies import get_connection_manager, get_registry
from app.gateway.schemas import (
    PaymentConfirmationRequest,
    SendBulkRequest,
    SendMediaRequest,
    SendTextRequest,
)
from app.whatsapp.connection import ConnectionManager
from app.whatsapp.messaging import get_connection_status, send_media_message, send_text_message
from app.whatsapp.registry import SessionRecord, SessionRegistry
from config.settings import get_settings

router = APIRouter(prefix="/api/whatsapp", tags=["whatsapp"])
logger = structlog.get_logger()

MAX_BULK_RECIPIENTS = 100


def _require_session(registry: SessionRegistry, session_id: str) -> SessionRecord:
    record = registry.get(session_id)
    if record is None:
        raise SessionNotFoundError(session_id)
    return record


def _send_response(result: dict[str, Any], failure_status: int = 400) -> Any:
    if result.get("success"):
        return result
    return JSONResponse(status_code=failure_status, content=result)


def format_idr(amount: float) -> str:
    return "Rp " + f"{amount:,.0f}".replace(",", ".")


@router.get("/sessions")
async def list_sessions(manager: ConnectionManager = Depends(get_connection_manager)) -> dict[str, Any]:
    sessions = manager.list_sessions()
    return {"success": True, "count": len(sessions), "sessions": sessions}


# ──────────────────────────────────────────
# Session lifecycle
# ──────────────────────────────────────────

@router.post("/{session_id}/init")
async def init_session(session_id: str, manager: ConnectionManager = Depends(get_connection_manager)) -> dict[str, Any]:
    """Start connecting ``session_id``; progress is visible via /status and /qr."""
    manager.start_connect(session_id)
    logger.info("gateway.session_init", session_id=session_id)
    return {"success": True, "message": f"Initializing session '{session_id}'..."}


@router.get("/{session_id}/status")
async def session_status(session_id: str, manager: ConnectionManager = Depends(get_connection_manager)) -> dict[str, Any]:
    status = manager.get_status(session_id)
    view = get_connection_status(manager.get_transport(session_id), status, manager.get_qr(session_id))
    return {"success": True, "session_id": session_id, **view}


@router.get("/{session_id}/qr")
async def session_qr(
    session_id: str,
    manager: ConnectionManager = Depends(get_connection_manager),
    registry: SessionRegistry = Depends(get_registry),
) -> dict[str, Any]:
    record = registry.get(session_id)
    if record is None:
        return {"success": False, "message": "Session not initialized"}
    qr = manager.get_qr(session_id)
    if not qr:
        message = (
            "Already connected, no QR needed"
            if record.status.value == "open"
            else "QR code not available yet, please wait..."
        )
        return {"success": False, "message": message}
    return {"success": True, "qr": qr, "message": "Scan this QR code with WhatsApp"}


@router.post("/{session_id}/logout")
async def logout_session(
    session_id: str,
    manager: ConnectionManager = Depends(get_connection_manager),
    registry: SessionRegistry = Depends(get_registry),
) -> dict[str, Any]:
    _require_session(registry, session_id)
    await manager.logout(session_id)
    return {"success": True, "message": f"Session '{session_id}' logged out successfully."}


@router.get("/{session_id}/info")
async def session_info(session_id: str, registry: SessionRegistry = Depends(get_registry)) -> dict[str, Any]:
    record = _require_session(registry, session_id)
    user = getattr(record.transport, "user", None) if record.transport is not None else None
    if not user or not user.get("id"):
        raise SessionNotConnectedError(session_id)
    return {
        "success": True,
        "user": {"id": user["id"], "name": user.get("name"), "phone": user["id"].split(":")[0].split("@")[0]},
    }


# ──────────────────────────────────────────
# Outbound messaging
# ──────────────────────────────────────────

@router.post("/{session_id}/send")
async def send_text(
    session_id: str,
    payload: SendTextRequest,
    registry: SessionRegistry = Depends(get_registry),
) -> Any:
    record = _require_session(registry, session_id)
    result = await send_text_message(record.transport, payload.number, payload.message)
    return _send_response(result)


@router.post("/{session_id}/send-media")
async def send_media(
    session_id: str,
    payload: SendMediaRequest,
    registry: SessionRegistry = Depends(get_registry),
) -> Any:
    record = _require_session(registry, session_id)
    media = payload.model_dump(exclude={"number"})
    result = await send_media_message(record.transport, payload.number, media)
    return _send_response(result)


@router.post("/{session_id}/send-bulk")
async def send_bulk(
    session_id: str,
    payload: SendBulkRequest,
    registry: SessionRegistry = Depends(get_registry),
) -> dict[str, Any]:
    """Send one text to many recipients, paced to stay under rate limits."""
    record = _require_session(registry, session_id)
    if not payload.numbers:
        raise ValidationFailed("Numbers must be a non-empty array")
    if len(payload.numbers) > MAX_BULK_RECIPIENTS:
        raise ValidationFailed(f"Maximum {MAX_BULK_RECIPIENTS} numbers per request")

    delay = get_settings().bulk_send_delay_seconds
    results = []
    for index, number in enumerate(payload.numbers):
        result = await send_text_message(record.transport, number, payload.message)
        results.append({"number": number, **result})
        if delay > 0 and index < len(payload.numbers) - 1:
            await asyncio.sleep(delay)

    succeeded = sum(1 for r in results if r.get("success"))
    logger.info("gateway.bulk_sent", session_id=session_id, total=len(results), succeeded=succeeded)
    return {
        "success": True,
        "summary": {"total": len(results), "success": succeeded, "failed": len(results) - succeeded},
        "results": results,
    }


@router.post("/{session_id}/notify/payment-confirmation")
async def payment_confirmation(
    session_id: str,
    payload: PaymentConfirmationRequest,
    registry: SessionRegistry = Depends(get_registry),
) -> dict[str, Any]:
    """Relay a payment that needs manual verification to the admin number."""
    record = _require_session(registry, session_id)
    settings = get_settings()
    if not settings.admin_notify_number:
        raise GatewayError("Admin notification number is not configured")

    lines = [
        "🔔 *New Payment Confirmation*",
        "",
        "A payment came in and needs verification.",
        "",
        f"👤 *User:* {payload.user_name}",
        f"📦 *Package:* {payload.package_name}",
        f"💰 *Amount:* {format_idr(payload.amount)}",
        f"🧾 *Invoice:* {payload.invoice_id or '-'}",
    ]
    if settings.admin_dashboard_url:
        lines += ["", "Please verify and activate it in the admin dashboard:", settings.admin_dashboard_url]

    result = await send_text_message(record.transport, settings.admin_notify_number, "\n".join(lines))
    if not result.get("success"):
        logger.error("gateway.payment_notify_failed", session_id=session_id, error=result.get("error"))
        raise GatewayError("Failed to send WhatsApp message")
    return {"success": True, "message": "Notification sent"}
