"""WA Gateway – Bot configuration routes.

Every route is scoped by the optional ``X-User-Id`` header (tenant UUID);
without it the global bot configuration is addressed.
"""

import asyncio
from typing import Any, Optional

import structlog
from fastapi import APIRouter, Depends, HTTPException

from app.gateway.dependencies import get_config_service, get_history_service, get_user_id
from app.gateway.schemas import (
    ApiKeyRequest,
    ApiKeyUpdateRequest,
    ContactRequest,
    ContactUpdateRequest,
    PromptActivateRequest,
    PromptUpdateRequest,
    PromptUpsertRequest,
    SystemPromptRequest,
    TargetModeRequest,
)
from app.services.config_service import ConfigService
from app.services.history_service import HistoryService

router = APIRouter(prefix="/api/whatsapp", tags=["config"])
logger = structlog.get_logger()


def _found(ok: bool, what: str) -> dict[str, Any]:
    if not ok:
        raise HTTPException(status_code=404, detail=f"{what} not found")
    return {"success": True}


@router.get("/stats/history")
async def chat_stats(
    user_id: Optional[str] = Depends(get_user_id),
    config: ConfigService = Depends(get_config_service),
    history: HistoryService = Depends(get_history_service),
) -> dict[str, Any]:
    chats = await asyncio.to_thread(history.get_all_chat_stats, user_id)
    totals = await asyncio.to_thread(config.get_stats, user_id)
    return {"success": True, "stats": chats, "global": totals}


@router.get("/history/{jid}")
async def chat_history(
    jid: str,
    user_id: Optional[str] = Depends(get_user_id),
    history: HistoryService = Depends(get_history_service),
) -> dict[str, Any]:
    turns = await asyncio.to_thread(history.get_history, jid, user_id)
    return {"success": True, "history": turns}


# ──────────────────────────────────────────
# Prompts
# ──────────────────────────────────────────

@router.get("/config/prompts")
async def list_prompts(
    user_id: Optional[str] = Depends(get_user_id),
    config: ConfigService = Depends(get_config_service),
) -> dict[str, Any]:
    return {"success": True, "prompts": await asyncio.to_thread(config.list_prompts, user_id)}


@router.post("/config/prompts")
async def upsert_prompt(
    payload: PromptUpsertRequest,
    user_id: Optional[str] = Depends(get_user_id),
    config: ConfigService = Depends(get_config_service),
) -> dict[str, Any]:
    if payload.id is not None:
        updated = await asyncio.to_thread(config.update_prompt, payload.id, payload.name, payload.content, user_id)
        _found(updated, "Prompt")
        if payload.is_active:
            await asyncio.to_thread(config.activate_prompt, payload.id, user_id)
        return {"success": True, "id": payload.id}
    prompt_id = await asyncio.to_thread(
        config.create_prompt, payload.name, payload.content, user_id, payload.is_active
    )
    logger.info("config.prompt_created", user_id=user_id, prompt_id=prompt_id)
    return {"success": True, "id": prompt_id}


@router.post("/config/prompts/activate")
async def activate_prompt(
    payload: PromptActivateRequest,
    user_id: Optional[str] = Depends(get_user_id),
    config: ConfigService = Depends(get_config_service),
) -> dict[str, Any]:
    return _found(await asyncio.to_thread(config.activate_prompt, payload.id, user_id), "Prompt")


@router.put("/config/prompts/{prompt_id}")
async def update_prompt(
    prompt_id: int,
    payload: PromptUpdateRequest,
    user_id: Optional[str] = Depends(get_user_id),
    config: ConfigService = Depends(get_config_service),
) -> dict[str, Any]:
    updated = await asyncio.to_thread(config.update_prompt, prompt_id, payload.name, payload.content, user_id)
    return _found(updated, "Prompt")


@router.delete("/config/prompts/{prompt_id}")
async def delete_prompt(
    prompt_id: int,
    user_id: Optional[str] = Depends(get_user_id),
    config: ConfigService = Depends(get_config_service),
) -> dict[str, Any]:
    return _found(await asyncio.to_thread(config.delete_prompt, prompt_id, user_id), "Prompt")


@router.get("/config/prompt")
async def get_system_prompt(
    user_id: Optional[str] = Depends(get_user_id),
    config: ConfigService = Depends(get_config_service),
) -> dict[str, Any]:
    return {"success": True, "system_prompt": await asyncio.to_thread(config.get_system_prompt, user_id)}


@router.post("/config/prompt")
async def set_system_prompt(
    payload: SystemPromptRequest,
    user_id: Optional[str] = Depends(get_user_id),
    config: ConfigService = Depends(get_config_service),
) -> dict[str, Any]:
    await asyncio.to_thread(config.set_system_prompt, payload.system_prompt, user_id)
    return {"success": True, "message": "System prompt updated successfully"}


# ──────────────────────────────────────────
# Contacts allow-list
# ──────────────────────────────────────────

@router.get("/config/contacts")
async def list_contacts(
    user_id: Optional[str] = Depends(get_user_id),
    config: ConfigService = Depends(get_config_service),
) -> dict[str, Any]:
    contacts = await asyncio.to_thread(config.list_contacts, user_id)
    mode = await asyncio.to_thread(config.get_target_mode, user_id)
    return {"success": True, "contacts": contacts, "mode": mode}


@router.post("/config/contacts")
async def add_contact(
    payload: ContactRequest,
    user_id: Optional[str] = Depends(get_user_id),
    config: ConfigService = Depends(get_config_service),
) -> dict[str, Any]:
    jid = await asyncio.to_thread(config.add_contact, payload.jid, payload.name, user_id)
    return {"success": True, "jid": jid}


@router.put("/config/contacts/{jid}")
async def update_contact(
    jid: str,
    payload: ContactUpdateRequest,
    user_id: Optional[str] = Depends(get_user_id),
    config: ConfigService = Depends(get_config_service),
) -> dict[str, Any]:
    return _found(await asyncio.to_thread(config.update_contact, jid, payload.name, user_id), "Contact")


@router.delete("/config/contacts/{jid}")
async def delete_contact(
    jid: str,
    user_id: Optional[str] = Depends(get_user_id),
    config: ConfigService = Depends(get_config_service),
) -> dict[str, Any]:
    return _found(await asyncio.to_thread(config.remove_contact, jid, user_id), "Contact")


@router.post("/config/target-mode")
async def set_target_mode(
    payload: TargetModeRequest,
    user_id: Optional[str] = Depends(get_user_id),
    config: ConfigService = Depends(get_config_service),
) -> dict[str, Any]:
    await asyncio.to_thread(config.set_target_mode, payload.mode, user_id)
    return {"success": True, "mode": payload.mode}


# ──────────────────────────────────────────
# Provider API keys
# ──────────────────────────────────────────

@router.get("/config/keys")
async def list_keys(
    user_id: Optional[str] = Depends(get_user_id),
    config: ConfigService = Depends(get_config_service),
) -> dict[str, Any]:
    return {"success": True, "keys": await asyncio.to_thread(config.list_api_keys, user_id)}


@router.post("/config/keys")
async def add_key(
    payload: ApiKeyRequest,
    user_id: Optional[str] = Depends(get_user_id),
    config: ConfigService = Depends(get_config_service),
) -> dict[str, Any]:
    key_id = await asyncio.to_thread(
        config.add_api_key, payload.name, payload.key, payload.model, payload.version, user_id
    )
    return {"success": True, "id": key_id}


@router.put("/config/keys/{key_id}")
async def update_key(
    key_id: int,
    payload: ApiKeyUpdateRequest,
    user_id: Optional[str] = Depends(get_user_id),
    config: ConfigService = Depends(get_config_service),
) -> dict[str, Any]:
    updated = await asyncio.to_thread(
        config.update_api_key, key_id, payload.name, payload.key, payload.model, payload.version, user_id
    )
    return _found(updated, "API key")


@router.delete("/config/keys/{key_id}")
async def delete_key(
    key_id: int,
    user_id: Optional[str] = Depends(get_user_id),
    config: ConfigService = Depends(get_config_service),
) -> dict[str, Any]:
    return _found(await asyncio.to_thread(config.delete_api_key, key_id, user_id), "API key")


@router.patch("/config/keys/{key_id}/activate")
async def activate_key(
    key_id: int,
    user_id: Optional[str] = Depends(get_user_id),
    config: ConfigService = Depends(get_config_service),
) -> dict[str, Any]:
    return _found(await asyncio.to_thread(config.activate_api_key, key_id, user_id), "API key")
