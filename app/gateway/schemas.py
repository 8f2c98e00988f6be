"""WA Gateway – Request and event schemas."""

from datetime import datetime, timezone
from typing import Any, Literal

from pydantic import BaseModel, Field


class SessionEvent(BaseModel):
    """Lifecycle transition published on the Redis bus."""

    session_id: str
    status: str
    identity: dict[str, Any] | None = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class SendTextRequest(BaseModel):
    number: str = Field(..., description="Recipient phone number or JID")
    message: str = Field(..., description="Text body, at most 4096 characters")


class SendMediaRequest(BaseModel):
    number: str
    type: Literal["image", "video", "document", "audio"]
    url: str
    caption: str | None = None
    file_name: str | None = None
    ptt: bool = False


class SendBulkRequest(BaseModel):
    numbers: list[str] = Field(..., description="Up to 100 recipients")
    message: str


class PaymentConfirmationRequest(BaseModel):
    user_name: str = Field(..., min_length=1)
    package_name: str = Field(..., min_length=1)
    amount: float = Field(..., gt=0)
    invoice_id: str | None = None


class PromptUpsertRequest(BaseModel):
    id: int | None = None
    name: str
    content: str
    is_active: bool = False


class PromptUpdateRequest(BaseModel):
    name: str | None = None
    content: str | None = None


class PromptActivateRequest(BaseModel):
    id: int


class ContactRequest(BaseModel):
    jid: str
    name: str | None = None


class ContactUpdateRequest(BaseModel):
    name: str | None = None


class TargetModeRequest(BaseModel):
    mode: Literal["all", "whitelist"]


class SystemPromptRequest(BaseModel):
    system_prompt: str = Field(..., min_length=1)


class ApiKeyRequest(BaseModel):
    name: str
    key: str
    model: str | None = None
    version: str | None = None


class ApiKeyUpdateRequest(BaseModel):
    name: str | None = None
    key: str | None = None
    model: str | None = None
    version: str | None = None
