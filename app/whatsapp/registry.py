"""In-memory session registry.

The registry is the single authoritative map from session id to its runtime
record. It performs no I/O, never blocks and never raises for well-formed
input, so transport event handlers can call it freely. Only the connection
manager mutates records.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Iterator

UUID_PATTERN = re.compile(r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$", re.IGNORECASE)


class ConnectionStatus(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    WAITING_QR = "waiting_qr"
    OPEN = "open"
    CLOSE = "close"


class SessionClass(str, Enum):
    """Storage namespace of a session, derived from the shape of its id."""

    GENERAL = "general"
    BOT = "bot"


def is_tenant_session(session_id: str) -> bool:
    """Tenant-scoped sessions are keyed by the tenant's UUID."""
    return bool(UUID_PATTERN.match(session_id or ""))


def classify_session(session_id: str, ai_bot_prefix: str = "wa-bot-ai") -> SessionClass:
    """Pure and total: AI-bot and tenant sessions share the bot namespace."""
    sid = session_id or ""
    if sid.startswith(ai_bot_prefix) or is_tenant_session(sid):
        return SessionClass.BOT
    return SessionClass.GENERAL


@dataclass
class Identity:
    """WhatsApp account a session is logged in as."""

    jid: str
    name: str | None = None

    @property
    def phone_number(self) -> str:
        return self.jid.split("@")[0].split(":")[0]

    def as_dict(self) -> dict[str, Any]:
        return {"id": self.jid, "name": self.name, "phone": self.phone_number}


@dataclass
class SessionRecord:
    session_id: str
    session_class: SessionClass
    epoch: int
    status: ConnectionStatus = ConnectionStatus.CONNECTING
    transport: Any = None
    qr: str | None = None
    identity: Identity | None = None
    release_credentials: Callable[[], Awaitable[None]] | None = None
    auth_state: Any = field(default=None, repr=False)


class SessionRegistry:
    def __init__(self) -> None:
        self._records: dict[str, SessionRecord] = {}

    def get(self, session_id: str) -> SessionRecord | None:
        return self._records.get(session_id)

    def set(self, session_id: str, record: SessionRecord) -> None:
        self._records[session_id] = record

    def delete(self, session_id: str) -> None:
        self._records.pop(session_id, None)

    def is_current(self, session_id: str, epoch: int) -> bool:
        """True while ``epoch`` is the live connection attempt for ``session_id``."""
        record = self._records.get(session_id)
        return record is not None and record.epoch == epoch

    def snapshot(self) -> list[SessionRecord]:
        """Copy of the records; safe to iterate while sessions come and go."""
        return list(self._records.values())

    def for_each(self, fn: Callable[[SessionRecord], Any]) -> None:
        for record in self.snapshot():
            fn(record)

    def list(self) -> list[dict[str, Any]]:
        return [
            {
                "id": record.session_id,
                "status": record.status.value,
                "phone": record.identity.phone_number if record.identity else None,
                "identity": record.identity.as_dict() if record.identity else None,
            }
            for record in self.snapshot()
        ]

    def count(self) -> int:
        return len(self._records)

    def status_counts(self) -> dict[str, int]:
        counts: dict[str, int] = {}
        for record in self.snapshot():
            counts[record.status.value] = counts.get(record.status.value, 0) + 1
        return counts

    def __iter__(self) -> Iterator[SessionRecord]:
        return iter(self.snapshot())

    def __len__(self) -> int:
        return self.count()
