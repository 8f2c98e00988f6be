"""Responder interface.

A responder owns the automated behaviour of one class of sessions. The
message router picks the first registered responder whose ``accepts()``
matches the session id and hands it every inbound message that passed the
router's policy checks.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any

import structlog

logger = structlog.get_logger()


class Responder(ABC):
    """Abstract base class for per-session automated responders."""

    #: Route inbound messages through the contact allow-list first.
    requires_allow_list: bool = False

    @property
    @abstractmethod
    def name(self) -> str:
        """Responder identifier used in logs and metrics."""

    @abstractmethod
    def accepts(self, session_id: str) -> bool:
        """Whether this responder serves ``session_id``."""

    @abstractmethod
    async def handle_incoming_message(self, session_id: str, handle: Any, message: dict[str, Any]) -> None:
        """Process one inbound message, replying through ``handle``."""

    async def check_proactive_opportunity(self, session_id: str, handle: Any) -> None:
        """Send unsolicited follow-ups where appropriate. Default: nothing."""
        return None

    @property
    def supports_proactive(self) -> bool:
        return type(self).check_proactive_opportunity is not Responder.check_proactive_opportunity
