"""WA Gateway – Chat history.

One row per (contact jid, tenant) holding a bounded JSON list of turns plus
the counters the proactive sweep selects on.
"""

from __future__ import annotations

import asyncio
import json
import threading
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

import structlog
from sqlalchemy.orm import Session

from app.core.db import SessionLocal
from app.core.models import ChatHistory

logger = structlog.get_logger()

MAX_HISTORY = 100
PROACTIVE_LIMIT = 7
PROACTIVE_IDLE_MIN = timedelta(minutes=10)
PROACTIVE_IDLE_MAX = timedelta(minutes=60)


def _as_utc(value: datetime | None) -> datetime | None:
    # sqlite hands back naive datetimes; every stored value is UTC.
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _load_turns(raw: str | None) -> list[dict[str, Any]]:
    try:
        turns = json.loads(raw or "[]")
    except (TypeError, ValueError):
        return []
    return turns if isinstance(turns, list) else []


def _owned_by(user_id: str | None):
    if user_id:
        return ChatHistory.user_id == user_id
    return ChatHistory.user_id.is_(None)


class HistoryService:
    def __init__(
        self,
        session_factory: Callable[[], Session] = SessionLocal,
        max_history: int = MAX_HISTORY,
        proactive_limit: int = PROACTIVE_LIMIT,
    ) -> None:
        self._session_factory = session_factory
        self._lock = threading.RLock()
        self.max_history = max_history
        self.proactive_limit = proactive_limit

    def get_history(self, jid: str, user_id: str | None = None) -> list[dict[str, Any]]:
        with self._lock:
            db = self._session_factory()
            try:
                row = db.query(ChatHistory).filter(ChatHistory.jid == jid, _owned_by(user_id)).first()
                return _load_turns(row.history) if row is not None else []
            except Exception as e:
                logger.error("history.fetch_failed", jid=jid, user_id=user_id, error=str(e))
                return []
            finally:
                db.close()

    def save_message(
        self,
        jid: str,
        push_name: str | None,
        role: str,
        content: str,
        user_id: str | None = None,
        latency_ms: int | None = None,
        is_proactive: bool = False,
    ) -> None:
        """Append one turn, keeping only the newest ``max_history`` turns."""
        now = datetime.now(timezone.utc)
        with self._lock:
            db = self._session_factory()
            try:
                row = db.query(ChatHistory).filter(ChatHistory.jid == jid, _owned_by(user_id)).first()
                if row is None:
                    row = ChatHistory(jid=jid, user_id=user_id, msg_count=0, proactive_count=0, history="[]")
                    db.add(row)
                turns = _load_turns(row.history)
                turns.append(
                    {
                        "role": role,
                        "content": content,
                        "is_proactive": is_proactive,
                        "latency": latency_ms,
                        "timestamp": now.isoformat(),
                    }
                )
                row.history = json.dumps(turns[-self.max_history:])
                row.msg_count = (row.msg_count or 0) + 1
                if is_proactive:
                    row.proactive_count = (row.proactive_count or 0) + 1
                row.push_name = push_name or row.push_name or "Unknown User"
                row.last_sender = role
                row.last_active = now
                db.commit()
            except Exception as e:
                db.rollback()
                logger.error("history.save_failed", jid=jid, user_id=user_id, error=str(e))
            finally:
                db.close()

    @staticmethod
    def format_for_prompt(history: list[dict[str, Any]]) -> str:
        lines = []
        for turn in history or []:
            speaker = "Customer" if turn.get("role") == "user" else "AI Assistant"
            lines.append(f"{speaker}: {turn.get('content', '')}")
        return "\n".join(lines)

    def get_all_chat_stats(self, user_id: str | None = None) -> list[dict[str, Any]]:
        with self._lock:
            db = self._session_factory()
            try:
                rows = (
                    db.query(ChatHistory)
                    .filter(_owned_by(user_id))
                    .order_by(ChatHistory.last_active.desc())
                    .all()
                )
                stats = []
                for row in rows:
                    turns = _load_turns(row.history)
                    last_model = next((t for t in reversed(turns) if t.get("role") == "model"), None)
                    last_active = _as_utc(row.last_active)
                    stats.append(
                        {
                            "jid": row.jid,
                            "push_name": row.push_name,
                            "msg_count": row.msg_count,
                            "last_active": last_active.isoformat() if last_active else None,
                            "last_latency": last_model.get("latency") if last_model else None,
                        }
                    )
                return stats
            except Exception as e:
                logger.error("history.stats_failed", user_id=user_id, error=str(e))
                return []
            finally:
                db.close()

    def proactive_candidates(self, user_id: str | None = None, now: datetime | None = None) -> list[dict[str, Any]]:
        """Conversations where the bot spoke last and the contact went quiet.

        Idle between 10 and 60 minutes and below the proactive nudge limit.
        """
        now = now or datetime.now(timezone.utc)
        with self._lock:
            db = self._session_factory()
            try:
                rows = (
                    db.query(ChatHistory)
                    .filter(
                        ChatHistory.last_sender == "model",
                        ChatHistory.proactive_count < self.proactive_limit,
                        _owned_by(user_id),
                    )
                    .all()
                )
                candidates = []
                for row in rows:
                    last_active = _as_utc(row.last_active)
                    if last_active is None:
                        continue
                    idle = now - last_active
                    if PROACTIVE_IDLE_MIN <= idle <= PROACTIVE_IDLE_MAX:
                        candidates.append(
                            {"jid": row.jid, "push_name": row.push_name, "history": _load_turns(row.history)}
                        )
                return candidates
            finally:
                db.close()

    def clear_history(self, user_id: str | None = None) -> int:
        """Empty stored turns and reset proactive counters. ``None`` clears every tenant."""
        with self._lock:
            db = self._session_factory()
            try:
                query = db.query(ChatHistory)
                if user_id:
                    query = query.filter(ChatHistory.user_id == user_id)
                cleared = query.update(
                    {ChatHistory.history: "[]", ChatHistory.proactive_count: 0},
                    synchronize_session=False,
                )
                db.commit()
                return int(cleared or 0)
            except Exception:
                db.rollback()
                raise
            finally:
                db.close()

    async def clear_all_history(self, user_id: str | None = None) -> int:
        cleared = await asyncio.to_thread(self.clear_history, user_id)
        logger.info("history.cleared", user_id=user_id, rows=cleared)
        return cleared
