"""Durable credential store.

Rows are keyed by ``<session_id>:<artifact_type>:<artifact_id>`` and live in
one of two tables chosen by the session's :class:`SessionClass`. All storage
failures are logged and swallowed: a missed write only degrades the next
reconnect, and a failed read is reported as "absent" so the transport falls
back to fresh credentials (a QR rescan).
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Any, Callable

import structlog
from sqlalchemy.orm import Session

from app.core.db import SessionLocal
from app.core.models import CredentialRowMixin, WaAiSession, WaSession
from app.whatsapp import codec
from app.whatsapp.registry import SessionClass

logger = structlog.get_logger()

TABLES: dict[SessionClass, type[CredentialRowMixin]] = {
    SessionClass.GENERAL: WaSession,
    SessionClass.BOT: WaAiSession,
}


def composite_key(session_id: str, artifact_type: str, artifact_id: str) -> str:
    return f"{session_id}:{artifact_type}:{artifact_id}"


class CredentialStore:
    """Async facade over the credential tables."""

    def __init__(self, session_factory: Callable[[], Session] = SessionLocal) -> None:
        self._session_factory = session_factory

    # ──────────────────────────────────────────────────────────────
    # Single-row operations
    # ──────────────────────────────────────────────────────────────

    async def write(
        self,
        session_id: str,
        artifact_type: str,
        artifact_id: str,
        value: Any,
        *,
        session_class: SessionClass,
    ) -> bool:
        """Upsert one artifact. Returns False (after logging) on failure."""
        return await self.write_batch(
            session_id, {artifact_type: {artifact_id: value}}, session_class=session_class
        )

    async def read(
        self,
        session_id: str,
        artifact_type: str,
        artifact_id: str,
        *,
        session_class: SessionClass,
    ) -> Any:
        """Return the decoded artifact, or None when absent or unreadable."""
        found = await self.read_batch(session_id, artifact_type, [artifact_id], session_class=session_class)
        return found.get(artifact_id)

    async def remove(
        self,
        session_id: str,
        artifact_type: str,
        artifact_id: str,
        *,
        session_class: SessionClass,
    ) -> bool:
        return await self.write_batch(
            session_id, {artifact_type: {artifact_id: None}}, session_class=session_class
        )

    # ──────────────────────────────────────────────────────────────
    # Batch operations
    # ──────────────────────────────────────────────────────────────

    async def read_batch(
        self,
        session_id: str,
        artifact_type: str,
        ids: list[str],
        *,
        session_class: SessionClass,
    ) -> dict[str, Any]:
        """Map of ``artifact_id -> value``; missing ids are simply absent."""
        if not ids:
            return {}
        try:
            return await asyncio.to_thread(self._read_batch_sync, session_class, session_id, artifact_type, ids)
        except Exception as e:
            logger.error(
                "wa.credentials.read_failed",
                session_id=session_id,
                artifact_type=artifact_type,
                error=str(e),
            )
            return {}

    async def write_batch(
        self,
        session_id: str,
        data: dict[str, dict[str, Any]],
        *,
        session_class: SessionClass,
    ) -> bool:
        """Apply ``{artifact_type: {artifact_id: value}}``.

        A ``None`` value deletes that artifact, everything else is upserted.
        The whole batch commits in one transaction.
        """
        if not data:
            return True
        try:
            await asyncio.to_thread(self._write_batch_sync, session_class, session_id, data)
            return True
        except Exception as e:
            logger.error(
                "wa.credentials.write_failed",
                session_id=session_id,
                artifact_types=sorted(data.keys()),
                error=str(e),
            )
            return False

    async def remove_all_for_session(self, session_id: str, *, session_class: SessionClass) -> bool:
        """Delete every row of ``session_id`` and nothing else.

        Matches the stored ``session_id`` column exactly, so ``"abc"`` never
        touches rows of ``"abc-extra"``.
        """
        try:
            deleted = await asyncio.to_thread(self._remove_all_sync, session_class, session_id)
            logger.info(
                "wa.credentials.cleared",
                session_id=session_id,
                table=TABLES[session_class].__tablename__,
                rows=deleted,
            )
            return True
        except Exception as e:
            logger.error("wa.credentials.clear_failed", session_id=session_id, error=str(e))
            return False

    # ──────────────────────────────────────────────────────────────
    # Blocking bodies (run in worker threads)
    # ──────────────────────────────────────────────────────────────

    def _read_batch_sync(
        self,
        session_class: SessionClass,
        session_id: str,
        artifact_type: str,
        ids: list[str],
    ) -> dict[str, Any]:
        model = TABLES[session_class]
        keys = [composite_key(session_id, artifact_type, artifact_id) for artifact_id in ids]
        db = self._session_factory()
        try:
            rows = db.query(model).filter(model.id.in_(keys)).all()
            results: dict[str, Any] = {}
            for row in rows:
                value = codec.loads(row.value)
                if value is not None:
                    results[row.artifact_id] = value
            return results
        finally:
            db.close()

    def _write_batch_sync(
        self,
        session_class: SessionClass,
        session_id: str,
        data: dict[str, dict[str, Any]],
    ) -> None:
        model = TABLES[session_class]
        now = datetime.now(timezone.utc)
        db = self._session_factory()
        try:
            deletes: list[str] = []
            for artifact_type, entries in data.items():
                for artifact_id, value in entries.items():
                    key = composite_key(session_id, artifact_type, artifact_id)
                    if value is None:
                        deletes.append(key)
                        continue
                    db.merge(
                        model(
                            id=key,
                            session_id=session_id,
                            artifact_type=artifact_type,
                            artifact_id=str(artifact_id),
                            value=codec.dumps(value),
                            updated_at=now,
                        )
                    )
            if deletes:
                db.query(model).filter(model.id.in_(deletes)).delete(synchronize_session=False)
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def _remove_all_sync(self, session_class: SessionClass, session_id: str) -> int:
        model = TABLES[session_class]
        db = self._session_factory()
        try:
            deleted = db.query(model).filter(model.session_id == session_id).delete(synchronize_session=False)
            db.commit()
            return int(deleted or 0)
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()
