"""Session key-value adapter.

Bridges the transport library's credential access pattern (a ``creds``
document plus a typed signal-key store) onto :class:`CredentialStore`.
All writes of one session go through a single ``asyncio.Lock`` so that
back-to-back ``creds.update`` events can never land out of order, whatever
the database latency.
"""

from __future__ import annotations

import asyncio
import copy
from typing import Any

import structlog

from app.whatsapp.credential_store import CredentialStore
from app.whatsapp.registry import SessionClass
from app.whatsapp.transport import SYNC_KEY_TYPE, TransportLibrary

logger = structlog.get_logger()

CREDS_TYPE = "auth"
CREDS_ID = "creds"


class SessionKeyStore:
    """Signal key store handed to the transport for one session."""

    def __init__(self, state: "SessionAuthState") -> None:
        self._state = state

    async def get(self, artifact_type: str, ids: list[str]) -> dict[str, Any]:
        state = self._state
        results = await state.store.read_batch(
            state.session_id, artifact_type, list(ids), session_class=state.session_class
        )
        if artifact_type == SYNC_KEY_TYPE:
            for artifact_id, value in list(results.items()):
                if value is not None:
                    results[artifact_id] = state.transport_lib.deserialize_sync_key(value)
        return results

    async def set(self, data: dict[str, dict[str, Any]]) -> None:
        state = self._state
        async with state.write_lock:
            await state.store.write_batch(state.session_id, data, session_class=state.session_class)


class SessionAuthState:
    def __init__(
        self,
        session_id: str,
        session_class: SessionClass,
        store: CredentialStore,
        transport_lib: TransportLibrary,
        creds: dict[str, Any],
    ) -> None:
        self.session_id = session_id
        self.session_class = session_class
        self.store = store
        self.transport_lib = transport_lib
        self.creds = creds
        self.write_lock = asyncio.Lock()
        self.keys = SessionKeyStore(self)

    async def save_creds(self, update: dict[str, Any] | None = None) -> bool:
        """Persist the current creds document, merging ``update`` first.

        The snapshot is taken under the write lock so the stored document is
        always the one current at the time of the event.
        """
        async with self.write_lock:
            if update:
                self.creds.update(update)
            snapshot = copy.deepcopy(self.creds)
            return await self.store.write(
                self.session_id, CREDS_TYPE, CREDS_ID, snapshot, session_class=self.session_class
            )

    async def clear_session(self) -> None:
        """Credential-release hook: wipe every stored artifact of this session."""
        logger.info("wa.credentials.clearing", session_id=self.session_id, session_class=self.session_class.value)
        async with self.write_lock:
            await self.store.remove_all_for_session(self.session_id, session_class=self.session_class)


async def load_auth_state(
    session_id: str,
    session_class: SessionClass,
    store: CredentialStore,
    transport_lib: TransportLibrary,
) -> SessionAuthState:
    """Restore a session's credentials, or start a fresh identity.

    Never fails: an unreadable or missing creds document yields new default
    credentials from the transport library.
    """
    creds = await store.read(session_id, CREDS_TYPE, CREDS_ID, session_class=session_class)
    if not creds:
        logger.info("wa.credentials.initialized", session_id=session_id)
        creds = transport_lib.init_auth_creds()
    return SessionAuthState(session_id, session_class, store, transport_lib, creds)
