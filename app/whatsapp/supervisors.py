"""Liveness supervisors.

Four periodic sweeps over a snapshot of the session registry:

  * auto-heal: reconnect sessions sitting in ``close`` or ``disconnected``;
  * keep-alive: announce ``available`` presence on every open socket;
  * proactive: let responders nudge idle conversations;
  * history retention: drop stored chat history.

A failure for one session is logged and counted, and never stops the sweep
for the others.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

import structlog

from app.core.instrumentation import SWEEP_FAILURES
from app.whatsapp.registry import ConnectionStatus, SessionRegistry

logger = structlog.get_logger()

HEAL_STATUSES = {ConnectionStatus.CLOSE, ConnectionStatus.DISCONNECTED}


@dataclass
class SweepIntervals:
    auto_heal: float = 300.0
    keepalive: float = 30.0
    proactive: float = 900.0
    history_retention: float = 86400.0


class LivenessSupervisor:
    def __init__(
        self,
        manager: Any,
        registry: SessionRegistry,
        router: Any = None,
        history_service: Any = None,
        intervals: SweepIntervals | None = None,
    ) -> None:
        self.manager = manager
        self.registry = registry
        self.router = router
        self.history_service = history_service
        self.intervals = intervals or SweepIntervals()
        self._tasks: list[asyncio.Task] = []

    # ──────────────────────────────────────────────────────────────
    # Sweeps
    # ──────────────────────────────────────────────────────────────

    async def auto_heal_sweep(self) -> int:
        """Reconnect dropped sessions. Returns how many were kicked."""
        healed = 0
        for record in self.registry.snapshot():
            if record.status not in HEAL_STATUSES:
                continue
            if self.manager.has_pending_reconnect(record.session_id):
                continue
            try:
                logger.info("wa.supervisor.auto_heal", session_id=record.session_id, status=record.status.value)
                await self.manager.connect(record.session_id)
                healed += 1
            except Exception as e:
                SWEEP_FAILURES.labels(sweep="auto_heal").inc()
                logger.error("wa.supervisor.auto_heal_failed", session_id=record.session_id, error=str(e))
        return healed

    async def keepalive_sweep(self) -> int:
        sent = 0
        for record in self.registry.snapshot():
            if record.status != ConnectionStatus.OPEN or record.transport is None:
                continue
            try:
                await record.transport.send_presence_update("available")
                sent += 1
            except Exception as e:
                SWEEP_FAILURES.labels(sweep="keepalive").inc()
                logger.warning("wa.supervisor.keepalive_failed", session_id=record.session_id, error=str(e))
        return sent

    async def proactive_sweep(self) -> int:
        if self.router is None:
            return 0
        checked = 0
        for record in self.registry.snapshot():
            if record.status != ConnectionStatus.OPEN or record.transport is None:
                continue
            responder = self.router.proactive_responder(record.session_id)
            if responder is None:
                continue
            try:
                await responder.check_proactive_opportunity(record.session_id, record.transport)
                checked += 1
            except Exception as e:
                SWEEP_FAILURES.labels(sweep="proactive").inc()
                logger.error("wa.supervisor.proactive_failed", session_id=record.session_id, error=str(e))
        return checked

    async def history_retention_sweep(self) -> None:
        if self.history_service is None:
            return
        try:
            await self.history_service.clear_all_history()
            logger.info("wa.supervisor.history_cleared")
        except Exception as e:
            SWEEP_FAILURES.labels(sweep="history_retention").inc()
            logger.error("wa.supervisor.history_clear_failed", error=str(e))

    # ──────────────────────────────────────────────────────────────
    # Scheduling
    # ──────────────────────────────────────────────────────────────

    async def _loop(self, name: str, interval: float, sweep: Callable[[], Awaitable[Any]]) -> None:
        logger.info("wa.supervisor.started", sweep=name, interval_seconds=interval)
        while True:
            await asyncio.sleep(interval)
            try:
                await sweep()
            except Exception as e:
                logger.error("wa.supervisor.sweep_failed", sweep=name, error=str(e))

    def start(self) -> None:
        if self._tasks:
            return
        plan = [
            ("auto_heal", self.intervals.auto_heal, self.auto_heal_sweep),
            ("keepalive", self.intervals.keepalive, self.keepalive_sweep),
            ("proactive", self.intervals.proactive, self.proactive_sweep),
            ("history_retention", self.intervals.history_retention, self.history_retention_sweep),
        ]
        for name, interval, sweep in plan:
            if interval and interval > 0:
                self._tasks.append(asyncio.create_task(self._loop(name, interval, sweep), name=f"wa-sweep-{name}"))

    @property
    def running(self) -> bool:
        return any(not task.done() for task in self._tasks)

    async def stop(self) -> None:
        tasks, self._tasks = self._tasks, []
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("wa.supervisor.stopped")
