"""Background jobs: room janitor and daily statistics rollover."""

from __future__ import annotations

import asyncio
import logging
from contextlib import suppress
from datetime import date, timedelta

from ..models import OperatorState
from ..utils import utcnow
from .audit import AuditLog
from .monetization import TokenStore
from .rooms import RoomPool

logger = logging.getLogger(__name__)


class Maintenance:
    """Owns the periodic crash-recovery sweep and the stats rollover."""

    def __init__(
        self,
        rooms: RoomPool,
        tokens: TokenStore,
        state: OperatorState,
        *,
        audit: AuditLog | None = None,
        stale_after_seconds: int = 21_600,
        janitor_interval_seconds: int = 86_400,
        rollover_interval_seconds: int = 3_600,
    ):
        self._rooms = rooms
        self._tokens = tokens
        self._state = state
        self._audit = audit or AuditLog()
        self._stale_after = timedelta(seconds=stale_after_seconds)
        self._janitor_interval = janitor_interval_seconds
        self._rollover_interval = rollover_interval_seconds
        self._tasks: list[asyncio.Task[None]] = []

    async def start(self) -> None:
        if self._tasks:
            return
        self._tasks = [
            asyncio.create_task(self._loop(self._janitor_interval, self.sweep_rooms)),
            asyncio.create_task(self._loop(self._rollover_interval, self.rollover_stats)),
        ]

    async def stop(self) -> None:
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            with suppress(asyncio.CancelledError):
                await task
        self._tasks = []

    async def sweep_rooms(self) -> int:
        """Free rooms stuck busy past the stale threshold and purge expired tokens."""

        freed = await self._rooms.release_stale(utcnow() - self._stale_after)
        purged = await self._tokens.purge_expired()
        if freed:
            logger.warning("Janitor freed %s stale rooms", freed)
            await self._audit.emit(f"🧹 <b>Janitor</b> freed {freed} stale room(s)")
        if purged:
            logger.info("Purged %s expired access tokens", purged)
        return freed

    async def rollover_stats(self, today: date | None = None) -> tuple[date, int, int] | None:
        closed = self._state.rollover(today)
        if closed is not None:
            day, searches, deliveries = closed
            await self._audit.emit(
                f"📊 <b>Daily stats</b> {day.isoformat()}: "
                f"{searches} searches, {deliveries} deliveries"
            )
        return closed

    async def _loop(self, interval: int, job) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                await job()
            except Exception as exc:  # pragma: no cover - background safety net
                logger.exception("Maintenance job %s failed: %s", job.__name__, exc)
