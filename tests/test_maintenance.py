"""Janitor and stats rollover jobs."""

from __future__ import annotations

from datetime import date

import pytest

from app.models import OperatorState
from app.services.audit import AuditLog
from app.services.maintenance import Maintenance
from app.services.monetization import TokenStore
from app.services.rooms import RoomPool


class Sink:
    def __init__(self) -> None:
        self.lines: list[str] = []

    async def send_log(self, text: str) -> None:
        self.lines.append(text)


@pytest.mark.anyio("asyncio")
async def test_sweep_frees_stale_rooms(open_database) -> None:
    async with open_database() as database:
        rooms = RoomPool(database.session_factory)
        await rooms.add_room("-1001")
        await rooms.add_room("-1002")
        lease = await rooms.lease()
        assert lease is not None
        sink = Sink()
        jobs = Maintenance(
            rooms,
            TokenStore(database.session_factory),
            OperatorState(),
            audit=AuditLog(sink),
            stale_after_seconds=0,
        )

        assert await jobs.sweep_rooms() == 1
        assert await jobs.sweep_rooms() == 0
        assert all(not status.busy for status in await rooms.list_rooms())
        assert len(sink.lines) == 1
        assert "freed 1" in sink.lines[0]


@pytest.mark.anyio("asyncio")
async def test_rollover_reports_closed_day(open_database) -> None:
    async with open_database() as database:
        state = OperatorState(day=date(2026, 3, 1))
        state.record_search()
        state.record_search()
        state.record_delivery()
        sink = Sink()
        jobs = Maintenance(
            RoomPool(database.session_factory),
            TokenStore(database.session_factory),
            state,
            audit=AuditLog(sink),
        )

        assert await jobs.rollover_stats(date(2026, 3, 1)) is None
        assert await jobs.rollover_stats(date(2026, 3, 2)) == (date(2026, 3, 1), 2, 1)
        assert state.searches == 0 and state.deliveries == 0
        assert sink.lines == ["📊 <b>Daily stats</b> 2026-03-01: 2 searches, 1 deliveries"]


@pytest.mark.anyio("asyncio")
async def test_start_and_stop_background_jobs(open_database) -> None:
    async with open_database() as database:
        jobs = Maintenance(
            RoomPool(database.session_factory),
            TokenStore(database.session_factory),
            OperatorState(),
        )

        await jobs.start()
        await jobs.start()
        await jobs.stop()
        await jobs.stop()
