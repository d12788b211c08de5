"""Per-user delivery lock tests."""

from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest
from sqlalchemy import update

from app.db_models import BotUser
from app.services.locks import DeliveryLocks
from app.utils import utcnow


@pytest.mark.anyio("asyncio")
async def test_lock_is_exclusive_until_released(open_database) -> None:
    async with open_database() as database:
        locks = DeliveryLocks(database.session_factory)

        assert await locks.try_acquire(42) is True
        assert await locks.is_locked(42) is True
        assert await locks.try_acquire(42) is False
        assert await locks.try_acquire(7) is True

        await locks.release(42)

        assert await locks.is_locked(42) is False
        assert await locks.try_acquire(42) is True


@pytest.mark.anyio("asyncio")
async def test_stale_lock_can_be_taken_over(open_database) -> None:
    async with open_database() as database:
        locks = DeliveryLocks(database.session_factory, ttl_seconds=300)
        assert await locks.try_acquire(42) is True

        async with database.session_factory() as session:
            await session.execute(
                update(BotUser)
                .where(BotUser.user_id == 42)
                .values(last_delivery_at=utcnow() - timedelta(minutes=6))
            )
            await session.commit()

        assert await locks.is_locked(42) is False
        assert await locks.try_acquire(42) is True


@pytest.mark.anyio("asyncio")
async def test_concurrent_acquire_grants_one_winner(open_database) -> None:
    async with open_database() as database:
        locks = DeliveryLocks(database.session_factory)

        results = await asyncio.gather(*(locks.try_acquire(42) for _ in range(5)))

        assert results.count(True) == 1
