"""Per-user soft delivery lock with a staleness override."""

from __future__ import annotations

import logging
from datetime import timedelta

from sqlalchemy import or_, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..database import insert_ignore
from ..db_models import BotUser
from ..utils import utcnow

logger = logging.getLogger(__name__)

DEFAULT_LOCK_SECONDS = 300


class DeliveryLocks:
    """Mutual exclusion of concurrent deliveries for the same user.

    A held lock older than ``ttl_seconds`` counts as released so that a crashed
    delivery cannot lock a user out forever.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        ttl_seconds: int = DEFAULT_LOCK_SECONDS,
    ):
        self._session_factory = session_factory
        self._ttl = timedelta(seconds=ttl_seconds)

    async def try_acquire(self, user_id: int) -> bool:
        now = utcnow()
        async with self._session_factory() as session:
            await session.execute(
                insert_ignore(
                    session,
                    BotUser,
                    {
                        "user_id": user_id,
                        "joined_at": now,
                        "last_active": now,
                        "search_count": 0,
                        "download_count": 0,
                        "badges": [],
                        "is_delivering": False,
                    },
                    index_elements=["user_id"],
                )
            )
            result = await session.execute(
                update(BotUser)
                .where(
                    BotUser.user_id == user_id,
                    or_(
                        BotUser.is_delivering.is_(False),
                        BotUser.last_delivery_at.is_(None),
                        BotUser.last_delivery_at < now - self._ttl,
                    ),
                )
                .values(is_delivering=True, last_delivery_at=now, last_active=now)
                .execution_options(synchronize_session=False)
            )
            await session.commit()
        acquired = result.rowcount == 1
        if not acquired:
            logger.info("Delivery lock for user %s is held", user_id)
        return acquired

    async def release(self, user_id: int) -> None:
        async with self._session_factory() as session:
            await session.execute(
                update(BotUser)
                .where(BotUser.user_id == user_id)
                .values(is_delivering=False)
                .execution_options(synchronize_session=False)
            )
            await session.commit()

    async def is_locked(self, user_id: int) -> bool:
        """Return whether a fresh lock is currently held for ``user_id``."""

        async with self._session_factory() as session:
            user = await session.get(BotUser, user_id)
            if user is None or not user.is_delivering or user.last_delivery_at is None:
                return False
            return user.last_delivery_at >= utcnow() - self._ttl
