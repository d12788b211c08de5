"""User activity counters and badge awards."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..database import insert_ignore
from ..db_models import BotUser
from ..utils import utcnow

logger = logging.getLogger(__name__)

# (badge, minimum downloads, minimum searches), best first.
BADGE_RULES: tuple[tuple[str, int, int], ...] = (
    ("👑 Editor King 👑", 20, 0),
    ("💎 Diamond Editor", 10, 0),
    ("✂️ Pro Cutter", 3, 0),
    ("🎬 Clip Hunter", 0, 5),
    ("🎞️ New Editor", 0, 1),
)


def badge_for(download_count: int, search_count: int) -> str | None:
    for badge, min_downloads, min_searches in BADGE_RULES:
        if min_downloads and download_count >= min_downloads:
            return badge
        if min_searches and search_count >= min_searches:
            return badge
    return None


def badge_icon(download_count: int, search_count: int) -> str:
    badge = badge_for(download_count, search_count)
    return badge.split()[0] if badge else ""


@dataclass(slots=True)
class UserProfile:
    user_id: int
    search_count: int = 0
    download_count: int = 0
    badges: list[str] = field(default_factory=list)

    @property
    def icon(self) -> str:
        return badge_icon(self.download_count, self.search_count)


class UserService:
    """Counts searches and downloads per user and hands out badges."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def record_search(self, user_id: int) -> str | None:
        return await self._bump(user_id, search=True)

    async def record_download(self, user_id: int) -> str | None:
        return await self._bump(user_id, search=False)

    async def count(self) -> int:
        async with self._session_factory() as session:
            result = await session.execute(select(func.count(BotUser.user_id)))
            return int(result.scalar_one())

    async def profile(self, user_id: int) -> UserProfile:
        async with self._session_factory() as session:
            user = await session.get(BotUser, user_id)
            if user is None:
                return UserProfile(user_id=user_id)
            return UserProfile(
                user_id=user_id,
                search_count=user.search_count,
                download_count=user.download_count,
                badges=list(user.badges or []),
            )

    async def _bump(self, user_id: int, *, search: bool) -> str | None:
        """Increment a counter and return a newly earned badge, if any."""

        now = utcnow()
        column = BotUser.search_count if search else BotUser.download_count
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
            await session.execute(
                update(BotUser)
                .where(BotUser.user_id == user_id)
                .values({column: column + 1, BotUser.last_active: now})
                .execution_options(synchronize_session=False)
            )
            user = await session.get(BotUser, user_id, populate_existing=True)
            new_badge: str | None = None
            if user is not None:
                badge = badge_for(user.download_count, user.search_count)
                badges = list(user.badges or [])
                if badge and badge not in badges:
                    user.badges = [*badges, badge]
                    new_badge = badge
            await session.commit()

        if new_badge:
            logger.info("User %s earned badge %s", user_id, new_badge)
        return new_badge
