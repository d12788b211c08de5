"""Catalog persistence: upsert-on-ingest, lookups and popularity counters."""

from __future__ import annotations

import logging
from typing import Iterable

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import selectinload

from ..database import insert_ignore
from ..db_models import MediaItem, Movie, MovieCategory
from ..models import CatalogEntry, MediaRef
from ..utils import utcnow

logger = logging.getLogger(__name__)


class CatalogRepository:
    """Reads and writes catalog entries through atomic statements."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    @staticmethod
    def _entry_query():
        return select(Movie).options(
            selectinload(Movie.media_items), selectinload(Movie.categories)
        )

    async def load_entries(self) -> list[CatalogEntry]:
        """Return the whole catalog ordered by title."""

        async with self._session_factory() as session:
            result = await session.execute(self._entry_query().order_by(Movie.title))
            return [CatalogEntry.from_record(movie) for movie in result.scalars().all()]

    async def get_by_title(self, title: str) -> CatalogEntry | None:
        async with self._session_factory() as session:
            result = await session.execute(
                self._entry_query().where(Movie.title == title)
            )
            movie = result.scalar_one_or_none()
            return CatalogEntry.from_record(movie) if movie is not None else None

    async def get_by_id(self, movie_id: int) -> CatalogEntry | None:
        async with self._session_factory() as session:
            result = await session.execute(
                self._entry_query().where(Movie.id == movie_id)
            )
            movie = result.scalar_one_or_none()
            return CatalogEntry.from_record(movie) if movie is not None else None

    async def count(self) -> int:
        async with self._session_factory() as session:
            result = await session.execute(select(func.count(Movie.id)))
            return int(result.scalar_one())

    async def page(self, page: int, per_page: int) -> list[CatalogEntry]:
        """Return one explorer page of entries ordered by title."""

        offset = max(page, 0) * per_page
        async with self._session_factory() as session:
            result = await session.execute(
                self._entry_query().order_by(Movie.title).offset(offset).limit(per_page)
            )
            return [CatalogEntry.from_record(movie) for movie in result.scalars().all()]

    async def trending(self, limit: int = 5) -> list[CatalogEntry]:
        async with self._session_factory() as session:
            result = await session.execute(
                self._entry_query()
                .order_by(Movie.popularity.desc(), Movie.title)
                .limit(limit)
            )
            return [CatalogEntry.from_record(movie) for movie in result.scalars().all()]

    async def upsert_media(
        self,
        title: str,
        media: MediaRef,
        categories: Iterable[str] = (),
    ) -> bool:
        """Create the entry on first sight and append the media item and tags.

        Everything happens in one transaction keyed on ``title``; repeated
        ingestion of the same reference is a no-op. Returns ``True`` when the
        media item was newly added.
        """

        now = utcnow()
        async with self._session_factory() as session:
            await session.execute(
                insert_ignore(
                    session,
                    Movie,
                    {
                        "title": title,
                        "popularity": 0,
                        "created_at": now,
                        "updated_at": now,
                    },
                    index_elements=["title"],
                )
            )
            movie_id = (
                await session.execute(select(Movie.id).where(Movie.title == title))
            ).scalar_one()

            result = await session.execute(
                insert_ignore(
                    session,
                    MediaItem,
                    {
                        "movie_id": movie_id,
                        "reference_id": media.reference_id,
                        "kind": media.kind,
                        "caption": media.caption,
                    },
                    index_elements=["movie_id", "reference_id"],
                )
            )
            added = bool(result.rowcount)

            await self._insert_categories(session, movie_id, categories)
            if media.kind == "photo":
                await session.execute(
                    update(Movie)
                    .where(Movie.id == movie_id, Movie.thumbnail.is_(None))
                    .values(thumbnail=media.reference_id)
                )
            await session.execute(
                update(Movie).where(Movie.id == movie_id).values(updated_at=now)
            )
            await session.commit()

        if added:
            logger.info("Indexed %s clip for %s", media.kind, title)
        return added

    async def add_categories(self, title: str, categories: Iterable[str]) -> bool:
        """Attach categories to an existing entry; ``False`` when it is unknown."""

        async with self._session_factory() as session:
            movie_id = (
                await session.execute(select(Movie.id).where(Movie.title == title))
            ).scalar_one_or_none()
            if movie_id is None:
                return False
            await self._insert_categories(session, movie_id, categories)
            await session.commit()
            return True

    async def _insert_categories(
        self, session: AsyncSession, movie_id: int, categories: Iterable[str]
    ) -> None:
        names: list[str] = []
        for category in categories:
            lowered = category.strip().lower()
            if lowered and lowered not in names:
                names.append(lowered)
        if not names:
            return
        await session.execute(
            insert_ignore(
                session,
                MovieCategory,
                [{"movie_id": movie_id, "name": name} for name in names],
                index_elements=["movie_id", "name"],
            )
        )

    async def increment_popularity(self, title: str) -> bool:
        """Atomically add one to the entry's popularity counter."""

        async with self._session_factory() as session:
            result = await session.execute(
                update(Movie)
                .where(Movie.title == title)
                .values(popularity=Movie.popularity + 1)
            )
            await session.commit()
            return bool(result.rowcount)
