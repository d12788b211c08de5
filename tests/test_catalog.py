"""Catalog repository tests."""

from __future__ import annotations

import asyncio

import pytest

from app.models import MediaRef
from app.services.catalog import CatalogRepository


@pytest.mark.anyio("asyncio")
async def test_upsert_is_idempotent_per_reference(open_database) -> None:
    async with open_database() as database:
        catalog = CatalogRepository(database.session_factory)
        clip = MediaRef(reference_id="file-1", kind="video", caption="jawan #srk")

        assert await catalog.upsert_media("jawan", clip, ["srk"]) is True
        assert await catalog.upsert_media("jawan", clip, ["SRK", "atlee"]) is False
        assert await catalog.upsert_media(
            "jawan", MediaRef(reference_id="file-2", kind="document")
        ) is True

        entry = await catalog.get_by_title("jawan")
        assert entry is not None
        assert [item.reference_id for item in entry.media_items] == ["file-1", "file-2"]
        assert sorted(entry.categories) == ["atlee", "srk"]
        assert await catalog.count() == 1


@pytest.mark.anyio("asyncio")
async def test_first_photo_becomes_thumbnail(open_database) -> None:
    async with open_database() as database:
        catalog = CatalogRepository(database.session_factory)

        await catalog.upsert_media("leo", MediaRef(reference_id="vid", kind="video"))
        await catalog.upsert_media("leo", MediaRef(reference_id="poster-1", kind="photo"))
        await catalog.upsert_media("leo", MediaRef(reference_id="poster-2", kind="photo"))

        entry = await catalog.get_by_title("leo")
        assert entry is not None
        assert entry.thumbnail == "poster-1"
        assert entry.clip_count == 3


@pytest.mark.anyio("asyncio")
async def test_concurrent_popularity_increments_are_not_lost(open_database) -> None:
    async with open_database() as database:
        catalog = CatalogRepository(database.session_factory)
        await catalog.upsert_media("vikram", MediaRef(reference_id="a", kind="video"))

        results = await asyncio.gather(
            *(catalog.increment_popularity("vikram") for _ in range(10))
        )

        assert all(results)
        entry = await catalog.get_by_title("vikram")
        assert entry is not None
        assert entry.popularity == 10
        assert await catalog.increment_popularity("missing") is False


@pytest.mark.anyio("asyncio")
async def test_add_categories_requires_known_title(open_database) -> None:
    async with open_database() as database:
        catalog = CatalogRepository(database.session_factory)
        await catalog.upsert_media("master", MediaRef(reference_id="a", kind="video"))

        assert await catalog.add_categories("master", [" Vijay ", "vijay", "lokesh"]) is True
        assert await catalog.add_categories("unknown", ["vijay"]) is False

        entry = await catalog.get_by_title("master")
        assert entry is not None
        assert sorted(entry.categories) == ["lokesh", "vijay"]


@pytest.mark.anyio("asyncio")
async def test_trending_and_pages(open_database) -> None:
    async with open_database() as database:
        catalog = CatalogRepository(database.session_factory)
        for title in ("c movie", "a movie", "b movie"):
            await catalog.upsert_media(title, MediaRef(reference_id=title, kind="video"))
        for _ in range(2):
            await catalog.increment_popularity("c movie")
        await catalog.increment_popularity("b movie")

        trending = await catalog.trending(limit=2)
        assert [entry.title for entry in trending] == ["c movie", "b movie"]

        first = await catalog.page(0, 2)
        second = await catalog.page(1, 2)
        assert [entry.title for entry in first] == ["a movie", "b movie"]
        assert [entry.title for entry in second] == ["c movie"]

        everything = await catalog.load_entries()
        assert [entry.title for entry in everything] == ["a movie", "b movie", "c movie"]
        by_id = await catalog.get_by_id(everything[0].id)
        assert by_id is not None and by_id.title == "a movie"
