from __future__ import annotations

import asyncio

import pytest
from sqlalchemy import create_engine, inspect

from app.database import Database, insert_ignore
from app.db_models import RoomLeftover

EXPECTED_TABLES = {
    "movies",
    "media_items",
    "movie_categories",
    "rooms",
    "room_leftovers",
    "bot_users",
    "access_tokens",
    "bot_settings",
}


def test_create_all_builds_every_table(tmp_path) -> None:
    database_path = tmp_path / "fresh.db"
    database = Database(f"sqlite+aiosqlite:///{database_path}")

    async def _run() -> None:
        await database.create_all()
        # A second pass over an existing schema is a no-op.
        await database.create_all()
        await database.dispose()

    asyncio.run(_run())

    inspector_engine = create_engine(f"sqlite:///{database_path}")
    try:
        inspector = inspect(inspector_engine)
        tables = set(inspector.get_table_names())
        room_columns = {column["name"] for column in inspector.get_columns("rooms")}
    finally:
        inspector_engine.dispose()

    assert EXPECTED_TABLES <= tables
    assert {"leased_at", "lease_version", "last_delivered_refs"} <= room_columns


@pytest.mark.anyio("asyncio")
async def test_insert_ignore_skips_duplicates(open_database) -> None:
    async with open_database() as database:
        row = {"room_id": "-1001", "kind": "message", "value": "7"}
        async with database.session() as session:
            first = await session.execute(
                insert_ignore(session, RoomLeftover, row, index_elements=["room_id", "kind", "value"])
            )
            second = await session.execute(
                insert_ignore(session, RoomLeftover, row, index_elements=["room_id", "kind", "value"])
            )
            await session.commit()

        assert first.rowcount == 1
        assert second.rowcount == 0
