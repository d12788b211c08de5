"""Pytest configuration and test helpers."""

from __future__ import annotations

import sys
from contextlib import asynccontextmanager
from pathlib import Path

import pytest

# Ensure the application package is importable when running tests without an
# editable install. This mirrors the expected runtime layout where ``app`` sits
# at the project root.
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app.database import Database  # noqa: E402


@pytest.fixture
def anyio_backend() -> str:
    """Force AnyIO tests to run on asyncio without requiring trio."""

    return "asyncio"


@pytest.fixture
def open_database(tmp_path):
    """Return a factory opening a fresh SQLite database under ``tmp_path``."""

    @asynccontextmanager
    async def _open():
        database = Database(f"sqlite+aiosqlite:///{tmp_path / 'cliproom.db'}")
        await database.create_all()
        try:
            yield database
        finally:
            await database.dispose()

    return _open
