"""Configuration settings behaviour tests."""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from app.config import Settings


def test_admin_ids_parsed_from_comma_separated_string() -> None:
    """Admin ids should be parsed, deduplicated and kept in order."""

    settings = Settings(_env_file=None, ADMIN_IDS="12, 7,12,,  99")

    assert settings.admin_ids == (12, 7, 99)
    assert settings.is_admin(7) is True
    assert settings.is_admin(8) is False
    assert settings.is_admin(None) is False


def test_single_admin_alias_is_accepted() -> None:
    """The legacy ADMIN_ID variable should populate the same field."""

    settings = Settings(_env_file=None, ADMIN_ID="555")

    assert settings.admin_ids == (555,)


def test_admin_ids_accept_iterables() -> None:
    settings = Settings(_env_file=None, ADMIN_IDS=[1, "2"])

    assert settings.admin_ids == (1, 2)


def test_admin_ids_invalid_raises() -> None:
    """Non-numeric admin ids should raise a validation error."""

    with pytest.raises(ValueError, match="numeric user ids"):
        Settings(_env_file=None, ADMIN_IDS="12,alice")


def test_bot_username_strips_at_sign() -> None:
    assert Settings(_env_file=None, BOT_USERNAME="@clipbot").bot_username == "clipbot"
    assert Settings(_env_file=None, BOT_USERNAME=" @ ").bot_username is None


def test_defaults_are_sensible() -> None:
    settings = Settings(_env_file=None)

    assert settings.delivery_lock_seconds == 300
    assert settings.invite_ttl_seconds == 7_200
    assert settings.room_stale_seconds == 21_600
    assert settings.database_url.startswith("sqlite+aiosqlite://")


def test_lock_window_bounds_are_enforced() -> None:
    with pytest.raises(ValidationError):
        Settings(_env_file=None, DELIVERY_LOCK_SECONDS=5)
