"""Application configuration models."""

from __future__ import annotations

from functools import lru_cache
from typing import Annotated, Iterable, Literal

from pydantic import AliasChoices, Field, HttpUrl, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


class Settings(BaseSettings):
    """Settings loaded from environment variables or a .env file."""

    app_name: str = Field(default="Cliproom", alias="APP_NAME")
    server_host: str = Field(default="0.0.0.0", alias="HOST")
    server_port: int = Field(default=3000, alias="PORT")

    bot_token: str | None = Field(default=None, alias="BOT_TOKEN")
    bot_username: str | None = Field(default=None, alias="BOT_USERNAME")
    admin_ids: Annotated[tuple[int, ...], NoDecode] = Field(
        default=(),
        alias="ADMIN_IDS",
        validation_alias=AliasChoices("ADMIN_IDS", "ADMIN_ID"),
    )

    group_id: int | None = Field(default=None, alias="GROUP_ID")
    group_link: str | None = Field(default=None, alias="GROUP_LINK")
    db_channel_id: int | None = Field(default=None, alias="DB_CHANNEL_ID")
    log_channel_id: int | None = Field(default=None, alias="LOG_CHANNEL_ID")

    webhook_url: HttpUrl | None = Field(default=None, alias="WEBHOOK_URL")
    webhook_secret: str | None = Field(default=None, alias="WEBHOOK_SECRET")

    shortlink_base_url: HttpUrl | None = Field(
        default=None, alias="SHORTLINK_BASE_URL"
    )
    shortlink_api_key: str | None = Field(default=None, alias="SHORTLINK_API_KEY")

    delivery_lock_seconds: int = Field(
        default=300, alias="DELIVERY_LOCK_SECONDS", ge=30, le=3_600
    )
    invite_ttl_seconds: int = Field(
        default=7_200, alias="INVITE_TTL_SECONDS", ge=60, le=86_400
    )
    room_stale_seconds: int = Field(
        default=21_600, alias="ROOM_STALE_SECONDS", ge=600
    )
    janitor_interval_seconds: int = Field(
        default=86_400, alias="JANITOR_INTERVAL_SECONDS", ge=60
    )
    token_ttl_seconds: int = Field(
        default=86_400, alias="TOKEN_TTL_SECONDS", ge=600
    )
    transport_pause_seconds: float = Field(
        default=0.5, alias="TRANSPORT_PAUSE_SECONDS", ge=0, le=10
    )

    database_url: str = Field(
        default="sqlite+aiosqlite:///./cliproom.db", alias="DATABASE_URL"
    )

    environment: Literal["development", "production"] = Field(
        default="development", alias="ENVIRONMENT"
    )

    @field_validator("admin_ids", mode="before")
    @classmethod
    def _parse_admin_ids(cls, value: object) -> tuple[int, ...]:
        """Accept a comma separated list or an iterable of Telegram user ids."""

        if value is None or value == "":
            return ()
        if isinstance(value, int):
            return (value,)
        if isinstance(value, str):
            raw_values = [part.strip() for part in value.split(",")]
        elif isinstance(value, Iterable):
            raw_values = [str(part).strip() for part in value]
        else:
            raise TypeError("ADMIN_IDS must be a string or iterable of ids")

        cleaned: list[int] = []
        for entry in raw_values:
            if not entry:
                continue
            try:
                admin_id = int(entry)
            except ValueError as exc:
                raise ValueError("ADMIN_IDS must contain numeric user ids") from exc
            if admin_id not in cleaned:
                cleaned.append(admin_id)
        return tuple(cleaned)

    @field_validator("bot_username", mode="before")
    @classmethod
    def _strip_at(cls, value: object) -> object:
        if isinstance(value, str):
            stripped = value.strip().lstrip("@")
            return stripped or None
        return value

    def is_admin(self, user_id: int | None) -> bool:
        return user_id is not None and user_id in self.admin_ids

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")


@lru_cache
def get_settings() -> Settings:
    """Return a cached settings instance."""

    return Settings()  # type: ignore[call-arg]


settings = get_settings()
