"""Access gating: persisted bot settings, shortlinks, access tokens, force-subscribe."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Literal, Protocol

import httpx
from sqlalchemy import delete
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..db_models import AccessToken, BotSetting
from ..utils import utcnow

logger = logging.getLogger(__name__)

Mode = Literal["off", "shortlink", "token"]
MODES: tuple[str, ...] = ("off", "shortlink", "token")

MODE_KEY = "mode"
SHORTLINK_BASE_KEY = "shortlinkBase"
SHORTLINK_API_KEY = "shortlinkApiKey"
FORCE_SUB_KEY = "forceSubChannel"


class SettingsStore:
    """Key/value settings stored in ``bot_settings``."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def get(self, key: str, default: Any = None) -> Any:
        async with self._session_factory() as session:
            record = await session.get(BotSetting, key)
            return record.value if record is not None else default

    async def set(self, key: str, value: Any) -> None:
        async with self._session_factory() as session:
            record = await session.get(BotSetting, key)
            if record is None:
                session.add(BotSetting(key=key, value=value))
            else:
                record.value = value
            await session.commit()

    async def delete(self, key: str) -> None:
        async with self._session_factory() as session:
            await session.execute(delete(BotSetting).where(BotSetting.key == key))
            await session.commit()


class TokenStore:
    """Time-limited access passes for the token monetization mode."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        ttl_seconds: int = 86_400,
    ):
        self._session_factory = session_factory
        self._ttl = timedelta(seconds=ttl_seconds)

    async def grant(self, user_id: int) -> datetime:
        expires_at = utcnow() + self._ttl
        async with self._session_factory() as session:
            record = await session.get(AccessToken, str(user_id))
            if record is None:
                session.add(AccessToken(user_id=str(user_id), expires_at=expires_at))
            else:
                record.expires_at = expires_at
            await session.commit()
        return expires_at

    async def remaining(self, user_id: int) -> timedelta | None:
        """Return the time left on the user's pass, or ``None`` without one."""

        async with self._session_factory() as session:
            record = await session.get(AccessToken, str(user_id))
        if record is None:
            return None
        left = record.expires_at - utcnow()
        return left if left > timedelta(0) else None

    async def has_valid(self, user_id: int) -> bool:
        return await self.remaining(user_id) is not None

    async def purge_expired(self) -> int:
        async with self._session_factory() as session:
            result = await session.execute(
                delete(AccessToken).where(AccessToken.expires_at <= utcnow())
            )
            await session.commit()
        return int(result.rowcount or 0)


class ShortlinkClient:
    """Wrap URLs through an arolinks/gplinks-style shortener API."""

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        store: SettingsStore,
        *,
        default_base_url: str | None = None,
        default_api_key: str | None = None,
    ):
        self._client = http_client
        self._store = store
        self._default_base_url = default_base_url
        self._default_api_key = default_api_key

    async def wrap(self, target_url: str) -> str:
        """Return the shortened URL, or ``target_url`` when anything goes wrong."""

        base_url = await self._store.get(SHORTLINK_BASE_KEY, self._default_base_url)
        api_key = await self._store.get(SHORTLINK_API_KEY, self._default_api_key)
        if not base_url or not api_key:
            logger.warning("Shortlink API is not configured; returning raw URL")
            return target_url

        try:
            response = await self._client.get(
                str(base_url), params={"api": api_key, "url": target_url}
            )
            response.raise_for_status()
        except httpx.HTTPError as exc:
            logger.warning("Shortlink API request failed: %s", exc)
            return target_url

        try:
            data = response.json()
        except ValueError:
            text = response.text.strip()
            if text.startswith("http"):
                return text
            logger.warning("Shortlink API returned a non-JSON payload; check the base URL")
            return target_url

        if isinstance(data, dict):
            if data.get("status") == "success":
                shortened = data.get("shortenedUrl") or data.get("shortened_url")
                if isinstance(shortened, str) and shortened:
                    return shortened
            elif data.get("status") == "error":
                logger.warning("Shortlink API error: %s", data.get("message") or "unknown")
                return target_url
        logger.warning("Shortlink API unexpected response: %r", data)
        return target_url


class MembershipChecker(Protocol):
    async def is_member(self, channel: str | int, user_id: int) -> bool: ...

    async def join_link(self, channel: str | int) -> str: ...


class AccessGate:
    """Decide whether a delivery request must first pass a monetization step."""

    def __init__(
        self,
        store: SettingsStore,
        tokens: TokenStore,
        shortlinks: ShortlinkClient,
        *,
        bot_username: str | None = None,
    ):
        self._store = store
        self._tokens = tokens
        self._shortlinks = shortlinks
        self.bot_username = bot_username

    async def mode(self) -> Mode:
        value = await self._store.get(MODE_KEY, "off")
        return value if value in MODES else "off"

    async def set_mode(self, mode: str) -> None:
        if mode not in MODES:
            raise ValueError(f"Unknown mode: {mode}")
        await self._store.set(MODE_KEY, mode)

    async def is_gated(self, user_id: int, *, verified: bool = False) -> bool:
        mode = await self.mode()
        if mode == "token":
            return not await self._tokens.has_valid(user_id)
        if mode == "shortlink":
            return not verified
        return False

    async def gate_link(self, user_id: int, payload: str) -> str:
        """Return the wrapped link that lets the user pass the active gate."""

        mode = await self.mode()
        if mode == "token":
            target = self.start_url(f"token_{user_id}")
        else:
            target = self.start_url(f"v_{payload}")
        return await self._shortlinks.wrap(target)

    def start_url(self, payload: str) -> str:
        return f"https://t.me/{self.bot_username or ''}?start={payload}"


class MembershipGate:
    """Force-subscribe check against the configured channel."""

    def __init__(self, store: SettingsStore, checker: MembershipChecker):
        self._store = store
        self._checker = checker

    async def channel(self) -> str | None:
        return await self._store.get(FORCE_SUB_KEY, None)

    async def is_member(self, user_id: int) -> bool:
        """Return ``True`` when no channel is configured or the lookup fails."""

        channel = await self.channel()
        if not channel:
            return True
        try:
            return await self._checker.is_member(channel, user_id)
        except Exception as exc:  # fail open
            logger.warning("Could not check membership of %s in %s: %s", user_id, channel, exc)
            return True

    async def join_link(self) -> str | None:
        channel = await self.channel()
        if not channel:
            return None
        return await self._checker.join_link(channel)
