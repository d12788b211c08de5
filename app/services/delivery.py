"""Delivery orchestration: lock, gates, room lease, sanitize, transfer, invite."""

from __future__ import annotations

import html
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Callable, Sequence

from telegram.error import TelegramError

from ..models import CatalogEntry, MediaRef, OperatorState
from ..utils import chunked, encode_start_payload
from .audit import AuditLog
from .catalog import CatalogRepository
from .locks import DeliveryLocks
from .monetization import AccessGate, MembershipGate
from .rooms import RoomLease, RoomPool
from .telegram import TelegramGateway
from .users import UserService

logger = logging.getLogger(__name__)

ALBUM_LIMIT = 10
DELETE_BATCH = 100
INVITE_TTL = timedelta(hours=2)


class DeliveryError(RuntimeError):
    """Raised when a load-bearing delivery step fails."""


class TransferError(DeliveryError):
    """Raised when no media item could be placed in the room."""


class BlockReason(str, Enum):
    BUSY = "busy"
    GATED = "gated"
    NOT_MEMBER = "not_member"
    UNAVAILABLE = "unavailable"
    NO_ROOMS = "no_rooms"
    ROOMS_EXHAUSTED = "rooms_exhausted"


@dataclass(frozen=True, slots=True)
class Delivered:
    invite_url: str
    clip_count: int
    room_id: str
    expires_at: datetime
    new_badge: str | None = None


@dataclass(frozen=True, slots=True)
class Blocked:
    reason: BlockReason
    link: str | None = None


@dataclass(frozen=True, slots=True)
class Failed:
    error: str


DeliveryResult = Delivered | Blocked | Failed


def group_albums(items: Sequence[MediaRef]) -> list[list[MediaRef]]:
    """Bucket items into album-compatible groups, in order of first appearance."""

    groups: dict[str, list[MediaRef]] = {}
    for item in items:
        groups.setdefault(item.album_group, []).append(item)
    return list(groups.values())


def _aware_utcnow() -> datetime:
    return datetime.now(timezone.utc)


class DeliveryService:
    """Put a movie's clips into a private room and hand out a one-shot invite."""

    def __init__(
        self,
        *,
        gateway: TelegramGateway,
        rooms: RoomPool,
        locks: DeliveryLocks,
        users: UserService,
        catalog: CatalogRepository | None = None,
        access: AccessGate | None = None,
        membership: MembershipGate | None = None,
        audit: AuditLog | None = None,
        state: OperatorState | None = None,
        invite_ttl: timedelta = INVITE_TTL,
        clock: Callable[[], datetime] = _aware_utcnow,
    ):
        self._gateway = gateway
        self._rooms = rooms
        self._locks = locks
        self._users = users
        self._catalog = catalog
        self._access = access
        self._membership = membership
        self._audit = audit or AuditLog()
        self._state = state or OperatorState()
        self._invite_ttl = invite_ttl
        self._clock = clock

    async def deliver(
        self,
        user_id: int,
        movie: CatalogEntry,
        *,
        verified: bool = False,
        user_label: str | None = None,
    ) -> DeliveryResult:
        """Run one delivery attempt; never leaves the lock or a room held."""

        label = user_label or f"User {user_id}"
        if not await self._locks.try_acquire(user_id):
            return Blocked(BlockReason.BUSY)
        try:
            if self._access is not None and await self._access.is_gated(
                user_id, verified=verified
            ):
                link = await self._access.gate_link(user_id, encode_start_payload(movie.title))
                return Blocked(BlockReason.GATED, link)

            if self._membership is not None and not await self._membership.is_member(user_id):
                return Blocked(BlockReason.NOT_MEMBER, await self._membership.join_link())

            if not movie.media_items:
                return Blocked(BlockReason.UNAVAILABLE)

            return await self._deliver_in_room(user_id, movie, label)
        finally:
            await self._locks.release(user_id)

    async def _deliver_in_room(
        self, user_id: int, movie: CatalogEntry, label: str
    ) -> DeliveryResult:
        lease = await self._rooms.lease()
        if lease is None:
            if await self._rooms.count() == 0:
                await self._audit.emit(
                    f"⚠️ <b>Configuration error</b>: no rooms provisioned, "
                    f"could not deliver <b>{html.escape(movie.title)}</b> to {label}",
                    level=logging.ERROR,
                )
                return Blocked(BlockReason.NO_ROOMS)
            return Blocked(BlockReason.ROOMS_EXHAUSTED)

        sent: list[int] = []
        try:
            await self._sanitize(lease.room_id, lease.occupants, lease.last_delivered_refs)
            await self._transfer(lease.room_id, movie.media_items, sent)
            issued_at = self._clock()
            expires_at = issued_at + self._invite_ttl
            invite_url = await self._gateway.create_invite(
                lease.room_id,
                expire_at=expires_at,
                member_limit=1,
                name=f"Delivery: {movie.title[:20]}",
            )
            await self._rooms.release(lease, str(user_id), sent)
        except Exception as exc:
            logger.exception("Delivery of %s to %s failed", movie.title, user_id)
            await self._release_after_failure(lease, user_id, sent)
            await self._audit.emit(
                f"❌ <b>Delivery failed</b> for {label}: <b>{html.escape(movie.title)}</b> in room "
                f"<code>{lease.room_id}</code>: {type(exc).__name__}: {exc}",
                level=logging.ERROR,
            )
            return Failed(str(exc) or type(exc).__name__)

        self._state.record_delivery()
        new_badge = await self._record_success(user_id, movie, label, lease.room_id, len(sent))
        return Delivered(
            invite_url=invite_url,
            clip_count=len(sent),
            room_id=lease.room_id,
            expires_at=expires_at,
            new_badge=new_badge,
        )

    async def _record_success(
        self, user_id: int, movie: CatalogEntry, label: str, room_id: str, clip_count: int
    ) -> str | None:
        """Bump popularity and user counters, then audit; failures are only logged."""

        new_badge: str | None = None
        try:
            if self._catalog is not None:
                await self._catalog.increment_popularity(movie.title)
            new_badge = await self._users.record_download(user_id)
            await self._audit.emit(
                f"📤 <b>Delivered</b> <b>{html.escape(movie.title)}</b> ({clip_count} clips) "
                f"to {label} via room <code>{room_id}</code>"
            )
        except Exception:
            logger.exception("Bookkeeping after delivering %s to %s failed", movie.title, user_id)
        return new_badge

    async def _release_after_failure(
        self, lease: RoomLease, user_id: int, sent: Sequence[int]
    ) -> None:
        try:
            await self._rooms.release(lease, str(user_id), sent)
        except Exception:  # pragma: no cover - janitor frees the room later
            logger.exception("Could not release room %s after a failed delivery", lease.room_id)

    async def clean_room(self, room_id: str) -> bool:
        """Evict every occupant, purge old messages and mark the room empty."""

        room = await self._rooms.get(room_id)
        if room is None:
            return False
        stray_occupants, stray_refs = await self._rooms.leftovers(room_id)
        occupants = [room.current_occupant] if room.current_occupant else []
        occupants += [user for user in stray_occupants if user not in occupants]
        refs = list(room.last_delivered_refs or [])
        refs += [ref for ref in stray_refs if ref not in refs]
        await self._sanitize(room.room_id, occupants, refs)
        return await self._rooms.reset_room(room_id)

    async def _sanitize(
        self, room_id: str, occupants: Sequence[str], refs: Sequence[int]
    ) -> None:
        for occupant in occupants:
            try:
                await self._gateway.evict(room_id, occupant)
            except TelegramError as exc:
                logger.warning("Could not evict %s from room %s: %s", occupant, room_id, exc)
            await self._gateway.pause()

        for batch in chunked(list(refs), DELETE_BATCH):
            try:
                await self._gateway.delete_messages(room_id, batch)
            except TelegramError as exc:
                logger.warning(
                    "Could not delete %s old messages in room %s: %s", len(batch), room_id, exc
                )
            await self._gateway.pause()

    async def _transfer(
        self, room_id: str, items: Sequence[MediaRef], sent: list[int]
    ) -> None:
        """Send every item, appending new message ids to ``sent`` as they land."""

        for group in group_albums(items):
            for chunk in chunked(group, ALBUM_LIMIT):
                if len(chunk) == 1 or not chunk[0].albumable:
                    for item in chunk:
                        await self._send_single(room_id, item, sent)
                else:
                    try:
                        sent.extend(await self._gateway.send_album(room_id, chunk))
                    except TelegramError as exc:
                        logger.warning(
                            "Album of %s failed in room %s, sending one by one: %s",
                            len(chunk),
                            room_id,
                            exc,
                        )
                        for item in chunk:
                            await self._send_single(room_id, item, sent)
                await self._gateway.pause(2)

        if items and not sent:
            raise TransferError(f"none of {len(items)} media items could be sent")

    async def _send_single(self, room_id: str, item: MediaRef, sent: list[int]) -> None:
        try:
            sent.append(await self._gateway.send_item(room_id, item))
        except TelegramError as exc:
            logger.warning("Skipping %s %s in room %s: %s", item.kind, item.reference_id, room_id, exc)
        await self._gateway.pause()
