"""Room pool: exclusive, time-multiplexed leasing of delivery channels.

Every state change is a single conditional ``UPDATE`` keyed on the room's
``lease_version`` so that two interleaved requests can never both win the same
room. When every room is busy the least recently used one is stolen instead of
queueing the request; the stolen lease's eventual release is then ignored
because its version no longer matches.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Sequence

from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..database import insert_ignore
from ..db_models import Room, RoomLeftover
from ..utils import utcnow

logger = logging.getLogger(__name__)

LEFTOVER_MESSAGE = "message"
LEFTOVER_OCCUPANT = "occupant"


@dataclass(slots=True)
class RoomLease:
    """Proof of an exclusive lease, carrying the room's pre-lease contents.

    ``stray_occupants`` and the extra ``last_delivered_refs`` come from
    superseded leases of the same room; ``leftover_ids`` are cleared once this
    lease releases successfully.
    """

    id: int
    room_id: str
    version: int
    current_occupant: str | None
    last_delivered_refs: list[int] = field(default_factory=list)
    stolen: bool = False
    stray_occupants: list[str] = field(default_factory=list)
    leftover_ids: list[int] = field(default_factory=list)

    @property
    def occupants(self) -> list[str]:
        """Everyone who may still be inside the room, current occupant first."""

        found = [self.current_occupant] if self.current_occupant else []
        return found + [user for user in self.stray_occupants if user not in found]


@dataclass(slots=True)
class RoomStatus:
    room_id: str
    busy: bool
    last_used_at: datetime | None
    current_occupant: str | None
    message_count: int


class RoomPool:
    """Atomic lease/release operations over the ``rooms`` table."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        max_attempts: int = 5,
    ):
        self._session_factory = session_factory
        self._max_attempts = max_attempts

    async def lease(self) -> RoomLease | None:
        """Grab a free room, or steal the least recently used one.

        Returns ``None`` when the pool is empty or every compare-and-set
        attempt lost a race.
        """

        for _ in range(self._max_attempts):
            async with self._session_factory() as session:
                candidates = (
                    await session.execute(
                        select(Room)
                        .where(Room.busy.is_(False))
                        .order_by(Room.last_used_at, Room.id)
                    )
                ).scalars().all()
                for room in candidates:
                    lease = await self._claim(session, room, require_free=True)
                    if lease is not None:
                        return lease

                oldest = (
                    await session.execute(
                        select(Room)
                        .order_by(Room.last_used_at, Room.id)
                        .limit(1)
                        .execution_options(populate_existing=True)
                    )
                ).scalar_one_or_none()
                if oldest is None:
                    return None
                if oldest.busy:
                    lease = await self._claim(session, oldest, require_free=False)
                    if lease is not None:
                        logger.warning(
                            "Room pool exhausted; stole least recently used room %s",
                            lease.room_id,
                        )
                        return lease
        logger.warning("Gave up leasing a room after %s attempts", self._max_attempts)
        return None

    async def _claim(
        self, session: AsyncSession, room: Room, *, require_free: bool
    ) -> RoomLease | None:
        conditions = [Room.id == room.id, Room.lease_version == room.lease_version]
        if require_free:
            conditions.append(Room.busy.is_(False))
        new_version = room.lease_version + 1
        result = await session.execute(
            update(Room)
            .where(*conditions)
            .values(busy=True, lease_version=new_version, leased_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        await session.commit()
        if result.rowcount != 1:
            return None
        lease = RoomLease(
            id=room.id,
            room_id=room.room_id,
            version=new_version,
            current_occupant=room.current_occupant,
            last_delivered_refs=list(room.last_delivered_refs or []),
            stolen=room.busy,
        )
        for leftover in await self._load_leftovers(session, room.room_id):
            lease.leftover_ids.append(leftover.id)
            if leftover.kind == LEFTOVER_MESSAGE:
                ref = int(leftover.value)
                if ref not in lease.last_delivered_refs:
                    lease.last_delivered_refs.append(ref)
            elif leftover.value not in lease.stray_occupants:
                lease.stray_occupants.append(leftover.value)
        return lease

    @staticmethod
    async def _load_leftovers(session: AsyncSession, room_id: str) -> list[RoomLeftover]:
        result = await session.execute(
            select(RoomLeftover)
            .where(RoomLeftover.room_id == room_id)
            .order_by(RoomLeftover.id)
        )
        return list(result.scalars().all())

    @staticmethod
    async def _record_leftovers(
        session: AsyncSession,
        room_id: str,
        occupant: str | None,
        refs: Sequence[int],
    ) -> None:
        rows = [
            {"room_id": room_id, "kind": LEFTOVER_MESSAGE, "value": str(ref)} for ref in refs
        ]
        if occupant:
            rows.append({"room_id": room_id, "kind": LEFTOVER_OCCUPANT, "value": occupant})
        if not rows:
            return
        await session.execute(
            insert_ignore(
                session,
                RoomLeftover,
                rows,
                index_elements=["room_id", "kind", "value"],
            )
        )

    async def release(
        self,
        lease: RoomLease,
        occupant: str | None,
        delivered_refs: Sequence[int],
    ) -> bool:
        """Free the room and record who is inside and what was delivered.

        Returns ``False`` when the lease had already been superseded by a
        steal or a forced release. The room stays with its new holder in that
        case, and the occupant and references are kept as leftovers for the
        next lease to sanitize.
        """

        async with self._session_factory() as session:
            result = await session.execute(
                update(Room)
                .where(Room.id == lease.id, Room.lease_version == lease.version)
                .values(
                    busy=False,
                    current_occupant=occupant,
                    last_delivered_refs=list(delivered_refs),
                    last_used_at=utcnow(),
                )
                .execution_options(synchronize_session=False)
            )
            released = result.rowcount == 1
            if released:
                if lease.leftover_ids:
                    await session.execute(
                        delete(RoomLeftover).where(RoomLeftover.id.in_(lease.leftover_ids))
                    )
            else:
                await self._record_leftovers(session, lease.room_id, occupant, delivered_refs)
            await session.commit()
        if not released:
            logger.warning(
                "Lease v%s on room %s was superseded before release; kept %s refs as leftovers",
                lease.version,
                lease.room_id,
                len(delivered_refs),
            )
        return released

    async def force_release_all(self) -> int:
        """Clear every busy flag, invalidating any lease still in flight."""

        async with self._session_factory() as session:
            result = await session.execute(
                update(Room)
                .where(Room.busy.is_(True))
                .values(busy=False, lease_version=Room.lease_version + 1)
                .execution_options(synchronize_session=False)
            )
            await session.commit()
        return int(result.rowcount or 0)

    async def release_stale(self, older_than: datetime) -> int:
        """Free rooms that have been busy since before ``older_than``."""

        async with self._session_factory() as session:
            result = await session.execute(
                update(Room)
                .where(
                    Room.busy.is_(True),
                    func.coalesce(Room.leased_at, Room.last_used_at) <= older_than,
                )
                .values(busy=False, lease_version=Room.lease_version + 1)
                .execution_options(synchronize_session=False)
            )
            await session.commit()
        return int(result.rowcount or 0)

    async def add_room(self, room_id: str) -> bool:
        """Register a room; returns ``False`` if it was already in the pool."""

        async with self._session_factory() as session:
            result = await session.execute(
                insert_ignore(
                    session,
                    Room,
                    {
                        "room_id": room_id,
                        "busy": False,
                        "last_used_at": utcnow(),
                        "last_delivered_refs": [],
                        "lease_version": 0,
                    },
                    index_elements=["room_id"],
                )
            )
            await session.commit()
        return bool(result.rowcount)

    async def get(self, room_id: str) -> Room | None:
        async with self._session_factory() as session:
            result = await session.execute(select(Room).where(Room.room_id == room_id))
            return result.scalar_one_or_none()

    async def leftovers(self, room_id: str) -> tuple[list[str], list[int]]:
        """Return stray occupants and message ids left by superseded leases."""

        async with self._session_factory() as session:
            rows = await self._load_leftovers(session, room_id)
        occupants = [row.value for row in rows if row.kind == LEFTOVER_OCCUPANT]
        refs = [int(row.value) for row in rows if row.kind == LEFTOVER_MESSAGE]
        return occupants, refs

    async def reset_room(self, room_id: str) -> bool:
        """Mark a manually cleaned room free and empty."""

        async with self._session_factory() as session:
            result = await session.execute(
                update(Room)
                .where(Room.room_id == room_id)
                .values(
                    busy=False,
                    current_occupant=None,
                    last_delivered_refs=[],
                    lease_version=Room.lease_version + 1,
                )
                .execution_options(synchronize_session=False)
            )
            await session.execute(delete(RoomLeftover).where(RoomLeftover.room_id == room_id))
            await session.commit()
        return bool(result.rowcount)

    async def count(self) -> int:
        async with self._session_factory() as session:
            result = await session.execute(select(func.count(Room.id)))
            return int(result.scalar_one())

    async def list_rooms(self) -> list[RoomStatus]:
        async with self._session_factory() as session:
            result = await session.execute(select(Room).order_by(Room.id))
            return [
                RoomStatus(
                    room_id=room.room_id,
                    busy=room.busy,
                    last_used_at=room.last_used_at,
                    current_occupant=room.current_occupant,
                    message_count=len(room.last_delivered_refs or []),
                )
                for room in result.scalars().all()
            ]
