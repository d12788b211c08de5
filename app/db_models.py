"""SQLAlchemy ORM models backing the persistent state."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import (
    BigInteger,
    Boolean,
    DateTime,
    ForeignKey,
    Integer,
    JSON,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .database import Base
from .utils import utcnow


class Movie(Base):
    """A titled catalog entry grouping the clips indexed for it."""

    __tablename__ = "movies"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    title: Mapped[str] = mapped_column(String(255), unique=True, index=True)
    thumbnail: Mapped[str | None] = mapped_column(String(255), nullable=True)
    popularity: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, onupdate=utcnow
    )

    media_items: Mapped[list["MediaItem"]] = relationship(
        back_populates="movie",
        cascade="all, delete-orphan",
        order_by="MediaItem.id",
    )
    categories: Mapped[list["MovieCategory"]] = relationship(
        back_populates="movie",
        cascade="all, delete-orphan",
        order_by="MovieCategory.id",
    )


class MediaItem(Base):
    """A single deliverable clip reference owned by a movie."""

    __tablename__ = "media_items"
    __table_args__ = (
        UniqueConstraint("movie_id", "reference_id", name="uq_media_reference"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    movie_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("movies.id", ondelete="CASCADE"), index=True
    )
    reference_id: Mapped[str] = mapped_column(String(255))
    kind: Mapped[str] = mapped_column(String(16))
    caption: Mapped[str] = mapped_column(Text, default="")

    movie: Mapped[Movie] = relationship(back_populates="media_items")


class MovieCategory(Base):
    """A lowercased free-text tag (performer, director, genre) on a movie."""

    __tablename__ = "movie_categories"
    __table_args__ = (
        UniqueConstraint("movie_id", "name", name="uq_movie_category"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    movie_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("movies.id", ondelete="CASCADE"), index=True
    )
    name: Mapped[str] = mapped_column(String(120), index=True)

    movie: Mapped[Movie] = relationship(back_populates="categories")


class Room(Base):
    """A private delivery channel leased to one user at a time."""

    __tablename__ = "rooms"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    room_id: Mapped[str] = mapped_column(String(64), unique=True)
    busy: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    last_used_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    current_occupant: Mapped[str | None] = mapped_column(String(64), nullable=True)
    last_delivered_refs: Mapped[list[int]] = mapped_column(JSON, default=list)
    leased_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    lease_version: Mapped[int] = mapped_column(Integer, default=0, nullable=False)


class RoomLeftover(Base):
    """Content left in a room by a lease that lost it to a steal or forced release.

    ``kind`` is ``message`` (a delivered message id) or ``occupant`` (a user
    still to be evicted); the next lease of the room sanitizes both.
    """

    __tablename__ = "room_leftovers"
    __table_args__ = (
        UniqueConstraint("room_id", "kind", "value", name="uq_room_leftover"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    room_id: Mapped[str] = mapped_column(String(64), index=True)
    kind: Mapped[str] = mapped_column(String(16))
    value: Mapped[str] = mapped_column(String(64))


class BotUser(Base):
    """Per-user bookkeeping including the soft delivery lock."""

    __tablename__ = "bot_users"

    user_id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=False)
    joined_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    last_active: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    search_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    download_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    badges: Mapped[list[str]] = mapped_column(JSON, default=list)
    is_delivering: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    last_delivery_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)


class AccessToken(Base):
    """Time-limited access pass granted through the token monetization mode."""

    __tablename__ = "access_tokens"

    user_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    expires_at: Mapped[datetime] = mapped_column(DateTime, index=True)


class BotSetting(Base):
    """Operator-controlled key/value settings persisted across restarts."""

    __tablename__ = "bot_settings"

    key: Mapped[str] = mapped_column(String(64), primary_key=True)
    value: Mapped[Any] = mapped_column(JSON)
