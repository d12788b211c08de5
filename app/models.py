"""Pydantic models describing catalog entries and runtime state."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from typing import TYPE_CHECKING, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .utils import utcnow

if TYPE_CHECKING:
    from .db_models import Movie

MediaKind = Literal["video", "photo", "document", "audio", "animation"]
MEDIA_KINDS: tuple[str, ...] = ("video", "photo", "document", "audio", "animation")


class MediaRef(BaseModel):
    """A transport file reference stored for a catalog entry."""

    model_config = ConfigDict(frozen=True)

    reference_id: str
    kind: MediaKind
    caption: str = ""

    @property
    def album_group(self) -> str:
        """Return the album bucket this item can share a media group with."""

        if self.kind in ("photo", "video"):
            return "visual"
        return self.kind

    @property
    def albumable(self) -> bool:
        """Animations cannot be part of a media group and go out one by one."""

        return self.kind != "animation"


class CatalogEntry(BaseModel):
    """Read-only snapshot of a movie as seen by matching and delivery."""

    id: int | None = None
    title: str
    categories: list[str] = Field(default_factory=list)
    media_items: list[MediaRef] = Field(default_factory=list)
    thumbnail: str | None = None
    popularity: int = 0

    @field_validator("title")
    @classmethod
    def _normalise_title(cls, value: str) -> str:
        return " ".join(value.split()).lower()

    @field_validator("categories", mode="before")
    @classmethod
    def _normalise_categories(cls, value: object) -> object:
        if isinstance(value, (list, tuple, set)):
            cleaned: list[str] = []
            for entry in value:
                lowered = str(entry).strip().lower()
                if lowered and lowered not in cleaned:
                    cleaned.append(lowered)
            return cleaned
        return value

    @property
    def clip_count(self) -> int:
        return len(self.media_items)

    @classmethod
    def from_record(cls, movie: "Movie") -> "CatalogEntry":
        return cls(
            id=movie.id,
            title=movie.title,
            categories=[category.name for category in movie.categories],
            media_items=[
                MediaRef(
                    reference_id=item.reference_id,
                    kind=item.kind,
                    caption=item.caption or "",
                )
                for item in movie.media_items
            ],
            thumbnail=movie.thumbnail,
            popularity=movie.popularity,
        )


@dataclass
class OperatorState:
    """Process-local operator toggles and daily counters.

    Injected into the delivery and handler layers instead of living in module
    globals; counters are read and reset by the daily rollover job.
    """

    maintenance: bool = False
    searches: int = 0
    deliveries: int = 0
    day: date = field(default_factory=lambda: utcnow().date())

    def record_search(self) -> None:
        self.searches += 1

    def record_delivery(self) -> None:
        self.deliveries += 1

    def rollover(self, today: date | None = None) -> tuple[date, int, int] | None:
        """Reset counters when the day changed, returning the closed day's totals."""

        current = today or utcnow().date()
        if current == self.day:
            return None
        closed = (self.day, self.searches, self.deliveries)
        self.day = current
        self.searches = 0
        self.deliveries = 0
        return closed
