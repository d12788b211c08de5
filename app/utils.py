"""Utility helpers for the Cliproom service."""

from __future__ import annotations

import base64
import binascii
import re
from datetime import datetime, timezone
from typing import Iterator, Sequence, TypeVar

T = TypeVar("T")

NOISE_PATTERNS: tuple[re.Pattern[str], ...] = tuple(
    re.compile(pattern, re.IGNORECASE)
    for pattern in (
        r"download",
        r"full\s*movie",
        r"watch\s*online",
        r"tamil\s*dubbed",
        r"hindi\s*dubbed",
        r"web-dl",
        r"hdtv",
        r"720p",
        r"1080p",
        r"4k",
        r"clips",
        r"movierulz",
        r"isaimini",
        r"tamilyogi",
        r"kuttymovies",
    )
)
HASHTAG_RE = re.compile(r"#(\w+)")
CREDIT_RES = tuple(
    re.compile(rf"{label}[:\s]+([A-Za-z0-9]+)", re.IGNORECASE)
    for label in ("hero", "heroine", "director")
)
WHITESPACE_RE = re.compile(r"\s+")


def utcnow() -> datetime:
    """Return the current UTC time as a naive datetime, matching stored columns."""

    return datetime.now(timezone.utc).replace(tzinfo=None)


def clean_title(title: str | None) -> str:
    """Normalise a raw title or search query into the catalog key form.

    Delimiters become spaces, a trailing ``@handle`` is shielded from the noise
    filters, common release/site noise is removed from the name part, and the
    result is whitespace-collapsed and lowercased.
    """

    if not title:
        return ""

    raw = re.sub(r"[|\-]", " ", title.strip())
    name_part = raw
    handle_part = ""
    if "@" in raw:
        name_part, _, handle_part = raw.partition("@")
        name_part = name_part.strip()
        handle_part = handle_part.strip()

    for pattern in NOISE_PATTERNS:
        name_part = pattern.sub("", name_part)

    final = name_part.strip()
    if handle_part:
        final = f"{final} - @{handle_part}" if final else f"@{handle_part}"
    return WHITESPACE_RE.sub(" ", final).strip().lower()


def encode_start_payload(title: str) -> str:
    """Encode a title into a deep-link ``/start`` payload (unpadded base64url)."""

    encoded = base64.urlsafe_b64encode(title.encode("utf-8")).decode("ascii")
    return encoded.rstrip("=")


def decode_start_payload(payload: str) -> str | None:
    """Decode a ``/start`` payload produced by :func:`encode_start_payload`."""

    if not payload:
        return None
    padded = payload + "=" * (-len(payload) % 4)
    try:
        return base64.urlsafe_b64decode(padded.encode("ascii")).decode("utf-8")
    except (binascii.Error, UnicodeError, ValueError):
        return None


def extract_categories(caption: str | None) -> list[str]:
    """Pull hashtags and ``hero:``/``heroine:``/``director:`` credits from a caption."""

    if not caption:
        return []
    found: list[str] = [tag.strip() for tag in HASHTAG_RE.findall(caption)]
    for pattern in CREDIT_RES:
        match = pattern.search(caption)
        if match:
            found.append(match.group(1).strip())

    unique: list[str] = []
    for entry in found:
        lowered = entry.lower()
        if lowered and lowered not in unique:
            unique.append(lowered)
    return unique


def chunked(items: Sequence[T], size: int) -> Iterator[list[T]]:
    """Yield consecutive slices of ``items`` no longer than ``size``."""

    if size <= 0:
        raise ValueError("size must be positive")
    for start in range(0, len(items), size):
        yield list(items[start : start + size])
