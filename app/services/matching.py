"""Multi-strategy fuzzy resolution of free-text queries against the catalog."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Iterable, Sequence

from rapidfuzz.distance import Levenshtein

from ..models import CatalogEntry

MIN_QUERY_LENGTH = 2
MIN_FUZZY_LENGTH = 3
CANDIDATE_LIMIT = 5
SUGGESTION_LIMIT = 3
FALLBACK_LIMIT = 5

KEYBOARD_ROWS = ("qwertyuiop", "asdfghjkl", "zxcvbnm")
KEYBOARD_REJECT = 100.0

SOUNDEX_CODES: dict[str, int] = {
    **dict.fromkeys("aeiouhwy", 0),
    **dict.fromkeys("bfpv", 1),
    **dict.fromkeys("cgjkqsxz", 2),
    **dict.fromkeys("dt", 3),
    "l": 4,
    **dict.fromkeys("mn", 5),
    "r": 6,
}


@dataclass(frozen=True, slots=True)
class SingleMatch:
    """The query resolved to exactly one catalog entry."""

    entry: CatalogEntry
    strategy: str


@dataclass(frozen=True, slots=True)
class Suggestions:
    """Several plausible entries, best first, for the user to confirm."""

    entries: tuple[CatalogEntry, ...]


@dataclass(frozen=True, slots=True)
class NoMatch:
    """Nothing in the catalog resembles the query."""


MatchOutcome = SingleMatch | Suggestions | NoMatch


@dataclass(frozen=True, slots=True)
class ScoredCandidate:
    entry: CatalogEntry
    score: float
    reason: str


def normalise_query(query: str) -> str:
    return " ".join((query or "").lower().split())


def matches_spaceless(query: str, title: str) -> bool:
    """Compare with all whitespace removed; either side may contain the other."""

    q = re.sub(r"\s+", "", query.lower())
    t = re.sub(r"\s+", "", title.lower())
    if len(q) < 3 or not t:
        return False
    return q in t or t in q


def matches_tokens(query: str, title: str) -> bool:
    """Every query token longer than one character must appear in the title."""

    tokens = [token for token in query.lower().split() if len(token) > 1]
    lowered = title.lower()
    return bool(tokens) and all(token in lowered for token in tokens)


def soundex(value: str) -> str:
    """Return the four character phonetic key of ``value``.

    The first character is kept (uppercased); later letters contribute their
    consonant group digit unless it is a vowel-like letter or repeats the last
    emitted group. Characters outside the table are ignored.
    """

    if not value or len(value) < 2:
        return "0000"
    letters = value.lower()
    result = letters[0].upper()
    previous = SOUNDEX_CODES.get(letters[0], 0)
    for char in letters[1:]:
        if len(result) >= 4:
            break
        code = SOUNDEX_CODES.get(char)
        if code is None or code == 0 or code == previous:
            continue
        result += str(code)
        previous = code
    return (result + "000")[:4]


def _keyboard_row(char: str) -> int:
    for index, row in enumerate(KEYBOARD_ROWS, start=1):
        if char in row:
            return index
    return 0


def keyboard_proximity(a: str, b: str) -> float:
    """Score positional typos by how far apart the keyboard rows are."""

    if abs(len(a) - len(b)) > 2:
        return KEYBOARD_REJECT
    score = 0.0
    for left, right in zip(a, b):
        if left == right:
            continue
        row_left = _keyboard_row(left)
        row_right = _keyboard_row(right)
        if row_left == row_right:
            score += 0.5
        elif abs(row_left - row_right) == 1:
            score += 1
        else:
            score += 2
    return score + abs(len(a) - len(b))


def edit_distance(a: str, b: str) -> int:
    return Levenshtein.distance(a, b)


def _word_pattern(query: str) -> re.Pattern[str]:
    return re.compile(rf"(?<!\w){re.escape(query)}(?!\w)", re.IGNORECASE)


def category_exact(query: str, categories: Iterable[str]) -> bool:
    pattern = _word_pattern(query)
    return any(pattern.search(category) for category in categories)


def category_fuzzy(query: str, categories: Iterable[str]) -> bool:
    """Allow a single edit against any category word of four or more letters."""

    if len(query) < 4:
        return False
    for category in categories:
        for word in re.split(r"\W+", category.lower()):
            if len(word) >= 4 and edit_distance(query, word) <= 1:
                return True
    return False


def score_candidate(query: str, entry: CatalogEntry) -> ScoredCandidate | None:
    """Return the first applicable fuzzy score for ``entry`` or ``None``."""

    title = entry.title
    if category_exact(query, entry.categories):
        return ScoredCandidate(entry, -0.5, "category")
    if category_fuzzy(query, entry.categories):
        return ScoredCandidate(entry, 0.5, "category-fuzzy")
    if soundex(query) == soundex(title):
        return ScoredCandidate(entry, 1.0, "phonetic")

    threshold = 1 if len(query) < 5 else 2
    distance = edit_distance(query, title)
    if distance <= threshold:
        return ScoredCandidate(entry, float(distance + 2), "edit-distance")

    if len(query) >= 5:
        typo_score = keyboard_proximity(query, title)
        if typo_score <= 2:
            return ScoredCandidate(entry, typo_score + 4, "keyboard")
    return None


def rank_candidates(
    query: str, catalog: Sequence[CatalogEntry]
) -> list[ScoredCandidate]:
    """Score the catalog, lowest score first, keeping the best five."""

    scored: list[ScoredCandidate] = []
    for entry in catalog:
        if query in entry.title:
            continue
        candidate = score_candidate(query, entry)
        if candidate is not None:
            scored.append(candidate)
    scored.sort(key=lambda candidate: (candidate.score, candidate.entry.title))
    return scored[:CANDIDATE_LIMIT]


def fallback_matches(
    query: str, catalog: Sequence[CatalogEntry]
) -> list[CatalogEntry]:
    """Broad substring search over titles and word-boundary search over categories."""

    hits = [
        entry
        for entry in catalog
        if query in entry.title or category_exact(query, entry.categories)
    ]
    hits.sort(key=lambda entry: (-entry.popularity, entry.title))
    return hits[:FALLBACK_LIMIT]


def resolve(query: str, catalog: Sequence[CatalogEntry]) -> MatchOutcome:
    """Map a cleaned query onto the catalog.

    Stages run in order and the first one that reaches a decision wins: exact
    title, a single spaceless match, a single token-subset match, the scored
    fuzzy cascade, and finally a broad substring/category search.
    """

    q = normalise_query(query)
    if len(q) < MIN_QUERY_LENGTH:
        return NoMatch()

    for entry in catalog:
        if entry.title == q:
            return SingleMatch(entry, "exact")

    if len(q) >= MIN_FUZZY_LENGTH:
        spaceless = [entry for entry in catalog if matches_spaceless(q, entry.title)]
        if len(spaceless) == 1:
            return SingleMatch(spaceless[0], "spaceless")

        tokens = [entry for entry in catalog if matches_tokens(q, entry.title)]
        if len(tokens) == 1:
            return SingleMatch(tokens[0], "tokens")

        ranked = rank_candidates(q, catalog)
        if len(ranked) == 1:
            return SingleMatch(ranked[0].entry, ranked[0].reason)
        if ranked:
            return Suggestions(
                tuple(candidate.entry for candidate in ranked[:SUGGESTION_LIMIT])
            )

    hits = fallback_matches(q, catalog)
    if len(hits) == 1:
        return SingleMatch(hits[0], "substring")
    if hits:
        return Suggestions(tuple(hits))
    return NoMatch()


def related(
    entry: CatalogEntry, catalog: Sequence[CatalogEntry], limit: int = 3
) -> list[CatalogEntry]:
    """Return other entries sharing at least one category with ``entry``."""

    if not entry.categories:
        return []
    wanted = set(entry.categories)
    matches = [
        other
        for other in catalog
        if other.title != entry.title and wanted.intersection(other.categories)
    ]
    matches.sort(key=lambda other: (-other.popularity, other.title))
    return matches[:limit]
