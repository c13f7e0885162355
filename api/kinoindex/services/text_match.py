"""Text normalization, fuzzy matching and ranking for catalog search.

Invariants:
- ``normalize`` is idempotent and applied identically to queries and titles.
- An exact title match always outranks a containment or token match for the
  same query; a matched year hint adds a fixed bonus on top.
- Ranking is deterministic: score desc, year desc, video id desc.
"""

from __future__ import annotations

import math
import re
import unicodedata
from dataclasses import dataclass
from typing import Iterable, Sequence

from kinoindex.models.catalog import VideoKind
from kinoindex.upstream.base import CatalogRecord

MAX_TOKENS = 6
MIN_TOKEN_LENGTH = 2
PREFIX_LENGTH = 3
EXACT_BONUS = 10
CONTAINS_BONUS = 4
YEAR_BONUS = 5
LONG_TOKEN_WEIGHT = 3
SHORT_TOKEN_WEIGHT = 1
LEADING_TOKEN_BONUS = 1
PREFIX_WEIGHT = 1

STOPWORDS = frozenset(
    {
        "и", "в", "во", "на", "с", "со", "к", "ко", "по", "из", "за", "от", "до", "о", "об", "не", "а",
        "the", "a", "an", "of", "and", "in", "on", "to", "for", "at", "by",
    }
)

_NON_WORD_RE = re.compile(r"[\W_]+", re.UNICODE)


def normalize(text: str | None) -> str:
    """Lowercase, fold diacritics (ё -> е), drop punctuation and collapse whitespace."""
    if not text:
        return ""
    lowered = text.casefold().replace("ё", "е")
    decomposed = unicodedata.normalize("NFKD", lowered)
    stripped = "".join(ch for ch in decomposed if not unicodedata.combining(ch))
    return " ".join(_NON_WORD_RE.sub(" ", stripped).split())


def _is_year(token: str) -> bool:
    return len(token) == 4 and token.isdigit() and 1900 <= int(token) <= 2099


@dataclass(frozen=True, slots=True)
class QueryTokens:
    """Normalized query split into text tokens and an optional year hint.

    ``text`` has the year hint removed; ``normalized`` is the whole query.
    """
    text: str
    tokens: tuple[str, ...]
    year: int | None = None
    normalized: str = ""

    @property
    def key(self) -> str:
        return f"{self.text}|{self.year or ''}"


def tokenize(text: str | None) -> QueryTokens:
    """Split a query into at most six tokens, pulling out a 1900-2099 year hint."""
    normalized = normalize(text)
    words = normalized.split()
    year = next((int(word) for word in words if _is_year(word)), None)
    if year is not None:
        without_year = [word for word in words if word != str(year)]
        # A bare year ("1917") is also the title.
        if without_year:
            words = without_year
    filtered = [word for word in words if len(word) >= MIN_TOKEN_LENGTH and word not in STOPWORDS]
    tokens = tuple((filtered or words)[:MAX_TOKENS])
    return QueryTokens(text=" ".join(words), tokens=tokens, year=year, normalized=normalized)


@dataclass(frozen=True, slots=True)
class MatchResult:
    matched: bool
    score: int = 0
    tier: str = "none"
    matched_tokens: int = 0
    token_count: int = 0
    year_matched: bool = False

    @property
    def coverage(self) -> float:
        """Share of query tokens found verbatim (prefix fallbacks excluded)."""
        if not self.token_count:
            return 0.0
        return self.matched_tokens / self.token_count


NO_MATCH = MatchResult(matched=False)


def required_tokens(token_count: int) -> int:
    if token_count <= 2:
        return token_count
    return max(2, math.ceil(0.6 * token_count))


def is_match(haystack: str | None, query: QueryTokens | str, *, year: int | None = None) -> MatchResult:
    """Score ``haystack`` against ``query``; ``year`` is the candidate's release year."""
    q = query if isinstance(query, QueryTokens) else tokenize(query)
    hay = normalize(haystack)
    if not hay or not q.tokens:
        return NO_MATCH

    score = 0
    full = 0
    found = 0
    for token in q.tokens:
        index = hay.find(token)
        if index != -1:
            full += 1
            found += 1
            score += LONG_TOKEN_WEIGHT if len(token) >= 4 else SHORT_TOKEN_WEIGHT
            if index == 0:
                score += LEADING_TOKEN_BONUS
        elif len(token) >= 4 and token[:PREFIX_LENGTH] in hay:
            found += 1
            score += PREFIX_WEIGHT

    tier = "tokens"
    if hay in (q.text, q.normalized):
        tier = "exact"
        score += EXACT_BONUS + CONTAINS_BONUS
    elif q.text and q.text in hay:
        tier = "contains"
        score += CONTAINS_BONUS
    elif found < required_tokens(len(q.tokens)):
        return NO_MATCH

    year_matched = q.year is not None and year == q.year
    if year_matched:
        score += YEAR_BONUS
    return MatchResult(
        matched=True,
        score=score,
        tier=tier,
        matched_tokens=full,
        token_count=len(q.tokens),
        year_matched=year_matched,
    )


def best_match(record: CatalogRecord, query: QueryTokens) -> MatchResult:
    """Best match across the localized title, the original title and both combined."""
    best = NO_MATCH
    for haystack in (record.title, record.original_title, record.haystack):
        if not haystack:
            continue
        result = is_match(haystack, query, year=record.year)
        if result.matched and (not best.matched or result.score > best.score):
            best = result
    return best


@dataclass(frozen=True, slots=True)
class SearchFilters:
    """Caller filters: kind, year and country are hard; genres feed the relevance floor."""
    kind: VideoKind | None = None
    year: int | None = None
    genres: frozenset[str] = frozenset()
    country: str | None = None

    def fingerprint(self) -> str:
        genres = ",".join(sorted(normalize(genre) for genre in self.genres))
        return "|".join(
            [
                f"kind:{self.kind.value if self.kind else ''}",
                f"year:{self.year or ''}",
                f"genres:{genres}",
                f"country:{normalize(self.country)}",
            ]
        )

    def accepts(self, record: CatalogRecord) -> bool:
        if self.kind and record.kind is not self.kind:
            return False
        if self.year and record.year != self.year:
            return False
        if self.country:
            wanted = normalize(self.country)
            if wanted not in {normalize(country) for country in record.countries}:
                return False
        return True


def genre_overlap(record: CatalogRecord, genres: Iterable[str]) -> float:
    """Share of requested genres present on the record; 1.0 when none requested."""
    wanted = {normalize(genre) for genre in genres if normalize(genre)}
    if not wanted:
        return 1.0
    have = {normalize(genre) for genre in record.genres}
    return len(wanted & have) / len(wanted)


@dataclass(slots=True)
class RankedCandidate:
    record: CatalogRecord
    match: MatchResult
    source: str = "store"

    @property
    def sort_key(self) -> tuple[int, int, int]:
        return (-self.match.score, -(self.record.year or -1), -self.record.video_id)


def rank_candidates(
    candidates: Iterable[CatalogRecord | tuple[CatalogRecord, str]],
    query: QueryTokens,
) -> list[RankedCandidate]:
    """Score, dedupe and sort candidates; the first matched occurrence of an id wins."""
    seen: set[tuple[str, object]] = set()
    ranked: list[RankedCandidate] = []
    for candidate in candidates:
        record, source = candidate if isinstance(candidate, tuple) else (candidate, "store")
        if record.dedupe_key in seen:
            continue
        match = best_match(record, query)
        if not match.matched:
            continue
        seen.add(record.dedupe_key)
        ranked.append(RankedCandidate(record=record, match=match, source=source))
    ranked.sort(key=lambda item: item.sort_key)
    return ranked


@dataclass(frozen=True, slots=True)
class RelevanceTier:
    name: str
    min_coverage: float
    min_genre_overlap: float
    admits_keyword: bool = False


RELEVANCE_TIERS: tuple[RelevanceTier, ...] = (
    RelevanceTier("strict", 1.0, 1.0),
    RelevanceTier("broad", 0.75, 0.5),
    RelevanceTier("loose", 0.5, 0.0),
    RelevanceTier("minimal", 0.34, 0.0, admits_keyword=True),
)
UNFILTERED_TIER = "unfiltered"
KEYWORD_TIER = "keyword"


def _passes(candidate: RankedCandidate, tier: RelevanceTier, genres: frozenset[str]) -> bool:
    # Tag-only hits share no title tokens with the query.
    if candidate.match.tier == KEYWORD_TIER and not tier.admits_keyword:
        return False
    if candidate.match.tier == "tokens" and candidate.match.coverage < tier.min_coverage:
        return False
    return genre_overlap(candidate.record, genres) >= tier.min_genre_overlap


def apply_relevance_floor(
    ranked: Sequence[RankedCandidate],
    target: int,
    genres: frozenset[str] = frozenset(),
) -> tuple[list[RankedCandidate], str]:
    """Return the strictest tier that still fills ``target`` rows, else everything."""
    for tier in RELEVANCE_TIERS:
        kept = [candidate for candidate in ranked if _passes(candidate, tier, genres)]
        if len(kept) >= target:
            return kept, tier.name
    return list(ranked), UNFILTERED_TIER

