"""Strict record types and the provider interface every adapter implements."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from kinoindex.models.catalog import VideoKind

IDENTITY_FIELDS = ("provider", "video_id")
SET_FIELDS = ("genres", "countries")


@dataclass(frozen=True, slots=True)
class CatalogRecord:
    """Normalized catalog entry; upstream payload shapes never leave the adapters."""
    provider: str
    video_id: int
    kind: VideoKind
    kp_id: int | None = None
    imdb_id: str | None = None
    tmdb_id: str | None = None
    title: str | None = None
    original_title: str | None = None
    year: int | None = None
    quality: str | None = None
    poster_url: str | None = None
    iframe_url: str | None = None
    created_at: datetime | None = None
    genres: frozenset[str] = frozenset()
    countries: frozenset[str] = frozenset()
    episodes_count: int | None = None
    kp_rating: float | None = None
    imdb_rating: float | None = None

    @property
    def identity(self) -> tuple[str, int]:
        return (self.provider, self.video_id)

    @property
    def dedupe_key(self) -> tuple[str, Any]:
        """Primary external id when known, provider-scoped id otherwise."""
        if self.kp_id is not None:
            return ("kp", self.kp_id)
        return (self.provider, self.video_id)

    @property
    def haystack(self) -> str:
        """Title text used for fuzzy matching."""
        return " ".join(part for part in (self.title, self.original_title) if part)


@dataclass(slots=True)
class ListingPage:
    """One page from a listing or updates feed.

    ``fetched`` counts raw upstream items before normalization dropped invalid
    ones, so short-page detection is not skewed by unparseable rows.
    """
    items: list[CatalogRecord]
    next_cursor: int | None
    fetched: int = 0
    last_page: int | None = None
    total: int | None = None


@dataclass(slots=True)
class VideoDetails:
    """Secondary attributes returned by a per-id detail lookup."""
    kp_id: int
    genres: frozenset[str] = frozenset()
    countries: frozenset[str] = frozenset()
    kp_rating: float | None = None
    imdb_rating: float | None = None
    episodes_count: int | None = None


@dataclass(frozen=True, slots=True)
class LinkIdentifiers:
    """Identifiers a caller can supply to resolve a playable link."""
    kp_id: int | None = None
    imdb_id: str | None = None
    title: str | None = None
    year: int | None = None

    def is_empty(self) -> bool:
        return self.kp_id is None and not self.imdb_id and not self.title

    def cache_key(self) -> str:
        """Stable key built from identifiers only, never from decoration options."""
        return "|".join(
            [
                f"kp:{self.kp_id if self.kp_id is not None else ''}",
                f"imdb:{self.imdb_id or ''}",
                f"title:{(self.title or '').strip().casefold()}",
                f"year:{self.year if self.year is not None else ''}",
            ]
        )


@dataclass(frozen=True, slots=True)
class LookupAttempt:
    """A single provider-specific query in a resolution fallback chain."""
    name: str
    params: tuple[tuple[str, str], ...] = field(default_factory=tuple)
    kind: VideoKind | None = None


class BaseProvider:
    """Adapter interface for one upstream catalog feed.

    ``name`` addresses the feed (and its sync cursor); ``catalog_name`` is the
    provider id stored on records, shared by feeds of the same upstream.
    """
    name: str
    catalog_name: str
    initial_cursor: int = 0

    async def fetch_updates(self, cursor: int, limit: int) -> ListingPage:
        """Return one page of recently changed items."""
        raise NotImplementedError

    async def fetch_listing(
        self, cursor: int, limit: int, *, kind: VideoKind | None = None, year: int | None = None
    ) -> ListingPage:
        """Return one page of the complete catalog listing."""
        raise NotImplementedError

    async def search(self, query: str, limit: int = 20) -> list[CatalogRecord]:
        """Return records matching a free-text title query."""
        return []

    async def search_by_keyword(self, keyword: str, limit: int = 20) -> list[CatalogRecord]:
        """Return records tagged with a taxonomy entry matching ``keyword``."""
        return []

    async def fetch_details(self, kp_id: int, *, kind: VideoKind | None = None) -> VideoDetails | None:
        """Return secondary attributes for a Kinopoisk id, or None when unknown."""
        return None

    def resolution_attempts(self, identifiers: LinkIdentifiers) -> list[LookupAttempt]:
        """Return lookup attempts ordered from most to least specific."""
        return []

    async def lookup_link(self, attempt: LookupAttempt) -> str | None:
        """Run one lookup attempt; None means a clean not-found."""
        raise NotImplementedError
