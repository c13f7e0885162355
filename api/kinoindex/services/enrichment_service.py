"""Per-id backfill of secondary attributes with TTL caching and bounded fan-out.

Invariants:
- Only items with a Kinopoisk id and at least one missing needed field are
  looked up, and each distinct id is looked up at most once per call.
- No more than ``concurrency`` detail lookups are in flight at once.
- A failed lookup caches an empty entry, so a dead id is retried only after
  the TTL expires; the affected items keep their own values.
- Enrichment only fills gaps; an item's non-null values always win.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field, replace
from typing import Iterable, Sequence

from kinoindex.core.config import settings
from kinoindex.models.catalog import VideoKind
from kinoindex.upstream.base import BaseProvider, CatalogRecord, VideoDetails
from kinoindex.upstream.http import UpstreamError
from kinoindex.upstream.observability import UpstreamMonitor, call_upstream
from kinoindex.utils.cache import TTLCache

logger = logging.getLogger("kinoindex.services.enrichment")

ENRICHABLE_FIELDS = ("genres", "countries", "kp_rating", "imdb_rating", "episodes_count")


@dataclass(slots=True)
class EnrichmentEntry:
    genres: frozenset[str] = frozenset()
    countries: frozenset[str] = frozenset()
    kp_rating: float | None = None
    imdb_rating: float | None = None
    episodes_count: int | None = None
    # False when the lookup that produced this entry did not try to count episodes.
    episodes_checked: bool = False
    failed: bool = False
    fetched_at: float = field(default_factory=time.time)

    @classmethod
    def from_details(cls, details: VideoDetails | None, *, episodes_checked: bool) -> EnrichmentEntry:
        if details is None:
            return cls(episodes_checked=episodes_checked)
        return cls(
            genres=details.genres,
            countries=details.countries,
            kp_rating=details.kp_rating,
            imdb_rating=details.imdb_rating,
            episodes_count=details.episodes_count,
            episodes_checked=episodes_checked or details.episodes_count is not None,
        )

    def covers(self, kind: VideoKind) -> bool:
        """Whether this entry can serve an item of ``kind`` without a fresh lookup."""
        if self.failed or kind is not VideoKind.SERIAL:
            return True
        return self.episodes_count is not None or self.episodes_checked


def _is_missing(record: CatalogRecord, name: str) -> bool:
    if name == "episodes_count" and record.kind is not VideoKind.SERIAL:
        return False
    value = getattr(record, name)
    return value is None or (isinstance(value, frozenset) and not value)


def needs_enrichment(record: CatalogRecord, needed_fields: Iterable[str] = ENRICHABLE_FIELDS) -> bool:
    return record.kp_id is not None and any(_is_missing(record, name) for name in needed_fields)


def apply_entry(record: CatalogRecord, entry: EnrichmentEntry) -> CatalogRecord:
    """Coalesce cached attributes onto ``record``; existing values are kept."""
    changes: dict[str, object] = {}
    if not record.genres and entry.genres:
        changes["genres"] = entry.genres
    if not record.countries and entry.countries:
        changes["countries"] = entry.countries
    if record.kp_rating is None and entry.kp_rating is not None:
        changes["kp_rating"] = entry.kp_rating
    if record.imdb_rating is None and entry.imdb_rating is not None:
        changes["imdb_rating"] = entry.imdb_rating
    if record.episodes_count is None and entry.episodes_count is not None and record.kind is VideoKind.SERIAL:
        changes["episodes_count"] = entry.episodes_count
    return replace(record, **changes) if changes else record


class EnrichmentCache:
    """Backfill missing attributes from a provider's detail endpoint."""

    def __init__(
        self,
        provider: BaseProvider,
        *,
        cache: TTLCache[EnrichmentEntry] | None = None,
        monitor: UpstreamMonitor | None = None,
        concurrency: int | None = None,
    ) -> None:
        self.provider = provider
        if cache is None:
            cache = TTLCache(settings.enrichment_ttl_seconds)
        self.cache: TTLCache[EnrichmentEntry] = cache
        self.monitor = monitor
        self.concurrency = max(1, concurrency or settings.enrichment_concurrency)
        self.lookups = 0

    async def _lookup(self, semaphore: asyncio.Semaphore, kp_id: int, kind: VideoKind) -> EnrichmentEntry:
        async with semaphore:
            self.lookups += 1
            try:
                details = await call_upstream(
                    self.monitor,
                    self.provider.name,
                    "details",
                    lambda: self.provider.fetch_details(kp_id, kind=kind),
                    context={"kp_id": kp_id},
                )
            except UpstreamError as exc:
                logger.info("Enrichment lookup for kp %s failed: %s", kp_id, exc.message)
                entry = EnrichmentEntry(failed=True)
            else:
                entry = EnrichmentEntry.from_details(details, episodes_checked=kind is VideoKind.SERIAL)
        self.cache.set(kp_id, entry)
        return entry

    async def enrich(
        self,
        items: Sequence[CatalogRecord],
        needed_fields: Iterable[str] | None = None,
    ) -> list[CatalogRecord]:
        """Return ``items`` with missing secondary fields filled where possible."""
        needed = tuple(needed_fields) if needed_fields is not None else ENRICHABLE_FIELDS
        unknown = set(needed) - set(ENRICHABLE_FIELDS)
        if unknown:
            raise ValueError(f"Cannot enrich fields: {', '.join(sorted(unknown))}")

        entries: dict[int, EnrichmentEntry] = {}
        pending: dict[int, VideoKind] = {}
        for record in items:
            if not needs_enrichment(record, needed):
                continue
            kp_id: int = record.kp_id  # type: ignore[assignment]
            cached = self.cache.get(kp_id)
            if cached is not None and cached.covers(record.kind):
                entries[kp_id] = cached
                continue
            if pending.get(kp_id) is not VideoKind.SERIAL:
                pending[kp_id] = record.kind

        if pending:
            semaphore = asyncio.Semaphore(self.concurrency)
            ids = list(pending)
            results = await asyncio.gather(*(self._lookup(semaphore, kp_id, pending[kp_id]) for kp_id in ids))
            entries.update(zip(ids, results))
            logger.debug("Enriched %s ids (%s cached)", len(ids), len(entries) - len(ids))

        enriched: list[CatalogRecord] = []
        for record in items:
            entry = entries.get(record.kp_id) if record.kp_id is not None else None
            enriched.append(apply_entry(record, entry) if entry else record)
        return enriched
