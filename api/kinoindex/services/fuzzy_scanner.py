"""Resumable page-by-page listing scan that supplements under-returning searches.

Invariants:
- State is keyed by (normalized query, filter fingerprint) and lives for
  ``fuzzy_scan_ttl_seconds`` after its last write.
- ``scanned_up_to_page`` never decreases, even when upstream reports a smaller
  ``last_page`` than a previous call did.
- An upstream failure ends the invocation early; pages already scanned stay
  in the state.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from functools import partial

from kinoindex.core.config import settings
from kinoindex.services.text_match import QueryTokens, RankedCandidate, SearchFilters, rank_candidates
from kinoindex.upstream.base import BaseProvider
from kinoindex.upstream.http import UpstreamError
from kinoindex.upstream.observability import UpstreamMonitor, call_upstream
from kinoindex.utils.cache import TTLCache

logger = logging.getLogger("kinoindex.services.fuzzy_scanner")

SCAN_SOURCE = "scan"


@dataclass(slots=True)
class FuzzyScanState:
    scanned_up_to_page: int = 0
    last_page: int | None = None
    matches: list[RankedCandidate] = field(default_factory=list)
    updated_at: float = field(default_factory=time.time)

    @property
    def exhausted(self) -> bool:
        return self.last_page is not None and self.scanned_up_to_page >= self.last_page


class FuzzyScanner:
    """Walk a provider's listing pages and keep the ranked matches per query."""

    def __init__(
        self,
        provider: BaseProvider,
        *,
        cache: TTLCache[FuzzyScanState] | None = None,
        monitor: UpstreamMonitor | None = None,
        max_pages: int | None = None,
        page_size: int | None = None,
        max_matches: int | None = None,
    ) -> None:
        self.provider = provider
        if cache is None:
            cache = TTLCache(settings.fuzzy_scan_ttl_seconds)
        self.cache: TTLCache[FuzzyScanState] = cache
        self.monitor = monitor
        self.max_pages = max_pages or settings.fuzzy_scan_max_pages
        self.page_size = page_size or settings.fuzzy_scan_page_size
        self.max_matches = max_matches or settings.fuzzy_scan_max_matches

    def state_for(self, query: QueryTokens, filters: SearchFilters) -> FuzzyScanState | None:
        return self.cache.get((query.key, filters.fingerprint()))

    async def scan(self, query: QueryTokens, filters: SearchFilters, target_count: int) -> FuzzyScanState:
        """Advance the scan for ``query`` until ``target_count`` matches, the page budget or the last page."""
        key = (query.key, filters.fingerprint())
        state = self.cache.get(key) or FuzzyScanState()
        if len(state.matches) >= target_count or state.exhausted or not query.tokens:
            return state

        page = max(state.scanned_up_to_page + 1, self.provider.initial_cursor)
        pages_read = 0
        while pages_read < self.max_pages and len(state.matches) < target_count:
            if state.last_page is not None and page > state.last_page:
                break
            try:
                listing = await call_upstream(
                    self.monitor,
                    self.provider.name,
                    "scan",
                    partial(self.provider.fetch_listing, page, self.page_size, kind=filters.kind, year=filters.year),
                    context={"page": page, "query": query.text},
                )
            except UpstreamError as exc:
                logger.warning(
                    "Fuzzy scan stopped early on %s page %s: %s", self.provider.name, page, exc.message
                )
                break
            pages_read += 1
            state.scanned_up_to_page = max(state.scanned_up_to_page, page)
            if listing.last_page is not None:
                state.last_page = listing.last_page
            elif listing.next_cursor is None or listing.fetched == 0:
                state.last_page = page

            fresh = [(record, SCAN_SOURCE) for record in listing.items if filters.accepts(record)]
            if fresh:
                known = [(candidate.record, candidate.source) for candidate in state.matches]
                state.matches = rank_candidates(known + fresh, query)[: self.max_matches]
            page += 1

        state.updated_at = time.time()
        self.cache.set(key, state)
        logger.debug(
            "Fuzzy scan for %r: %s pages read, scanned up to %s/%s, %s matches",
            query.text,
            pages_read,
            state.scanned_up_to_page,
            state.last_page,
            len(state.matches),
        )
        return state
