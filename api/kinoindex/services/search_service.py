"""Catalog search across the local store and upstream providers."""

from __future__ import annotations

import logging
import math
from collections import Counter
from functools import partial
from typing import Awaitable, Callable, Iterable, Sequence

from sqlalchemy.ext.asyncio import AsyncSession

from kinoindex.core.config import settings
from kinoindex.core.errors import InvalidRequestError
from kinoindex.schema.search import CatalogItemOut, SearchPage
from kinoindex.services.catalog_store import find_candidates
from kinoindex.services.enrichment_service import EnrichmentCache
from kinoindex.services.fuzzy_scanner import FuzzyScanner
from kinoindex.services.text_match import (
    KEYWORD_TIER,
    MatchResult,
    QueryTokens,
    RankedCandidate,
    SearchFilters,
    apply_relevance_floor,
    best_match,
    rank_candidates,
    tokenize,
)
from kinoindex.upstream.base import BaseProvider, CatalogRecord
from kinoindex.upstream.http import UpstreamError
from kinoindex.upstream.observability import UpstreamMonitor, call_upstream
from kinoindex.utils.cache import TTLCache

logger = logging.getLogger("kinoindex.services.search")

STORE_SOURCE = "store"


def merge_ranked(primary: Sequence[RankedCandidate], extra: Iterable[RankedCandidate]) -> list[RankedCandidate]:
    """Add ``extra`` candidates whose ids are not ranked yet, then re-sort."""
    seen = {candidate.record.dedupe_key for candidate in primary}
    merged = list(primary)
    for candidate in extra:
        if candidate.record.dedupe_key in seen:
            continue
        seen.add(candidate.record.dedupe_key)
        merged.append(candidate)
    merged.sort(key=lambda item: item.sort_key)
    return merged


def keyword_candidates(records: Iterable[CatalogRecord], query: QueryTokens, source: str) -> list[RankedCandidate]:
    """Tagged records are relevant through the tag even when the title does not match."""
    ranked: list[RankedCandidate] = []
    for record in records:
        match = best_match(record, query)
        if not match.matched:
            match = MatchResult(matched=True, tier=KEYWORD_TIER, token_count=len(query.tokens))
        ranked.append(RankedCandidate(record=record, match=match, source=source))
    return ranked


def record_to_item(
    record: CatalogRecord, *, score: int = 0, match_tier: str | None = None, source: str = STORE_SOURCE
) -> CatalogItemOut:
    return CatalogItemOut(
        provider=record.provider,
        video_id=record.video_id,
        kind=record.kind,
        kp_id=record.kp_id,
        imdb_id=record.imdb_id,
        tmdb_id=record.tmdb_id,
        title=record.title,
        original_title=record.original_title,
        year=record.year,
        quality=record.quality,
        poster_url=record.poster_url,
        iframe_url=record.iframe_url,
        created_at=record.created_at,
        genres=sorted(record.genres),
        countries=sorted(record.countries),
        episodes_count=record.episodes_count,
        kp_rating=record.kp_rating,
        imdb_rating=record.imdb_rating,
        score=score,
        match_tier=match_tier,
        source=source,
    )


def to_item(candidate: RankedCandidate) -> CatalogItemOut:
    return record_to_item(
        candidate.record, score=candidate.match.score, match_tier=candidate.match.tier, source=candidate.source
    )


def normalize_paging(page: int, limit: int | None) -> tuple[int, int]:
    """Coerce page and limit; limit falls back to the default and is capped."""
    try:
        page = max(1, int(page))
        limit = int(limit) if limit is not None else settings.search_default_limit
    except (TypeError, ValueError) as exc:
        raise InvalidRequestError("page and limit must be integers", field="page") from exc
    return page, min(max(1, limit), settings.search_max_limit)


class SearchService:
    """Rank store and upstream candidates and degrade the relevance floor gracefully."""

    def __init__(
        self,
        *,
        providers: Sequence[BaseProvider] = (),
        scanner: FuzzyScanner | None = None,
        enrichment: EnrichmentCache | None = None,
        cache: TTLCache[SearchPage] | None = None,
        monitor: UpstreamMonitor | None = None,
        candidate_limit: int | None = None,
    ) -> None:
        self.providers = list(providers)
        self.scanner = scanner
        self.enrichment = enrichment
        if cache is None:
            cache = TTLCache(settings.search_cache_ttl_seconds)
        self.cache: TTLCache[SearchPage] = cache
        self.monitor = monitor
        self.candidate_limit = candidate_limit or settings.search_candidate_limit

    async def _collect(
        self,
        provider: BaseProvider,
        operation: str,
        func: Callable[[], Awaitable[list[CatalogRecord]]],
        query: QueryTokens,
    ) -> list[CatalogRecord]:
        if self.monitor is not None and not self.monitor.allow_call(provider.name):
            await self.monitor.record_skip(
                provider.name, operation, reason="circuit_open", context={"query": query.text}
            )
            return []
        try:
            return await call_upstream(self.monitor, provider.name, operation, func, context={"query": query.text})
        except UpstreamError as exc:
            logger.warning("Skipping %s %s for %r: %s", provider.name, operation, query.text, exc.message)
            return []

    async def search_catalog(
        self,
        session: AsyncSession,
        query: str,
        filters: SearchFilters | None = None,
        page: int = 1,
        limit: int | None = None,
        *,
        enrich: bool = False,
    ) -> SearchPage:
        """Return one ranked page for ``query``.

        Candidates come from the store first, then direct provider search,
        keyword (tag) search and finally the fuzzy scanner, each stage only
        when the previous ones fall short of ``page * limit`` matches.
        """
        tokens = tokenize(query)
        if not (query or "").strip() or not tokens.tokens:
            raise InvalidRequestError("Search query must not be empty", field="query")
        filters = filters or SearchFilters()
        page, limit = normalize_paging(page, limit)
        target = page * limit

        key = (tokens.key, filters.fingerprint(), page, limit, enrich)
        hit = self.cache.get(key)
        if hit is not None:
            return hit.model_copy(update={"cached": True})

        pairs: list[tuple[CatalogRecord, str]] = [
            (record, STORE_SOURCE)
            for record in await find_candidates(session, tokens, filters, limit=self.candidate_limit)
        ]
        if len(query.strip()) >= settings.search_min_direct_query_length:
            for provider in self.providers:
                found = await self._collect(
                    provider, "search", partial(provider.search, query.strip(), limit=target), tokens
                )
                pairs.extend((record, provider.name) for record in found if filters.accepts(record))
        ranked = rank_candidates(pairs, tokens)

        if len(ranked) < target:
            for provider in self.providers:
                tagged = await self._collect(
                    provider, "keyword", partial(provider.search_by_keyword, tokens.text, limit=target), tokens
                )
                usable = [record for record in tagged if record.kp_id is not None and filters.accepts(record)]
                ranked = merge_ranked(ranked, keyword_candidates(usable, tokens, provider.name))

        if len(ranked) < target and self.scanner is not None:
            state = await self.scanner.scan(tokens, filters, target)
            ranked = merge_ranked(ranked, state.matches)

        kept, relevance = apply_relevance_floor(ranked, target, filters.genres)
        total = len(kept)
        last_page = max(1, math.ceil(total / limit))
        current = min(page, last_page)
        window = kept[(current - 1) * limit : current * limit]

        if enrich and self.enrichment is not None and window:
            records = await self.enrichment.enrich([candidate.record for candidate in window])
            window = [
                RankedCandidate(record=record, match=candidate.match, source=candidate.source)
                for record, candidate in zip(records, window)
            ]

        result = SearchPage(
            query=tokens.text,
            items=[to_item(candidate) for candidate in window],
            page=current,
            limit=limit,
            total=total,
            last_page=last_page,
            relevance=relevance,
            sources=dict(Counter(candidate.source for candidate in kept)),
        )
        self.cache.set(key, result)
        logger.info(
            "Search %r page %s: %s results (%s relevance)", tokens.text, current, total, relevance
        )
        return result
