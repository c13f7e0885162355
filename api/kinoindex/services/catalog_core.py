"""Process-scoped aggregation core owning caches, telemetry and services."""

from __future__ import annotations

import logging
import math
from functools import lru_cache
from typing import Any, Iterable, Sequence

from sqlalchemy.ext.asyncio import AsyncSession

from kinoindex.core.config import settings
from kinoindex.models.catalog import SyncMode
from kinoindex.schema.search import CatalogBrowsePage, CatalogItemOut, CatalogTaxonomy, SearchPage
from kinoindex.services import sync_service
from kinoindex.services.catalog_store import catalog_taxonomy, ensure_schema, find_by_kp_id, list_catalog
from kinoindex.services.enrichment_service import EnrichmentCache
from kinoindex.services.fuzzy_scanner import FuzzyScanner
from kinoindex.services.resolution_service import LinkOptions, LinkResolution, LinkResolver
from kinoindex.services.search_service import SearchService, normalize_paging, record_to_item
from kinoindex.services.text_match import SearchFilters
from kinoindex.upstream import get_provider
from kinoindex.upstream.base import BaseProvider, CatalogRecord, LinkIdentifiers
from kinoindex.upstream.observability import UpstreamMonitor
from kinoindex.utils.cache import TTLCache

logger = logging.getLogger("kinoindex.services.core")


class AggregationCore:
    """Wire the search, scanner, enrichment and resolution services together.

    Every cache lives here so that one process shares a single view of
    upstream state; tests build their own instance with fake providers.
    """

    def __init__(
        self,
        *,
        search_providers: Sequence[BaseProvider] | None = None,
        scan_provider: BaseProvider | None = None,
        enrichment_provider: BaseProvider | None = None,
        resolution_providers: Iterable[BaseProvider] | None = None,
        monitor: UpstreamMonitor | None = None,
    ) -> None:
        self.monitor = monitor or UpstreamMonitor()
        if search_providers is None:
            search_providers = [get_provider(name) for name in settings.search_providers]
        self.enrichment = EnrichmentCache(
            enrichment_provider or get_provider(settings.enrichment_provider),
            monitor=self.monitor,
        )
        self.scanner = FuzzyScanner(
            scan_provider or get_provider(settings.fuzzy_scan_provider),
            monitor=self.monitor,
        )
        self.search = SearchService(
            providers=search_providers,
            scanner=self.scanner,
            enrichment=self.enrichment,
            monitor=self.monitor,
        )
        self._resolvers: dict[str, LinkResolver] = {}
        for provider in resolution_providers or ():
            self._resolvers[provider.name] = self._build_resolver(provider)

    def _build_resolver(self, provider: BaseProvider) -> LinkResolver:
        return LinkResolver(provider, monitor=self.monitor)

    def resolver(self, provider_name: str | None = None) -> LinkResolver:
        """Return the resolver for ``provider_name``, creating it on first use."""
        name = (provider_name or settings.resolution_provider).strip().lower()
        if name not in self._resolvers:
            self._resolvers[name] = self._build_resolver(get_provider(name))
        return self._resolvers[name]

    async def sync_catalog(
        self,
        session: AsyncSession,
        provider: BaseProvider | str,
        *,
        mode: SyncMode | str = SyncMode.RECENT,
        page_size: int = 100,
        max_pages: int = 1,
        reset: bool = False,
    ) -> sync_service.SyncSummary:
        summary = await sync_service.sync_catalog(
            session,
            provider,
            mode=mode,
            page_size=page_size,
            max_pages=max_pages,
            reset=reset,
            monitor=self.monitor,
        )
        if summary.upserted:
            # Stored rows changed, so cached search pages may be stale.
            self.search.cache.clear()
        return summary

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
        return await self.search.search_catalog(session, query, filters, page, limit, enrich=enrich)

    async def browse_catalog(
        self,
        session: AsyncSession,
        filters: SearchFilters | None = None,
        page: int = 1,
        limit: int | None = None,
        *,
        provider: str | None = None,
    ) -> CatalogBrowsePage:
        """List stored entries by facets; requested genres must overlap, not all match."""
        page, limit = normalize_paging(page, limit)
        await ensure_schema(session)
        records, total = await list_catalog(
            session, provider=provider, filters=filters, offset=(page - 1) * limit, limit=limit
        )
        return CatalogBrowsePage(
            items=[record_to_item(record) for record in records],
            page=page,
            limit=limit,
            total=total,
            last_page=max(1, math.ceil(total / limit)),
        )

    async def lookup_kp_id(
        self, session: AsyncSession, kp_id: int, *, provider: str | None = None
    ) -> CatalogItemOut | None:
        await ensure_schema(session)
        record = await find_by_kp_id(session, kp_id, provider=provider)
        return record_to_item(record) if record is not None else None

    async def taxonomy(self, session: AsyncSession, *, provider: str | None = None) -> CatalogTaxonomy:
        """Facet values available in the stored catalog."""
        await ensure_schema(session)
        return CatalogTaxonomy(**await catalog_taxonomy(session, provider))

    async def resolve_link(
        self,
        identifiers: LinkIdentifiers,
        options: LinkOptions | None = None,
        *,
        provider: str | None = None,
    ) -> LinkResolution:
        return await self.resolver(provider).resolve_link(identifiers, options)

    async def enrich(
        self, items: Sequence[CatalogRecord], needed_fields: Iterable[str] | None = None
    ) -> list[CatalogRecord]:
        return await self.enrichment.enrich(items, needed_fields)

    async def stats(self) -> dict[str, Any]:
        """Cache and upstream telemetry for diagnostics."""
        resolution = {
            name: {"success": resolver.success_cache.stats(), "failure": resolver.failure_cache.stats()}
            for name, resolver in self._resolvers.items()
        }
        return {
            "caches": {
                "search": self.search.cache.stats(),
                "fuzzy_scan": self.scanner.cache.stats(),
                "enrichment": self.enrichment.cache.stats(),
                "resolution": resolution,
            },
            "upstream": await self.monitor.snapshot(),
        }


@lru_cache
def get_core() -> AggregationCore:
    """Return the process-wide aggregation core."""
    return AggregationCore()
