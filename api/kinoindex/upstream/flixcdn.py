from __future__ import annotations

import logging
from typing import Any

from kinoindex.core.config import settings
from kinoindex.models.catalog import VideoKind
from kinoindex.upstream.base import BaseProvider, CatalogRecord, ListingPage, LinkIdentifiers, LookupAttempt
from kinoindex.upstream.http import UpstreamRejected, UpstreamUnavailable, fetch_json
from kinoindex.upstream.payload import (
    is_http_url,
    parse_int,
    parse_kind,
    parse_positive_int,
    parse_str,
    parse_year,
    split_list,
)
from kinoindex.utils.datetime import parse_timestamp

logger = logging.getLogger("kinoindex.upstream.flixcdn")


class FlixcdnProvider(BaseProvider):
    """Offset-paginated FlixCDN catalog with failover across API mirrors."""

    name = "flixcdn"
    catalog_name = "flixcdn"
    initial_cursor = 0

    def __init__(self, token: str | None = None, api_bases: list[str] | None = None) -> None:
        self.token = token or settings.flixcdn_token
        self.api_bases = [base.rstrip("/") for base in (api_bases or settings.flixcdn_api_bases)]

    def _token(self) -> str:
        if not self.token:
            raise UpstreamRejected("FLIXCDN_TOKEN is not set", provider=self.name)
        return self.token

    async def _get(self, path: str, params: dict[str, Any]) -> Any:
        token = self._token()
        last_exc: UpstreamUnavailable | None = None
        for base in self.api_bases:
            try:
                return await fetch_json(f"{base}{path}", provider=self.name, params={"token": token, **params})
            except UpstreamUnavailable as exc:
                last_exc = exc
                logger.warning("FlixCDN mirror %s unavailable, trying next: %s", base, exc.message)
        if last_exc is None:
            raise UpstreamUnavailable("No FlixCDN API bases configured", provider=self.name)
        raise last_exc

    def _record(self, item: Any) -> CatalogRecord | None:
        if not isinstance(item, dict):
            return None
        video_id = parse_int(item.get("id"))
        if video_id is None:
            return None
        kind = parse_kind(item.get("type"))
        return CatalogRecord(
            provider=self.catalog_name,
            video_id=video_id,
            kind=kind,
            kp_id=parse_positive_int(item.get("kinopoisk_id")),
            imdb_id=parse_str(item.get("imdb_id")),
            title=parse_str(item.get("title_rus")),
            original_title=parse_str(item.get("title_orig")),
            year=parse_year(item.get("year")),
            quality=parse_str(item.get("quality")),
            poster_url=parse_str(item.get("poster")),
            iframe_url=parse_str(item.get("iframe_url")),
            created_at=parse_timestamp(item.get("created_at")),
            genres=split_list(item.get("genres")),
            countries=split_list(item.get("countries")),
            episodes_count=parse_positive_int(item.get("episode")) if kind is VideoKind.SERIAL else None,
        )

    def _page(self, payload: Any, offset: int, limit: int) -> ListingPage:
        data = payload if isinstance(payload, dict) else {}
        raw_items = data.get("result")
        raw_items = raw_items if isinstance(raw_items, list) else []
        records = [record for record in (self._record(item) for item in raw_items) if record]
        nav = data.get("next")
        next_offset = parse_int(nav.get("offset")) if isinstance(nav, dict) else None
        if next_offset is None and len(raw_items) >= limit:
            next_offset = offset + limit
        return ListingPage(items=records, next_cursor=next_offset, fetched=len(raw_items))

    async def fetch_updates(self, cursor: int, limit: int) -> ListingPage:
        payload = await self._get("/api/updates", {"offset": cursor, "limit": limit})
        return self._page(payload, cursor, limit)

    async def fetch_listing(
        self, cursor: int, limit: int, *, kind: VideoKind | None = None, year: int | None = None
    ) -> ListingPage:
        payload = await self._get("/api/search", {"offset": cursor, "limit": limit})
        return self._page(payload, cursor, limit)

    async def search(self, query: str, limit: int = 20) -> list[CatalogRecord]:
        payload = await self._get("/api/search", {"title": query, "limit": limit})
        return self._page(payload, 0, limit).items

    def resolution_attempts(self, identifiers: LinkIdentifiers) -> list[LookupAttempt]:
        attempts: list[LookupAttempt] = []
        if identifiers.kp_id is not None:
            attempts.append(LookupAttempt("kinopoisk_id", (("kinopoisk_id", str(identifiers.kp_id)),)))
        if identifiers.imdb_id:
            attempts.append(LookupAttempt("imdb_id", (("imdb_id", identifiers.imdb_id),)))
        if identifiers.title:
            attempts.append(LookupAttempt("title", (("title", identifiers.title),)))
        return attempts

    async def lookup_link(self, attempt: LookupAttempt) -> str | None:
        payload = await self._get("/api/search", {**dict(attempt.params), "limit": 1})
        data = payload if isinstance(payload, dict) else {}
        results = data.get("result") if isinstance(data.get("result"), list) else []
        for item in results:
            if isinstance(item, dict) and is_http_url(item.get("iframe_url")):
                return item["iframe_url"].strip()
        return None
