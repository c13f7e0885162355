from __future__ import annotations

import logging
from typing import Any

from kinoindex.core.config import settings
from kinoindex.models.catalog import VideoKind
from kinoindex.upstream.base import BaseProvider, CatalogRecord, ListingPage, LinkIdentifiers, LookupAttempt
from kinoindex.upstream.http import UpstreamRejected, UpstreamUnavailable, fetch_json
from kinoindex.upstream.payload import (
    find_first_leaf,
    is_http_url,
    parse_int,
    parse_positive_int,
    parse_str,
    parse_year,
    split_list,
)
from kinoindex.utils.datetime import parse_timestamp

logger = logging.getLogger("kinoindex.upstream.videoseed")

IFRAME_KEYS = ("iframe", "iframe_url")


class VideoseedProvider(BaseProvider):
    """Page-numbered Videoseed feed; movies and serials are crawled as separate feeds."""

    catalog_name = "videoseed"
    initial_cursor = 1

    def __init__(self, kind: VideoKind | None = None, token: str | None = None, api_base: str | None = None) -> None:
        self.kind = kind
        self.name = f"videoseed-{kind.value}" if kind else "videoseed"
        self.token = token or settings.videoseed_token
        self.api_base = api_base or settings.videoseed_api_base

    def _token(self) -> str:
        if not self.token:
            raise UpstreamRejected("VIDEOSEED_TOKEN is not set", provider=self.name)
        return self.token

    async def _get(self, params: dict[str, Any]) -> Any:
        return await fetch_json(self.api_base, provider=self.name, params={"token": self._token(), **params})

    def _record(self, item: Any, kind: VideoKind) -> CatalogRecord | None:
        if not isinstance(item, dict):
            return None
        video_id = parse_int(item.get("id"))
        if video_id is None:
            return None
        return CatalogRecord(
            provider=self.catalog_name,
            video_id=video_id,
            kind=kind,
            kp_id=parse_positive_int(item.get("id_kp")),
            imdb_id=parse_str(item.get("id_imdb")),
            tmdb_id=parse_str(item.get("id_tmdb")),
            title=parse_str(item.get("name")),
            original_title=parse_str(item.get("original_name")),
            year=parse_year(item.get("year")),
            quality=parse_str(item.get("quality")),
            poster_url=parse_str(item.get("poster")),
            iframe_url=parse_str(item.get("iframe")),
            created_at=parse_timestamp(item.get("date")),
            genres=split_list(item.get("genre")),
            countries=split_list(item.get("country")),
        )

    def _data(self, payload: Any) -> list[Any]:
        if not isinstance(payload, dict):
            return []
        status = payload.get("status")
        if isinstance(status, str) and status.lower() != "success":
            raise UpstreamUnavailable(f"Videoseed reported status {status!r}", provider=self.name)
        data = payload.get("data")
        return data if isinstance(data, list) else []

    def _page(self, payload: Any, page: int, limit: int, kind: VideoKind) -> ListingPage:
        raw_items = self._data(payload)
        records = [record for record in (self._record(item, kind) for item in raw_items) if record]
        next_page = parse_positive_int(payload.get("next_page")) if isinstance(payload, dict) else None
        if next_page is None and len(raw_items) >= limit:
            next_page = page + 1
        total = parse_int(payload.get("total")) if isinstance(payload, dict) else None
        return ListingPage(items=records, next_cursor=next_page, fetched=len(raw_items), total=total)

    async def _list(self, page: int, limit: int, *, sort_by: str, kind: VideoKind | None) -> ListingPage:
        feed_kind = kind or self.kind or VideoKind.MOVIE
        payload = await self._get({"list": feed_kind.value, "from": page, "items": limit, "sort_by": sort_by})
        return self._page(payload, page, limit, feed_kind)

    async def fetch_updates(self, cursor: int, limit: int) -> ListingPage:
        return await self._list(cursor, limit, sort_by="post_date desc", kind=None)

    async def fetch_listing(
        self, cursor: int, limit: int, *, kind: VideoKind | None = None, year: int | None = None
    ) -> ListingPage:
        return await self._list(cursor, limit, sort_by="post_date asc", kind=kind)

    async def search(self, query: str, limit: int = 20) -> list[CatalogRecord]:
        kinds = [self.kind] if self.kind else [VideoKind.MOVIE, VideoKind.SERIAL]
        records: list[CatalogRecord] = []
        for kind in kinds:
            payload = await self._get({"list": kind.value, "q": query, "items": limit})
            records.extend(self._page(payload, 1, limit, kind).items)
        return records

    def resolution_attempts(self, identifiers: LinkIdentifiers) -> list[LookupAttempt]:
        attempts: list[LookupAttempt] = []
        if identifiers.kp_id is not None and identifiers.kp_id > 0:
            kp = str(identifiers.kp_id)
            attempts.append(LookupAttempt("kp_movie", (("kp", kp),), VideoKind.MOVIE))
            attempts.append(LookupAttempt("kp_serial", (("kp", kp),), VideoKind.SERIAL))
        if identifiers.imdb_id:
            attempts.append(LookupAttempt("imdb_movie", (("imdb", identifiers.imdb_id),), VideoKind.MOVIE))
            attempts.append(LookupAttempt("imdb_serial", (("imdb", identifiers.imdb_id),), VideoKind.SERIAL))
        if identifiers.title:
            attempts.append(LookupAttempt("title_movie", (("q", identifiers.title),), VideoKind.MOVIE))
        return attempts

    async def lookup_link(self, attempt: LookupAttempt) -> str | None:
        kind = attempt.kind or VideoKind.MOVIE
        params: dict[str, Any] = {"items": 1, **dict(attempt.params)}
        if "q" in params:
            params["list"] = kind.value
        else:
            params["item"] = kind.value
        payload = await self._get(params)
        if isinstance(payload, dict) and isinstance(payload.get("data"), list) and payload["data"]:
            payload = payload["data"][0]
        link = find_first_leaf(payload, is_http_url, keys=IFRAME_KEYS, max_depth=3)
        return link.strip() if isinstance(link, str) else None
