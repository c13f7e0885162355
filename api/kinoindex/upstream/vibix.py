from __future__ import annotations

import logging
from typing import Any
from urllib.parse import quote

from kinoindex.core.config import settings
from kinoindex.models.catalog import VideoKind
from kinoindex.upstream.base import (
    BaseProvider,
    CatalogRecord,
    ListingPage,
    LinkIdentifiers,
    LookupAttempt,
    VideoDetails,
)
from kinoindex.upstream.http import UpstreamNotFound, UpstreamRejected, fetch_json
from kinoindex.upstream.payload import (
    find_first_leaf,
    is_http_url,
    parse_int,
    parse_kind,
    parse_positive_int,
    parse_rating,
    parse_str,
    parse_year,
    split_list,
)
from kinoindex.utils.cache import TTLCache
from kinoindex.utils.datetime import parse_timestamp

logger = logging.getLogger("kinoindex.upstream.vibix")

TAGS_TTL_SECONDS = 60 * 60


class VibixProvider(BaseProvider):
    """Vibix publisher API: paged listing, title search, tag taxonomy and per-id details."""

    name = "vibix"
    catalog_name = "vibix"
    initial_cursor = 1

    def __init__(self, api_key: str | None = None, base_url: str | None = None) -> None:
        self.api_key = api_key or settings.vibix_api_key
        self.base_url = (base_url or settings.vibix_base_url).rstrip("/")
        self._tags: TTLCache[list[dict[str, Any]]] = TTLCache(TAGS_TTL_SECONDS)

    def _headers(self) -> dict[str, str]:
        if not self.api_key:
            raise UpstreamRejected("VIBIX_API_KEY is not set", provider=self.name)
        return {"Authorization": f"Bearer {self.api_key}"}

    async def _get(
        self, path: str, params: list[tuple[str, Any]] | None = None, *, method: str = "GET"
    ) -> Any:
        return await fetch_json(
            f"{self.base_url}{path}",
            provider=self.name,
            headers=self._headers(),
            params=params,
            method=method,
        )

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
            kp_id=parse_positive_int(item.get("kp_id") or item.get("kinopoisk_id")),
            imdb_id=parse_str(item.get("imdb_id")),
            title=parse_str(item.get("name_rus")) or parse_str(item.get("name")),
            original_title=parse_str(item.get("name_eng")) or parse_str(item.get("name_original")),
            year=parse_year(item.get("year")),
            quality=parse_str(item.get("quality")),
            poster_url=parse_str(item.get("poster_url")),
            iframe_url=parse_str(item.get("iframe_url")),
            created_at=parse_timestamp(item.get("uploaded_at")),
            genres=split_list(item.get("genre")),
            countries=split_list(item.get("country")),
            episodes_count=parse_positive_int(item.get("episodes_count")) if kind is VideoKind.SERIAL else None,
            kp_rating=parse_rating(item.get("kp_rating")),
            imdb_rating=parse_rating(item.get("imdb_rating")),
        )

    def _page(self, payload: Any, page: int) -> ListingPage:
        data = payload if isinstance(payload, dict) else {}
        raw_items = data.get("data") if isinstance(data.get("data"), list) else []
        records = [record for record in (self._record(item) for item in raw_items) if record]
        meta = data.get("meta") if isinstance(data.get("meta"), dict) else {}
        last_page = parse_positive_int(meta.get("last_page"))
        total = parse_int(meta.get("total"))
        if last_page is not None:
            next_page = page + 1 if page < last_page else None
        else:
            per_page = parse_positive_int(meta.get("per_page"))
            next_page = page + 1 if per_page and len(raw_items) >= per_page else None
        return ListingPage(
            items=records, next_cursor=next_page, fetched=len(raw_items), last_page=last_page, total=total
        )

    async def _links(
        self,
        page: int,
        limit: int,
        *,
        kind: VideoKind | None = None,
        year: int | None = None,
        tag_id: int | None = None,
    ) -> ListingPage:
        params: list[tuple[str, Any]] = [("page", page), ("limit", limit)]
        if kind:
            params.append(("type", kind.value))
        if year:
            params.append(("year[]", year))
        if tag_id is not None:
            params.append(("tag[]", tag_id))
        payload = await self._get("/api/v1/publisher/videos/links", params)
        return self._page(payload, page)

    async def fetch_updates(self, cursor: int, limit: int) -> ListingPage:
        return await self._links(cursor, limit)

    async def fetch_listing(
        self, cursor: int, limit: int, *, kind: VideoKind | None = None, year: int | None = None
    ) -> ListingPage:
        return await self._links(cursor, limit, kind=kind, year=year)

    async def search(self, query: str, limit: int = 20) -> list[CatalogRecord]:
        payload = await self._get(
            "/api/v1/publisher/videos/search", [("name", query), ("limit", limit)], method="POST"
        )
        return self._page(payload, 1).items

    async def _tag_list(self) -> list[dict[str, Any]]:
        cached = self._tags.get("tags")
        if cached is not None:
            return cached
        payload = await self._get("/api/v1/publisher/videos/tags")
        data = payload.get("data") if isinstance(payload, dict) else None
        tags = [tag for tag in data if isinstance(tag, dict)] if isinstance(data, list) else []
        self._tags.set("tags", tags)
        return tags

    async def resolve_tag_id(self, keyword: str) -> int | None:
        """Return the tag whose name or code matches ``keyword``, exact matches first."""
        needle = keyword.strip().casefold()
        if len(needle) < 3:
            return None
        partial: int | None = None
        for tag in await self._tag_list():
            tag_id = parse_int(tag.get("id"))
            if tag_id is None:
                continue
            labels = [
                label.casefold()
                for label in (parse_str(tag.get("name")), parse_str(tag.get("name_eng")), parse_str(tag.get("code")))
                if label
            ]
            if needle in labels:
                return tag_id
            if partial is None and any(needle in label for label in labels):
                partial = tag_id
        return partial

    async def search_by_keyword(self, keyword: str, limit: int = 20) -> list[CatalogRecord]:
        tag_id = await self.resolve_tag_id(keyword)
        if tag_id is None:
            return []
        page = await self._links(1, limit, tag_id=tag_id)
        return page.items

    async def fetch_details(self, kp_id: int, *, kind: VideoKind | None = None) -> VideoDetails | None:
        try:
            payload = await self._get(f"/api/v1/publisher/videos/kp/{kp_id}")
        except UpstreamNotFound:
            return None
        if not isinstance(payload, dict):
            return None
        details = VideoDetails(
            kp_id=kp_id,
            genres=split_list(payload.get("genre")),
            countries=split_list(payload.get("country")),
            kp_rating=parse_rating(payload.get("kp_rating")),
            imdb_rating=parse_rating(payload.get("imdb_rating")),
        )
        if parse_kind(payload.get("type"), default=kind or VideoKind.MOVIE) is VideoKind.SERIAL:
            details.episodes_count = await self.fetch_episode_count(kp_id)
        return details

    async def fetch_episode_count(self, kp_id: int) -> int | None:
        """Sum episodes across all seasons of a serial."""
        try:
            payload = await self._get(f"/api/v1/serials/kp/{kp_id}")
        except UpstreamNotFound:
            return None
        seasons = payload.get("seasons") if isinstance(payload, dict) else None
        if not isinstance(seasons, list):
            return None
        total = 0
        for season in seasons:
            series = season.get("series") if isinstance(season, dict) else None
            if isinstance(series, list):
                total += len(series)
        return total or None

    def resolution_attempts(self, identifiers: LinkIdentifiers) -> list[LookupAttempt]:
        attempts: list[LookupAttempt] = []
        if identifiers.kp_id is not None:
            attempts.append(LookupAttempt("kp", (("path", f"/api/v1/publisher/videos/kp/{identifiers.kp_id}"),)))
        if identifiers.imdb_id:
            path = f"/api/v1/publisher/videos/imdb/{quote(identifiers.imdb_id, safe='')}"
            attempts.append(LookupAttempt("imdb", (("path", path),)))
        return attempts

    async def lookup_link(self, attempt: LookupAttempt) -> str | None:
        path = dict(attempt.params)["path"]
        try:
            payload = await self._get(path)
        except UpstreamNotFound:
            return None
        link = find_first_leaf(payload, is_http_url, keys=("iframe_url",), max_depth=2)
        return link.strip() if isinstance(link, str) else None
