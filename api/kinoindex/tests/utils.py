"""Shared fakes for catalog tests."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any

from kinoindex.models.catalog import VideoKind
from kinoindex.upstream.base import (
    BaseProvider,
    CatalogRecord,
    LinkIdentifiers,
    ListingPage,
    LookupAttempt,
    VideoDetails,
)


def make_record(
    video_id: int,
    title: str | None = None,
    *,
    provider: str = "fake",
    kind: VideoKind = VideoKind.MOVIE,
    **values: Any,
) -> CatalogRecord:
    for name in ("genres", "countries"):
        if name in values:
            values[name] = frozenset(values[name])
    return CatalogRecord(provider=provider, video_id=video_id, kind=kind, title=title, **values)


def make_page(
    records: list[CatalogRecord], next_cursor: int | None, *, last_page: int | None = None
) -> ListingPage:
    return ListingPage(items=records, next_cursor=next_cursor, fetched=len(records), last_page=last_page)


class FakeProvider(BaseProvider):
    """In-memory feed; a page mapped to an exception raises it when fetched."""

    def __init__(
        self,
        name: str = "fake",
        *,
        initial_cursor: int = 1,
        pages: dict[int, ListingPage | Exception] | None = None,
        search_results: list[CatalogRecord] | Exception | None = None,
        keyword_results: list[CatalogRecord] | Exception | None = None,
        details: dict[int, VideoDetails | Exception | None] | None = None,
    ) -> None:
        self.name = name
        self.catalog_name = name
        self.initial_cursor = initial_cursor
        self.pages = pages or {}
        self.search_results = search_results or []
        self.keyword_results = keyword_results or []
        self.details = details or {}
        self.calls: list[tuple[Any, ...]] = []

    def _page(self, cursor: int) -> ListingPage:
        page = self.pages.get(cursor, ListingPage(items=[], next_cursor=None))
        if isinstance(page, Exception):
            raise page
        return page

    async def fetch_updates(self, cursor: int, limit: int) -> ListingPage:
        self.calls.append(("updates", cursor, limit))
        return self._page(cursor)

    async def fetch_listing(
        self, cursor: int, limit: int, *, kind: VideoKind | None = None, year: int | None = None
    ) -> ListingPage:
        self.calls.append(("listing", cursor, limit))
        return self._page(cursor)

    async def search(self, query: str, limit: int = 20) -> list[CatalogRecord]:
        self.calls.append(("search", query))
        if isinstance(self.search_results, Exception):
            raise self.search_results
        return list(self.search_results)

    async def search_by_keyword(self, keyword: str, limit: int = 20) -> list[CatalogRecord]:
        self.calls.append(("keyword", keyword))
        if isinstance(self.keyword_results, Exception):
            raise self.keyword_results
        return list(self.keyword_results)

    async def fetch_details(self, kp_id: int, *, kind: VideoKind | None = None) -> VideoDetails | None:
        self.calls.append(("details", kp_id, kind))
        await asyncio.sleep(0)
        value = self.details.get(kp_id)
        if isinstance(value, Exception):
            raise value
        return value


@dataclass
class ScriptedAttempt:
    """Outcome of one lookup attempt: a URL, None (not found) or an exception."""
    result: str | Exception | None
    delay: float = 0.0


@dataclass
class ScriptedResolver(BaseProvider):
    """Resolution-only provider that plays back scripted attempt outcomes."""
    script: dict[str, ScriptedAttempt]
    name: str = "scripted"
    catalog_name: str = "scripted"
    started: list[str] = field(default_factory=list)
    finished: list[str] = field(default_factory=list)

    def resolution_attempts(self, identifiers: LinkIdentifiers) -> list[LookupAttempt]:
        return [LookupAttempt(name) for name in self.script]

    async def lookup_link(self, attempt: LookupAttempt) -> str | None:
        self.started.append(attempt.name)
        step = self.script[attempt.name]
        await asyncio.sleep(step.delay)
        self.finished.append(attempt.name)
        if isinstance(step.result, Exception):
            raise step.result
        return step.result
