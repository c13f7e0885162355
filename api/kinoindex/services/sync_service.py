"""Incremental, resumable catalog sync from one upstream feed into the store.

Invariants:
- ``recent`` mode always starts at the provider's initial cursor and never reads
  or writes the persisted cursor.
- ``full`` mode resumes from the persisted cursor; each page's upsert and the
  cursor advance commit in one transaction, so the cursor only moves past pages
  that were fetched and stored.
- A page is exhausted when it is empty, shorter than ``page_size``, or has no
  next cursor. Exhausting a full crawl resets the cursor (or parks it, see
  ``settings.sync_full_restart_on_exhaustion``).
- Concurrent invocations for the same (provider, mode) are not guarded against.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from functools import partial
from time import monotonic
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from kinoindex.core.config import settings
from kinoindex.core.errors import InvalidRequestError
from kinoindex.models.catalog import SyncMode
from kinoindex.services.catalog_store import ensure_cursor, ensure_schema, set_cursor, upsert_records
from kinoindex.upstream import get_provider
from kinoindex.upstream.base import BaseProvider, ListingPage
from kinoindex.upstream.http import UpstreamError
from kinoindex.upstream.observability import UpstreamMonitor, call_upstream

logger = logging.getLogger("kinoindex.services.sync")


@dataclass(slots=True)
class SyncSummary:
    """Outcome of one sync invocation."""
    provider: str
    mode: str
    scanned: int = 0
    upserted: int = 0
    pages: int = 0
    next_cursor: int | None = None
    done: bool = False
    duration_ms: float = 0.0

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


class SyncAbortedError(RuntimeError):
    """Raised when a page fails to fetch or store; the persisted cursor is untouched."""

    def __init__(self, message: str, *, summary: SyncSummary) -> None:
        super().__init__(message)
        self.message = message
        self.summary = summary


def _clamp(value: int, upper: int) -> int:
    return min(upper, max(1, int(value)))


def _parse_mode(mode: SyncMode | str) -> SyncMode:
    try:
        return SyncMode(mode)
    except ValueError as exc:
        raise InvalidRequestError(f"Unsupported sync mode {mode!r}", field="mode") from exc


def _is_exhausted(page: ListingPage, page_size: int) -> bool:
    return page.fetched == 0 or page.fetched < page_size or page.next_cursor is None


async def sync_catalog(
    session: AsyncSession,
    provider: BaseProvider | str,
    *,
    mode: SyncMode | str = SyncMode.RECENT,
    page_size: int = 100,
    max_pages: int = 1,
    reset: bool = False,
    monitor: UpstreamMonitor | None = None,
) -> SyncSummary:
    """Crawl up to ``max_pages`` pages of ``provider`` and upsert them into the catalog."""
    feed = get_provider(provider) if isinstance(provider, str) else provider
    sync_mode = _parse_mode(mode)
    page_size = _clamp(page_size, settings.sync_max_page_size)
    max_pages = _clamp(max_pages, settings.sync_max_pages)
    full = sync_mode is SyncMode.FULL
    overwrite = full and reset

    await ensure_schema(session)
    summary = SyncSummary(provider=feed.name, mode=sync_mode.value)
    start = monotonic()

    position = feed.initial_cursor
    cursor_row = None
    if full:
        cursor_row = await ensure_cursor(session, feed.name, sync_mode.value, feed.initial_cursor)
        await session.commit()
        # A reset only lands together with the first stored page.
        if not reset:
            if cursor_row.exhausted_at is not None:
                summary.done = True
                logger.info("Full crawl for %s already exhausted; pass reset to start over", feed.name)
                return summary
            position = max(cursor_row.position, feed.initial_cursor)

    fetch = feed.fetch_listing if full else feed.fetch_updates
    operation = "listing" if full else "updates"
    for _ in range(max_pages):
        try:
            page = await call_upstream(
                monitor,
                feed.name,
                operation,
                partial(fetch, position, page_size),
                context={"cursor": position, "limit": page_size},
            )
        except UpstreamError as exc:
            await session.rollback()
            summary.next_cursor = position
            summary.duration_ms = round((monotonic() - start) * 1000, 2)
            logger.warning(
                "Catalog sync aborted while fetching",
                extra={"provider": feed.name, "mode": sync_mode.value, "cursor": position, "error": exc.message},
            )
            raise SyncAbortedError(f"{feed.name} page at {position} failed: {exc.message}", summary=summary) from exc

        exhausted = _is_exhausted(page, page_size)
        try:
            written = await upsert_records(session, page.items, overwrite=overwrite)
            if cursor_row is not None:
                if not exhausted:
                    set_cursor(cursor_row, page.next_cursor)  # type: ignore[arg-type]
                elif settings.sync_full_restart_on_exhaustion:
                    set_cursor(cursor_row, feed.initial_cursor)
                else:
                    set_cursor(cursor_row, position, exhausted=True)
            await session.commit()
        except SQLAlchemyError as exc:
            await session.rollback()
            summary.next_cursor = position
            summary.duration_ms = round((monotonic() - start) * 1000, 2)
            logger.exception("Catalog sync aborted while storing page %s for %s", position, feed.name)
            raise SyncAbortedError(f"{feed.name} page at {position} could not be stored", summary=summary) from exc

        summary.pages += 1
        summary.scanned += page.fetched
        summary.upserted += written
        if exhausted:
            summary.done = True
            summary.next_cursor = None
            break
        position = page.next_cursor  # type: ignore[assignment]
        summary.next_cursor = position

    summary.duration_ms = round((monotonic() - start) * 1000, 2)
    logger.info(
        "Catalog sync finished",
        extra={
            "provider": feed.name,
            "mode": sync_mode.value,
            "scanned": summary.scanned,
            "upserted": summary.upserted,
            "pages": summary.pages,
            "next_cursor": summary.next_cursor,
            "done": summary.done,
        },
    )
    return summary
