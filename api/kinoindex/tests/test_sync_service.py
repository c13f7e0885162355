from __future__ import annotations

import pytest
from sqlalchemy import func, select

from kinoindex.core.config import settings
from kinoindex.core.errors import InvalidRequestError
from kinoindex.models.catalog import CatalogVideo, SyncCursor, SyncMode
from kinoindex.services.catalog_store import upsert_records
from kinoindex.services.sync_service import SyncAbortedError, sync_catalog
from kinoindex.tests.utils import FakeProvider, make_page, make_record
from kinoindex.upstream.http import UpstreamUnavailable


async def _row_count(session) -> int:
    return await session.scalar(select(func.count()).select_from(CatalogVideo))


async def _cursor(session, provider: str = "fake", mode: str = "full") -> SyncCursor | None:
    return await session.get(SyncCursor, (provider, mode), populate_existing=True)


def _three_page_feed() -> FakeProvider:
    return FakeProvider(
        pages={
            1: make_page([make_record(1, "A"), make_record(2, "B")], 2),
            2: make_page([make_record(3, "C"), make_record(4, "D")], 3),
            3: make_page([make_record(5, "E")], None),
        }
    )


@pytest.mark.asyncio
async def test_full_sync_resumes_from_persisted_cursor(session) -> None:
    feed = _three_page_feed()

    first = await sync_catalog(session, feed, mode=SyncMode.FULL, page_size=2, max_pages=1)
    assert first.pages == 1
    assert first.scanned == 2
    assert first.next_cursor == 2
    assert first.done is False
    assert (await _cursor(session)).position == 2

    second = await sync_catalog(session, feed, mode="full", page_size=2, max_pages=10)
    assert [call[1] for call in feed.calls] == [1, 2, 3]
    assert second.pages == 2
    assert second.upserted == 3
    assert second.done is True
    assert await _row_count(session) == 5


@pytest.mark.asyncio
async def test_full_sync_restarts_after_short_page(session) -> None:
    feed = _three_page_feed()

    summary = await sync_catalog(session, feed, mode=SyncMode.FULL, page_size=2, max_pages=10)

    assert summary.done is True
    assert summary.next_cursor is None
    cursor = await _cursor(session)
    assert cursor.position == feed.initial_cursor
    assert cursor.exhausted_at is None


@pytest.mark.asyncio
async def test_full_sync_parks_cursor_when_restart_disabled(session, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(settings, "sync_full_restart_on_exhaustion", False)
    feed = _three_page_feed()

    await sync_catalog(session, feed, mode=SyncMode.FULL, page_size=2, max_pages=10)
    cursor = await _cursor(session)
    assert cursor.position == 3
    assert cursor.exhausted_at is not None

    feed.calls.clear()
    again = await sync_catalog(session, feed, mode=SyncMode.FULL, page_size=2, max_pages=10)
    assert again.done is True
    assert again.pages == 0
    assert feed.calls == []

    restarted = await sync_catalog(session, feed, mode=SyncMode.FULL, page_size=2, max_pages=1, reset=True)
    assert feed.calls == [("listing", 1, 2)]
    assert restarted.next_cursor == 2


@pytest.mark.asyncio
async def test_upstream_failure_aborts_without_moving_cursor(session) -> None:
    feed = FakeProvider(
        pages={
            1: make_page([make_record(1, "A"), make_record(2, "B")], 2),
            2: UpstreamUnavailable("fake responded 503", provider="fake", status_code=503),
        }
    )

    with pytest.raises(SyncAbortedError) as excinfo:
        await sync_catalog(session, feed, mode=SyncMode.FULL, page_size=2, max_pages=5)

    assert excinfo.value.summary.pages == 1
    assert excinfo.value.summary.next_cursor == 2
    assert (await _cursor(session)).position == 2
    assert await _row_count(session) == 2

    feed.pages[2] = make_page([make_record(3, "C")], None)
    feed.calls.clear()
    resumed = await sync_catalog(session, feed, mode=SyncMode.FULL, page_size=2, max_pages=5)
    assert feed.calls == [("listing", 2, 2)]
    assert resumed.done is True
    assert await _row_count(session) == 3


@pytest.mark.asyncio
async def test_recent_sync_is_idempotent_and_ignores_cursor(session) -> None:
    feed = FakeProvider(pages={1: make_page([make_record(1, "A", year=2001), make_record(2, "B")], None)})

    first = await sync_catalog(session, feed, page_size=10)
    second = await sync_catalog(session, feed, page_size=10)

    assert first.upserted == second.upserted == 2
    assert [call[:2] for call in feed.calls] == [("updates", 1), ("updates", 1)]
    assert await _row_count(session) == 2
    assert await _cursor(session, mode="recent") is None
    row = await session.get(CatalogVideo, ("fake", 1), populate_existing=True)
    assert row.year == 2001


@pytest.mark.asyncio
async def test_incremental_sync_merges_while_reset_overwrites(session) -> None:
    await upsert_records(session, [make_record(1, "Old", year=1999, genres={"drama"})])
    await session.commit()

    feed = FakeProvider(pages={1: make_page([make_record(1, "New", genres={"comedy"})], None)})
    await sync_catalog(session, feed, page_size=10)
    row = await session.get(CatalogVideo, ("fake", 1), populate_existing=True)
    assert row.title == "Old"
    assert row.year == 1999
    assert sorted(row.genres) == ["comedy", "drama"]

    await sync_catalog(session, feed, mode=SyncMode.FULL, page_size=10, reset=True)
    row = await session.get(CatalogVideo, ("fake", 1), populate_existing=True)
    assert row.title == "New"
    assert row.year is None
    assert row.genres == ["comedy"]


@pytest.mark.asyncio
async def test_unknown_mode_is_rejected(session) -> None:
    with pytest.raises(InvalidRequestError):
        await sync_catalog(session, FakeProvider(), mode="sideways")


@pytest.mark.asyncio
async def test_repeated_ids_within_one_page_are_reconciled(session) -> None:
    feed = FakeProvider(
        pages={
            1: make_page(
                [
                    make_record(1, "Дюна", genres={"фантастика"}),
                    make_record(1, None, year=2021, genres={"драма"}),
                    make_record(2, "Оно"),
                ],
                None,
            )
        }
    )

    summary = await sync_catalog(session, feed, page_size=10)

    assert summary.scanned == 3
    assert summary.upserted == 2
    assert await _row_count(session) == 2
    row = await session.get(CatalogVideo, ("fake", 1), populate_existing=True)
    assert row.title == "Дюна"
    assert row.year == 2021
    assert sorted(row.genres) == ["драма", "фантастика"]


@pytest.mark.asyncio
async def test_failed_reset_keeps_previous_cursor(session) -> None:
    feed = _three_page_feed()
    await sync_catalog(session, feed, mode=SyncMode.FULL, page_size=2, max_pages=1)
    assert (await _cursor(session)).position == 2

    feed.pages[1] = UpstreamUnavailable("fake responded 503", provider="fake", status_code=503)
    with pytest.raises(SyncAbortedError):
        await sync_catalog(session, feed, mode=SyncMode.FULL, page_size=2, max_pages=1, reset=True)

    assert (await _cursor(session)).position == 2
