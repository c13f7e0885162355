"""Persistence helpers for catalog rows and sync cursors.

Invariants:
- Rows are written with a single ``INSERT ... ON CONFLICT DO UPDATE`` per chunk,
  after in-batch reconciliation, so one statement never carries two rows for
  the same (provider, video_id).
- Unless ``overwrite`` is set, stored values are merged with the reconciler so a
  field never regresses from a value to null.
- ``kind`` is written on insert only.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from datetime import datetime, timezone
from typing import Any, Iterable, Sequence

from sqlalchemy import and_, or_, select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession

from kinoindex.db.base_class import Base
from kinoindex.models.catalog import CatalogVideo, SyncCursor
from kinoindex.services.reconcile import dedupe_batch, merge
from kinoindex.services.text_match import QueryTokens, SearchFilters, normalize
from kinoindex.upstream.base import CatalogRecord

logger = logging.getLogger("kinoindex.services.catalog_store")

UPSERT_CHUNK_SIZE = 500
TAXONOMY_VALUE_LIMIT = 300
TAXONOMY_YEAR_LIMIT = 80
BROWSE_GENRE_LIMIT = 6
_INSERT_ONLY_COLUMNS = {"provider", "video_id", "kind"}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _insert_for(session: AsyncSession):
    dialect = session.bind.dialect.name if session.bind else ""
    if dialect == "postgresql":
        return postgresql.insert
    if dialect == "sqlite":
        return sqlite.insert
    raise RuntimeError(f"Upserts are not supported on the {dialect or 'unknown'} dialect")


async def ensure_schema(session: AsyncSession) -> None:
    """Create catalog tables if missing; safe to call repeatedly."""
    connection = await session.connection()
    await connection.run_sync(Base.metadata.create_all)


async def ensure_cursor(session: AsyncSession, provider_name: str, mode: str, initial: int) -> SyncCursor:
    """Return the cursor row for (provider, mode), inserting it at ``initial`` on first use."""
    cursor = await session.get(SyncCursor, (provider_name, mode))
    if cursor is not None:
        return cursor
    insert = _insert_for(session)
    stmt = (
        insert(SyncCursor)
        .values(provider=provider_name, mode=mode, position=initial, updated_at=_utcnow())
        .on_conflict_do_nothing(index_elements=["provider", "mode"])
    )
    await session.execute(stmt)
    await session.flush()
    cursor = await session.get(SyncCursor, (provider_name, mode))
    if cursor is None:  # pragma: no cover - insert above guarantees the row
        raise RuntimeError(f"Cursor row for {provider_name}/{mode} could not be created")
    return cursor


def set_cursor(cursor: SyncCursor, position: int, *, exhausted: bool = False) -> None:
    """Move a cursor in the current transaction; the caller commits."""
    now = _utcnow()
    cursor.position = position
    cursor.exhausted_at = now if exhausted else None
    cursor.updated_at = now


def record_to_row(record: CatalogRecord, *, now: datetime | None = None) -> dict[str, Any]:
    return {
        "provider": record.provider,
        "video_id": record.video_id,
        "kind": record.kind,
        "kp_id": record.kp_id,
        "imdb_id": record.imdb_id,
        "tmdb_id": record.tmdb_id,
        "title": record.title,
        "original_title": record.original_title,
        "search_text": normalize(record.haystack),
        "year": record.year,
        "quality": record.quality,
        "poster_url": record.poster_url,
        "iframe_url": record.iframe_url,
        "genres": sorted(record.genres) or None,
        "countries": sorted(record.countries) or None,
        "episodes_count": record.episodes_count,
        "kp_rating": record.kp_rating,
        "imdb_rating": record.imdb_rating,
        "created_at": record.created_at,
        "updated_at": now or _utcnow(),
    }


def row_to_record(row: CatalogVideo) -> CatalogRecord:
    return CatalogRecord(
        provider=row.provider,
        video_id=row.video_id,
        kind=row.kind,
        kp_id=row.kp_id,
        imdb_id=row.imdb_id,
        tmdb_id=row.tmdb_id,
        title=row.title,
        original_title=row.original_title,
        year=row.year,
        quality=row.quality,
        poster_url=row.poster_url,
        iframe_url=row.iframe_url,
        created_at=row.created_at,
        genres=frozenset(row.genres or ()),
        countries=frozenset(row.countries or ()),
        episodes_count=row.episodes_count,
        kp_rating=row.kp_rating,
        imdb_rating=row.imdb_rating,
    )


async def load_records(
    session: AsyncSession, identities: Iterable[tuple[str, int]]
) -> dict[tuple[str, int], CatalogRecord]:
    """Fetch stored records for the given (provider, video_id) pairs."""
    by_provider: dict[str, set[int]] = defaultdict(set)
    for provider, video_id in identities:
        by_provider[provider].add(video_id)
    if not by_provider:
        return {}
    clauses = [
        and_(CatalogVideo.provider == provider, CatalogVideo.video_id.in_(sorted(ids)))
        for provider, ids in by_provider.items()
    ]
    stmt = select(CatalogVideo).where(or_(*clauses)).execution_options(populate_existing=True)
    result = await session.execute(stmt)
    return {(row.provider, row.video_id): row_to_record(row) for row in result.scalars()}


async def upsert_records(
    session: AsyncSession, records: Sequence[CatalogRecord], *, overwrite: bool = False
) -> int:
    """Reconcile and upsert ``records``; returns the number of distinct rows written.

    Does not commit. With ``overwrite`` the incoming values replace stored ones
    (explicit full re-sync); otherwise stored rows are merged first.
    """
    batch = dedupe_batch(records)
    if not batch:
        return 0
    if not overwrite:
        stored = await load_records(session, (record.identity for record in batch))
        batch = [merge(stored[record.identity], record) if record.identity in stored else record for record in batch]
    insert = _insert_for(session)
    now = _utcnow()
    for start in range(0, len(batch), UPSERT_CHUNK_SIZE):
        rows = [record_to_row(record, now=now) for record in batch[start : start + UPSERT_CHUNK_SIZE]]
        stmt = insert(CatalogVideo).values(rows)
        update_columns = {
            column: getattr(stmt.excluded, column) for column in rows[0] if column not in _INSERT_ONLY_COLUMNS
        }
        stmt = stmt.on_conflict_do_update(index_elements=["provider", "video_id"], set_=update_columns)
        await session.execute(stmt)
    return len(batch)


async def find_candidates(
    session: AsyncSession,
    query: QueryTokens,
    filters: SearchFilters,
    *,
    limit: int = 500,
) -> list[CatalogRecord]:
    """Prefilter stored rows whose normalized titles share a token or 3-letter prefix with the query."""
    if not query.tokens:
        return []
    patterns: set[str] = set()
    for token in query.tokens:
        patterns.add(token)
        if len(token) >= 4:
            patterns.add(token[:3])
    stmt = select(CatalogVideo).where(
        or_(*(CatalogVideo.search_text.like(f"%{pattern}%") for pattern in sorted(patterns)))
    )
    if filters.kind:
        stmt = stmt.where(CatalogVideo.kind == filters.kind)
    if filters.year:
        stmt = stmt.where(CatalogVideo.year == filters.year)
    stmt = stmt.order_by(CatalogVideo.year.desc(), CatalogVideo.video_id.desc()).limit(limit)
    result = await session.execute(stmt)
    records = [row_to_record(row) for row in result.scalars()]
    return [record for record in records if filters.accepts(record)]


async def catalog_taxonomy(session: AsyncSession, provider: str | None = None) -> dict[str, list[Any]]:
    """Distinct genres, countries and years present in the stored catalog, capped for facet menus."""
    stmt = select(CatalogVideo.genres, CatalogVideo.countries, CatalogVideo.year)
    if provider:
        stmt = stmt.where(CatalogVideo.provider == provider)
    genres: set[str] = set()
    countries: set[str] = set()
    years: set[int] = set()
    for row_genres, row_countries, year in (await session.execute(stmt)).all():
        genres.update(value.strip() for value in row_genres or () if value and value.strip())
        countries.update(value.strip() for value in row_countries or () if value and value.strip())
        if year:
            years.add(year)
    return {
        "genres": sorted(genres)[:TAXONOMY_VALUE_LIMIT],
        "countries": sorted(countries)[:TAXONOMY_VALUE_LIMIT],
        "years": sorted(years, reverse=True)[:TAXONOMY_YEAR_LIMIT],
    }


async def list_catalog(
    session: AsyncSession,
    *,
    provider: str | None = None,
    filters: SearchFilters | None = None,
    offset: int = 0,
    limit: int = 20,
) -> tuple[list[CatalogRecord], int]:
    """Faceted browse over stored rows that have a poster, newest first.

    Kind and year filter in SQL. Genres (any of the first six requested) and
    country filter the set columns in process, since their storage differs by
    dialect. Returns the requested window and the total match count.
    """
    filters = filters or SearchFilters()
    stmt = select(CatalogVideo).where(CatalogVideo.poster_url.is_not(None), CatalogVideo.poster_url != "")
    if provider:
        stmt = stmt.where(CatalogVideo.provider == provider)
    if filters.kind:
        stmt = stmt.where(CatalogVideo.kind == filters.kind)
    if filters.year:
        stmt = stmt.where(CatalogVideo.year == filters.year)
    stmt = stmt.order_by(CatalogVideo.created_at.desc().nulls_last(), CatalogVideo.video_id.desc())

    wanted_genres = {normalize(genre) for genre in sorted(filters.genres)[:BROWSE_GENRE_LIMIT]} - {""}
    matched: list[CatalogRecord] = []
    for row in (await session.execute(stmt)).scalars():
        record = row_to_record(row)
        if not filters.accepts(record):
            continue
        if wanted_genres and not wanted_genres & {normalize(genre) for genre in record.genres}:
            continue
        matched.append(record)
    return matched[offset : offset + limit], len(matched)


async def find_by_kp_id(session: AsyncSession, kp_id: int, *, provider: str | None = None) -> CatalogRecord | None:
    """Return one stored row carrying ``kp_id``, preferring the lowest provider and id."""
    stmt = select(CatalogVideo).where(CatalogVideo.kp_id == kp_id)
    if provider:
        stmt = stmt.where(CatalogVideo.provider == provider)
    stmt = stmt.order_by(CatalogVideo.provider, CatalogVideo.video_id).limit(1)
    row = (await session.execute(stmt)).scalars().first()
    return row_to_record(row) if row is not None else None
