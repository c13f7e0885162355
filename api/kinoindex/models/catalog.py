"""Aggregated catalog rows and resumable sync cursors."""

from __future__ import annotations

import enum
from datetime import datetime, timezone

from sqlalchemy import JSON, BigInteger, DateTime, Enum, Float, Integer, String, Text, event
from sqlalchemy.dialects.postgresql import ARRAY
from sqlalchemy.orm import Mapped, mapped_column

from kinoindex.db.base_class import Base

# TEXT[] on PostgreSQL, JSON lists everywhere else.
STRING_SET = JSON().with_variant(ARRAY(Text()), "postgresql")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class VideoKind(str, enum.Enum):
    """Type variant of a catalog entry."""
    MOVIE = "movie"
    SERIAL = "serial"


class SyncMode(str, enum.Enum):
    """Crawl strategies supported by the sync coordinator."""
    RECENT = "recent"
    FULL = "full"


class CatalogVideo(Base):
    """One provider-scoped video entry, filled monotonically across syncs."""
    __tablename__ = "catalog_videos"

    provider: Mapped[str] = mapped_column(String(32), primary_key=True)
    video_id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=False)
    kind: Mapped[VideoKind] = mapped_column(
        Enum(VideoKind, name="video_kind", values_callable=lambda enum_cls: [e.value for e in enum_cls]),
        nullable=False,
    )
    kp_id: Mapped[int | None] = mapped_column(Integer, nullable=True, index=True)
    imdb_id: Mapped[str | None] = mapped_column(String(32), nullable=True, index=True)
    tmdb_id: Mapped[str | None] = mapped_column(String(32), nullable=True)
    title: Mapped[str | None] = mapped_column(String(500), nullable=True)
    original_title: Mapped[str | None] = mapped_column(String(500), nullable=True)
    search_text: Mapped[str] = mapped_column(Text(), nullable=False, default="")
    year: Mapped[int | None] = mapped_column(Integer, nullable=True, index=True)
    quality: Mapped[str | None] = mapped_column(String(64), nullable=True)
    poster_url: Mapped[str | None] = mapped_column(String(1024), nullable=True)
    iframe_url: Mapped[str | None] = mapped_column(String(1024), nullable=True)
    genres: Mapped[list[str] | None] = mapped_column(STRING_SET, nullable=True)
    countries: Mapped[list[str] | None] = mapped_column(STRING_SET, nullable=True)
    episodes_count: Mapped[int | None] = mapped_column(Integer, nullable=True)
    kp_rating: Mapped[float | None] = mapped_column(Float, nullable=True)
    imdb_rating: Mapped[float | None] = mapped_column(Float, nullable=True)
    created_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)


class SyncCursor(Base):
    """Resumable crawl position for one (provider feed, mode) pair."""
    __tablename__ = "sync_cursors"

    provider: Mapped[str] = mapped_column(String(64), primary_key=True)
    mode: Mapped[str] = mapped_column(String(16), primary_key=True)
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    exhausted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)


def _ensure_tz_aware(dt: datetime | None) -> datetime | None:
    """Normalize DB-loaded timestamps to UTC to avoid naive/aware comparisons in SQLite."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


@event.listens_for(CatalogVideo, "load")
@event.listens_for(CatalogVideo, "refresh")
def _normalize_video_timestamps(target: CatalogVideo, *_, **__) -> None:
    """Normalize video timestamps after load/refresh events."""
    target.created_at = _ensure_tz_aware(target.created_at)  # type: ignore[assignment]
    target.updated_at = _ensure_tz_aware(target.updated_at)  # type: ignore[assignment]


@event.listens_for(SyncCursor, "load")
@event.listens_for(SyncCursor, "refresh")
def _normalize_cursor_timestamps(target: SyncCursor, *_, **__) -> None:
    """Normalize cursor timestamps after load/refresh events."""
    target.exhausted_at = _ensure_tz_aware(target.exhausted_at)  # type: ignore[assignment]
    target.updated_at = _ensure_tz_aware(target.updated_at)  # type: ignore[assignment]


@event.listens_for(SyncCursor.exhausted_at, "set", retval=True)
@event.listens_for(SyncCursor.updated_at, "set", retval=True)
def _coerce_cursor_dt(_target: SyncCursor, value: datetime | None, *_: object, **__: object) -> datetime | None:
    """Coerce cursor timestamps to UTC on assignment."""
    return _ensure_tz_aware(value)
