"""Search response schemas for the aggregated catalog."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field

from kinoindex.models.catalog import VideoKind
from kinoindex.schema.base import ORMModel


class CatalogItemOut(ORMModel):
    """One ranked catalog entry as returned to callers."""
    provider: str
    video_id: int
    kind: VideoKind
    kp_id: int | None = None
    imdb_id: str | None = None
    tmdb_id: str | None = None
    title: str | None = None
    original_title: str | None = None
    year: int | None = None
    quality: str | None = None
    poster_url: str | None = None
    iframe_url: str | None = None
    created_at: datetime | None = None
    genres: list[str] = Field(default_factory=list)
    countries: list[str] = Field(default_factory=list)
    episodes_count: int | None = None
    kp_rating: float | None = None
    imdb_rating: float | None = None
    score: int = 0
    match_tier: str | None = None
    source: str = "store"


class SearchPage(BaseModel):
    """Paginated, ranked search response."""
    query: str
    items: list[CatalogItemOut]
    page: int
    limit: int
    total: int
    last_page: int
    relevance: str
    sources: dict[str, int] = Field(default_factory=dict)
    cached: bool = False


class CatalogBrowsePage(BaseModel):
    """Faceted catalog listing, newest entries first."""
    items: list[CatalogItemOut]
    page: int
    limit: int
    total: int
    last_page: int


class CatalogTaxonomy(BaseModel):
    genres: list[str] = Field(default_factory=list)
    countries: list[str] = Field(default_factory=list)
    years: list[int] = Field(default_factory=list)
