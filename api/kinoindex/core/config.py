"""Application settings parsed from environment variables and defaults."""

import json
from functools import lru_cache
from typing import Optional

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_FLIXCDN_API_BASES = ["https://api0.flixcdn.biz"]
DEFAULT_SEARCH_PROVIDERS = ["vibix"]


def _split_list(value: str | list[str] | None, default: list[str]) -> list[str]:
    """Normalize list settings from JSON, CSV, or list inputs."""
    if isinstance(value, list):
        cleaned = [item.strip() for item in value if isinstance(item, str) and item.strip()]
        return cleaned or default.copy()
    if isinstance(value, str):
        stripped = value.strip()
        if not stripped:
            return default.copy()
        try:
            parsed = json.loads(stripped)
        except json.JSONDecodeError:
            parsed = None
        if isinstance(parsed, list):
            cleaned = [str(item).strip() for item in parsed if str(item).strip()]
            if cleaned:
                return cleaned
        items = [item.strip() for item in stripped.split(",") if item.strip()]
        if items:
            return items
    return default.copy()


class Settings(BaseSettings):
    """Application configuration loaded from environment variables."""

    app_name: str = "kinoindex"
    environment: str = "development"

    database_url: str = "sqlite+aiosqlite:///./kinoindex.db"
    test_database_url: Optional[str] = None

    log_level: str = "INFO"
    redis_url: str = "redis://redis:6379/0"
    worker_queue_names: list[str] | str = Field(default_factory=lambda: ["default", "sync"])

    flixcdn_token: Optional[str] = None
    flixcdn_api_bases: list[str] | str = Field(default_factory=lambda: DEFAULT_FLIXCDN_API_BASES.copy())
    videoseed_token: Optional[str] = None
    videoseed_api_base: str = "https://api.videoseed.tv/apiv2.php"
    vibix_api_key: Optional[str] = None
    vibix_base_url: str = "https://vibix.org"
    kodik_token: Optional[str] = None
    kodik_api_base: str = "https://kodikapi.com"

    upstream_timeout_seconds: float = 5.0
    upstream_attempts: int = 2
    upstream_backoff_seconds: float = 0.15

    sync_max_page_size: int = 999
    sync_max_pages: int = 200
    # Full-mode crawls start over from the initial cursor once upstream is exhausted.
    sync_full_restart_on_exhaustion: bool = True

    search_cache_ttl_seconds: int = 300
    search_default_limit: int = 20
    search_max_limit: int = 50
    search_candidate_limit: int = 500
    search_min_direct_query_length: int = 3
    search_providers: list[str] | str = Field(default_factory=lambda: DEFAULT_SEARCH_PROVIDERS.copy())

    fuzzy_scan_provider: str = "vibix"
    fuzzy_scan_ttl_seconds: int = 60 * 60
    fuzzy_scan_max_pages: int = 80
    fuzzy_scan_page_size: int = 20
    fuzzy_scan_max_matches: int = 400

    enrichment_provider: str = "vibix"
    enrichment_ttl_seconds: int = 6 * 60 * 60
    enrichment_concurrency: int = 8

    resolution_provider: str = "videoseed"
    resolution_success_ttl_seconds: int = 15 * 60
    resolution_failure_ttl_seconds: int = 60
    resolution_max_attempts: int = 4
    resolution_concurrent: bool = True

    @field_validator("worker_queue_names", mode="before")
    @classmethod
    def _split_worker_queue_names(cls, value: str | list[str] | None) -> list[str]:
        """Normalize worker queue names from JSON, CSV, or list inputs."""
        return _split_list(value, ["default"])

    @field_validator("flixcdn_api_bases", mode="before")
    @classmethod
    def _split_flixcdn_api_bases(cls, value: str | list[str] | None) -> list[str]:
        """Normalize FlixCDN failover bases and drop trailing slashes."""
        return [base.rstrip("/") for base in _split_list(value, DEFAULT_FLIXCDN_API_BASES)]

    @field_validator("search_providers", mode="before")
    @classmethod
    def _split_search_providers(cls, value: str | list[str] | None) -> list[str]:
        """Normalize direct-search provider names from JSON, CSV, or list inputs."""
        return [name.lower() for name in _split_list(value, DEFAULT_SEARCH_PROVIDERS)]

    @model_validator(mode="after")
    def _validate_limits(self) -> "Settings":
        """Reject budgets that would disable bounded fan-out entirely."""
        if self.enrichment_concurrency < 1:
            raise ValueError("ENRICHMENT_CONCURRENCY must be at least 1")
        if self.upstream_attempts < 1:
            raise ValueError("UPSTREAM_ATTEMPTS must be at least 1")
        if self.resolution_max_attempts < 1:
            raise ValueError("RESOLUTION_MAX_ATTEMPTS must be at least 1")
        return self

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")


@lru_cache
def get_settings() -> Settings:
    """Return cached settings to avoid re-parsing environment variables."""
    return Settings()


settings = get_settings()
