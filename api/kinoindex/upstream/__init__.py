"""Provider registry for upstream catalog feeds."""

from __future__ import annotations

from typing import Dict

from kinoindex.core.errors import InvalidRequestError
from kinoindex.models.catalog import VideoKind
from kinoindex.upstream.base import BaseProvider
from kinoindex.upstream.flixcdn import FlixcdnProvider
from kinoindex.upstream.kodik import KodikProvider
from kinoindex.upstream.vibix import VibixProvider
from kinoindex.upstream.videoseed import VideoseedProvider

_PROVIDERS: Dict[str, BaseProvider] = {}

PROVIDER_NAMES = ("flixcdn", "videoseed", "videoseed-movie", "videoseed-serial", "vibix", "kodik")


def get_provider(name: str) -> BaseProvider:
    """Return a shared provider instance for the given feed name."""
    key = name.strip().lower()
    if key not in _PROVIDERS:
        if key == "flixcdn":
            _PROVIDERS[key] = FlixcdnProvider()
        elif key == "videoseed":
            _PROVIDERS[key] = VideoseedProvider()
        elif key == "videoseed-movie":
            _PROVIDERS[key] = VideoseedProvider(VideoKind.MOVIE)
        elif key == "videoseed-serial":
            _PROVIDERS[key] = VideoseedProvider(VideoKind.SERIAL)
        elif key == "vibix":
            _PROVIDERS[key] = VibixProvider()
        elif key == "kodik":
            _PROVIDERS[key] = KodikProvider()
        else:
            raise InvalidRequestError(f"Unsupported provider {name}", field="provider")
    return _PROVIDERS[key]


def reset_providers() -> None:
    """Drop cached provider instances so new settings take effect."""
    _PROVIDERS.clear()
