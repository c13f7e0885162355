"""Provider adapters: payload normalisation, pagination and lookup attempts."""

from __future__ import annotations

from collections import deque
from typing import Any

import httpx
import pytest

from kinoindex.core.errors import InvalidRequestError
from kinoindex.models.catalog import VideoKind
from kinoindex.upstream import get_provider
from kinoindex.upstream.base import LinkIdentifiers, LookupAttempt
from kinoindex.upstream.flixcdn import FlixcdnProvider
from kinoindex.upstream.http import UpstreamRejected, UpstreamUnavailable
from kinoindex.upstream.kodik import KodikProvider, quality_score
from kinoindex.upstream.vibix import VibixProvider
from kinoindex.upstream.videoseed import VideoseedProvider


def _configure(monkeypatch: pytest.MonkeyPatch, *payloads: Any) -> list[dict[str, Any]]:
    """Stub httpx so each request pops the next payload (an int is a bare status code)."""
    queue: deque[Any] = deque(payloads)
    call_log: list[dict[str, Any]] = []

    class DummyAsyncClient:
        def __init__(self, *args: Any, **kwargs: Any) -> None:
            pass

        async def __aenter__(self) -> DummyAsyncClient:
            return self

        async def __aexit__(self, *args: Any) -> bool:
            return False

        async def request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
            call_log.append({"method": method, "url": url, **kwargs})
            if not queue:
                raise RuntimeError("No stub responses configured")
            payload = queue.popleft()
            request = httpx.Request(method, url)
            if isinstance(payload, int):
                return httpx.Response(payload, text="error", request=request)
            return httpx.Response(200, json=payload, request=request)

    monkeypatch.setattr("kinoindex.upstream.http.httpx.AsyncClient", DummyAsyncClient)
    return call_log


@pytest.mark.asyncio
async def test_flixcdn_updates_page_normalises_items(monkeypatch: pytest.MonkeyPatch) -> None:
    calls = _configure(
        monkeypatch,
        {
            "result": [
                {
                    "id": "17",
                    "type": "serial",
                    "kinopoisk_id": "464963",
                    "title_rus": " Игра престолов ",
                    "title_orig": "Game of Thrones",
                    "year": "2011-04-17",
                    "genres": ["драма", "фэнтези"],
                    "countries": "США, Великобритания",
                    "episode": 73,
                },
                {"id": None, "title_rus": "broken"},
            ],
            "next": {"offset": 2},
        },
    )
    provider = FlixcdnProvider(token="t0ken", api_bases=["https://flix.example"])

    page = await provider.fetch_updates(0, 2)

    assert calls[0]["url"] == "https://flix.example/api/updates"
    assert calls[0]["params"]["token"] == "t0ken"
    assert page.next_cursor == 2
    assert page.fetched == 2
    [record] = page.items
    assert record.video_id == 17
    assert record.kind is VideoKind.SERIAL
    assert record.kp_id == 464963
    assert record.title == "Игра престолов"
    assert record.year == 2011
    assert record.genres == frozenset({"драма", "фэнтези"})
    assert record.countries == frozenset({"США", "Великобритания"})
    assert record.episodes_count == 73


@pytest.mark.asyncio
async def test_flixcdn_fails_over_to_next_mirror(monkeypatch: pytest.MonkeyPatch) -> None:
    calls = _configure(monkeypatch, 503, 503, {"result": []})
    provider = FlixcdnProvider(token="t", api_bases=["https://one.example", "https://two.example"])

    page = await provider.fetch_listing(0, 10)

    assert [call["url"] for call in calls] == [
        "https://one.example/api/search",
        "https://one.example/api/search",
        "https://two.example/api/search",
    ]
    assert page.items == []
    assert page.next_cursor is None


@pytest.mark.asyncio
async def test_flixcdn_without_token_is_rejected(monkeypatch: pytest.MonkeyPatch) -> None:
    provider = FlixcdnProvider(token=None, api_bases=["https://flix.example"])
    provider.token = None

    with pytest.raises(UpstreamRejected):
        await provider.fetch_updates(0, 10)


@pytest.mark.asyncio
async def test_videoseed_pages_by_number_with_feed_kind(monkeypatch: pytest.MonkeyPatch) -> None:
    calls = _configure(
        monkeypatch,
        {
            "status": "success",
            "data": [
                {"id": 1, "id_kp": 301, "name": "Матрица", "year": 1999, "iframe": "https://vs.example/1"},
                {"id": 2, "id_kp": 0, "name": "Без кинопоиска"},
            ],
        },
    )
    provider = VideoseedProvider(VideoKind.SERIAL, token="vs", api_base="https://vs.example/api")

    page = await provider.fetch_listing(3, 2)

    assert provider.name == "videoseed-serial"
    assert calls[0]["params"]["list"] == "serial"
    assert calls[0]["params"]["from"] == 3
    assert calls[0]["params"]["sort_by"] == "post_date asc"
    assert page.next_cursor == 4
    assert [record.kp_id for record in page.items] == [301, None]
    assert all(record.provider == "videoseed" for record in page.items)
    assert all(record.kind is VideoKind.SERIAL for record in page.items)


@pytest.mark.asyncio
async def test_videoseed_error_status_is_unavailable(monkeypatch: pytest.MonkeyPatch) -> None:
    _configure(monkeypatch, {"status": "error", "message": "limit"})
    provider = VideoseedProvider(VideoKind.MOVIE, token="vs", api_base="https://vs.example/api")

    with pytest.raises(UpstreamUnavailable):
        await provider.fetch_updates(1, 50)


def test_videoseed_attempts_go_from_ids_to_free_text() -> None:
    provider = VideoseedProvider(token="vs")
    attempts = provider.resolution_attempts(LinkIdentifiers(kp_id=5, imdb_id="tt1", title="Матрица"))

    assert [attempt.name for attempt in attempts] == [
        "kp_movie",
        "kp_serial",
        "imdb_movie",
        "imdb_serial",
        "title_movie",
    ]


@pytest.mark.asyncio
async def test_videoseed_lookup_finds_nested_iframe(monkeypatch: pytest.MonkeyPatch) -> None:
    calls = _configure(
        monkeypatch, {"status": "success", "data": [{"id": 9, "player": {"iframe": "//vs.example/embed/9"}}]}
    )
    provider = VideoseedProvider(token="vs", api_base="https://vs.example/api")

    link = await provider.lookup_link(LookupAttempt("kp_serial", (("kp", "5"),), VideoKind.SERIAL))

    assert link == "//vs.example/embed/9"
    assert calls[0]["params"]["item"] == "serial"
    assert calls[0]["params"]["kp"] == "5"


@pytest.mark.asyncio
async def test_vibix_listing_uses_last_page_meta(monkeypatch: pytest.MonkeyPatch) -> None:
    calls = _configure(
        monkeypatch,
        {
            "data": [{"id": 11, "type": "movie", "name_rus": "Дюна", "kp_id": 409424, "kp_rating": "8.0"}],
            "meta": {"current_page": 4, "last_page": 4, "total": 61, "per_page": 20},
        },
    )
    provider = VibixProvider(api_key="key", base_url="https://vibix.example")

    page = await provider.fetch_listing(4, 20, kind=VideoKind.MOVIE, year=2021)

    assert calls[0]["headers"]["Authorization"] == "Bearer key"
    assert ("year[]", 2021) in calls[0]["params"]
    assert page.last_page == 4
    assert page.next_cursor is None
    assert page.total == 61
    assert page.items[0].kp_rating == 8.0


@pytest.mark.asyncio
async def test_vibix_keyword_search_resolves_tag_once(monkeypatch: pytest.MonkeyPatch) -> None:
    calls = _configure(
        monkeypatch,
        {"data": [{"id": 1, "name": "Новинки", "code": "new"}, {"id": 2, "name": "Новинка", "code": "novelty"}]},
        {"data": [{"id": 5, "name_rus": "Фильм", "kp_id": 55}], "meta": {"last_page": 1}},
        {"data": [], "meta": {"last_page": 1}},
    )
    provider = VibixProvider(api_key="key", base_url="https://vibix.example")

    records = await provider.search_by_keyword("Новинка")
    await provider.search_by_keyword("новинка")

    assert [record.video_id for record in records] == [5]
    assert ("tag[]", 2) in calls[1]["params"]
    assert sum(1 for call in calls if call["url"].endswith("/videos/tags")) == 1
    assert await provider.resolve_tag_id("но") is None


@pytest.mark.asyncio
async def test_vibix_details_count_serial_episodes(monkeypatch: pytest.MonkeyPatch) -> None:
    _configure(
        monkeypatch,
        {"type": "serial", "genre": [{"name": "драма"}], "country": "Россия", "imdb_rating": 7.7},
        {"seasons": [{"series": [1, 2, 3]}, {"series": [1, 2]}]},
    )
    provider = VibixProvider(api_key="key", base_url="https://vibix.example")

    details = await provider.fetch_details(77)

    assert details.genres == frozenset({"драма"})
    assert details.countries == frozenset({"Россия"})
    assert details.imdb_rating == 7.7
    assert details.episodes_count == 5


@pytest.mark.asyncio
async def test_vibix_details_not_found_is_none(monkeypatch: pytest.MonkeyPatch) -> None:
    _configure(monkeypatch, 404)
    provider = VibixProvider(api_key="key", base_url="https://vibix.example")

    assert await provider.fetch_details(1) is None


@pytest.mark.asyncio
async def test_kodik_prefers_voiced_high_quality_links(monkeypatch: pytest.MonkeyPatch) -> None:
    _configure(
        monkeypatch,
        {
            "results": [
                {"link": "//kodik.example/sub-1080", "quality": "1080p", "translation": {"type": "subtitles"}},
                {"link": "//kodik.example/voice-720", "quality": "WEB-DL 720p", "translation": {"type": "voice"}},
                {"link": "//kodik.example/voice-cam", "quality": "CAMRip", "translation": {"type": "voice"}},
            ]
        },
    )
    provider = KodikProvider(token="k", api_base="https://kodik.example")

    link = await provider.lookup_link(LookupAttempt("kinopoisk_id", (("kinopoisk_id", "1"),)))

    assert link == "https://kodik.example/voice-720"


def test_kodik_quality_score_ranks_labels() -> None:
    assert quality_score("4K UHD") > quality_score("1080p") > quality_score("720") > quality_score("HDRip")
    assert quality_score("TS") < quality_score(None)


def test_registry_returns_shared_instances_and_rejects_unknown() -> None:
    assert get_provider("vibix") is get_provider("VIBIX")
    assert get_provider("videoseed-movie").kind is VideoKind.MOVIE
    with pytest.raises(InvalidRequestError):
        get_provider("nope")
