"""Upstream HTTP plumbing: retries, error classification and payload decoding."""

from __future__ import annotations

from collections import deque
from typing import Any

import httpx
import pytest

from kinoindex.upstream.http import (
    UpstreamNotFound,
    UpstreamRejected,
    UpstreamUnavailable,
    fetch_json,
)


def _make_async_client(
    responses: deque[httpx.Response | Exception], call_log: list[dict[str, Any]]
) -> type:
    class DummyAsyncClient:
        def __init__(self, *args: Any, **kwargs: Any) -> None:
            self._responses = responses

        async def __aenter__(self) -> DummyAsyncClient:
            return self

        async def __aexit__(self, *args: Any) -> bool:
            return False

        async def request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
            call_log.append({"method": method, "url": url, **kwargs})
            if not self._responses:
                raise RuntimeError("No stub responses configured")
            response = self._responses.popleft()
            if isinstance(response, Exception):
                raise response
            return response

    return DummyAsyncClient


def _response(status: int, url: str = "https://api.example/videos", **kwargs: Any) -> httpx.Response:
    return httpx.Response(status, request=httpx.Request("GET", url), **kwargs)


def _install(monkeypatch: pytest.MonkeyPatch, *responses: httpx.Response | Exception) -> list[dict[str, Any]]:
    call_log: list[dict[str, Any]] = []
    monkeypatch.setattr("kinoindex.upstream.http.httpx.AsyncClient", _make_async_client(deque(responses), call_log))
    return call_log


@pytest.mark.asyncio
async def test_fetch_json_retries_unavailable_then_succeeds(monkeypatch: pytest.MonkeyPatch) -> None:
    calls = _install(monkeypatch, _response(503, text="busy"), _response(200, json={"ok": True}))

    payload = await fetch_json("https://api.example/videos", provider="example", attempts=2)

    assert payload == {"ok": True}
    assert len(calls) == 2
    assert calls[0]["headers"]["Accept"] == "application/json"


@pytest.mark.asyncio
async def test_fetch_json_gives_up_after_attempt_budget(monkeypatch: pytest.MonkeyPatch) -> None:
    calls = _install(
        monkeypatch,
        httpx.ConnectTimeout("timed out"),
        _response(502, text="<html><body>Bad gateway</body></html>"),
    )

    with pytest.raises(UpstreamUnavailable) as excinfo:
        await fetch_json("https://api.example/videos", provider="example", attempts=2)

    assert len(calls) == 2
    assert excinfo.value.status_code == 502
    assert "<html>" not in excinfo.value.message


@pytest.mark.asyncio
async def test_rate_limit_counts_as_unavailable(monkeypatch: pytest.MonkeyPatch) -> None:
    _install(monkeypatch, _response(429, text="slow down"))

    with pytest.raises(UpstreamUnavailable):
        await fetch_json("https://api.example/videos", provider="example", attempts=1)


@pytest.mark.asyncio
async def test_client_errors_are_not_retried(monkeypatch: pytest.MonkeyPatch) -> None:
    calls = _install(monkeypatch, _response(403, text="bad token"), _response(200, json={}))

    with pytest.raises(UpstreamRejected):
        await fetch_json("https://api.example/videos", provider="example", attempts=3)

    assert len(calls) == 1


@pytest.mark.asyncio
async def test_not_found_is_its_own_error(monkeypatch: pytest.MonkeyPatch) -> None:
    calls = _install(monkeypatch, _response(404, json={"message": "not found"}))

    with pytest.raises(UpstreamNotFound) as excinfo:
        await fetch_json("https://api.example/videos/1", provider="example", attempts=3)

    assert excinfo.value.status_code == 404
    assert len(calls) == 1


@pytest.mark.asyncio
async def test_malformed_and_empty_bodies_decode_to_none(monkeypatch: pytest.MonkeyPatch) -> None:
    _install(monkeypatch, _response(200, text="<html>maintenance</html>"), _response(200, text=""))

    assert await fetch_json("https://api.example/videos?token=secret", provider="example") is None
    assert await fetch_json("https://api.example/videos", provider="example") is None


@pytest.mark.asyncio
async def test_transport_errors_redact_credentials(monkeypatch: pytest.MonkeyPatch) -> None:
    _install(monkeypatch, httpx.ConnectError("cannot reach https://api.example/list?token=secret"))

    with pytest.raises(UpstreamUnavailable) as excinfo:
        await fetch_json("https://api.example/list", provider="example", attempts=1)

    assert "secret" not in excinfo.value.message
