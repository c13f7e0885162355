"""Shared HTTP plumbing and error taxonomy for upstream providers."""

from __future__ import annotations

import json
import logging
from typing import Any

import httpx
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_incrementing

from kinoindex.core.config import settings
from kinoindex.utils.redaction import redact_secrets, summarize_body

logger = logging.getLogger("kinoindex.upstream.http")


class UpstreamError(Exception):
    """Base class for failures talking to an upstream provider."""

    def __init__(self, message: str, *, provider: str | None = None, status_code: int | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.provider = provider
        self.status_code = status_code


class UpstreamUnavailable(UpstreamError):
    """Timeout, transport failure, throttling or 5xx. Retried, then surfaced."""


class UpstreamRejected(UpstreamError):
    """Non-retryable 4xx such as rejected or missing credentials."""


class UpstreamNotFound(UpstreamError):
    """The addressed item does not exist upstream."""


def classify_status(response: httpx.Response, *, provider: str) -> None:
    """Raise the matching upstream error for a non-2xx response."""
    status = response.status_code
    if status < 400:
        return
    detail = summarize_body(response.text)
    message = f"{provider} responded {status}"
    if detail:
        message = f"{message}: {detail}"
    if status == 404:
        raise UpstreamNotFound(message, provider=provider, status_code=status)
    if status == 429 or status >= 500:
        raise UpstreamUnavailable(message, provider=provider, status_code=status)
    raise UpstreamRejected(message, provider=provider, status_code=status)


def decode_json(response: httpx.Response, *, provider: str, url: str | None = None) -> Any | None:
    """Return the decoded body, or None for empty and malformed payloads."""
    text = response.text
    if not text or not text.strip():
        return None
    try:
        return json.loads(text)
    except ValueError:
        logger.warning(
            "Malformed upstream payload ignored",
            extra={
                "provider": provider,
                "url": redact_secrets(url) if url else None,
                "snippet": summarize_body(text, limit=120),
            },
        )
        return None


async def _request(
    method: str,
    url: str,
    *,
    provider: str,
    headers: dict[str, str] | None,
    params: dict[str, Any] | list[tuple[str, Any]] | None,
    json_body: dict[str, Any] | None,
    timeout: float,
) -> httpx.Response:
    try:
        async with httpx.AsyncClient(timeout=timeout) as client:
            response = await client.request(method, url, headers=headers, params=params, json=json_body)
    except httpx.TimeoutException as exc:
        raise UpstreamUnavailable(f"{provider} timed out after {timeout}s", provider=provider) from exc
    except httpx.TransportError as exc:
        raise UpstreamUnavailable(
            f"{provider} transport error: {redact_secrets(str(exc))}", provider=provider
        ) from exc
    classify_status(response, provider=provider)
    return response


async def fetch_json(
    url: str,
    *,
    provider: str,
    headers: dict[str, str] | None = None,
    params: dict[str, Any] | list[tuple[str, Any]] | None = None,
    method: str = "GET",
    json_body: dict[str, Any] | None = None,
    timeout: float | None = None,
    attempts: int | None = None,
) -> Any | None:
    """Call an upstream JSON endpoint with bounded retries and linear backoff.

    Only ``UpstreamUnavailable`` is retried. ``UpstreamRejected`` and
    ``UpstreamNotFound`` propagate immediately. Malformed bodies decode to None.
    """
    timeout = timeout if timeout is not None else settings.upstream_timeout_seconds
    attempts = attempts if attempts is not None else settings.upstream_attempts
    backoff = settings.upstream_backoff_seconds
    request_headers = {"Accept": "application/json", **(headers or {})}
    async for attempt in AsyncRetrying(
        stop=stop_after_attempt(max(1, attempts)),
        wait=wait_incrementing(start=backoff, increment=backoff),
        retry=retry_if_exception_type(UpstreamUnavailable),
        reraise=True,
    ):
        with attempt:
            try:
                response = await _request(
                    method,
                    url,
                    provider=provider,
                    headers=request_headers,
                    params=params,
                    json_body=json_body,
                    timeout=timeout,
                )
            except UpstreamUnavailable as exc:
                logger.debug(
                    "Upstream attempt %s failed for %s: %s",
                    attempt.retry_state.attempt_number,
                    provider,
                    exc.message,
                )
                raise
            return decode_json(response, provider=provider, url=url)
    raise UpstreamUnavailable(f"{provider} retry budget exhausted", provider=provider)
