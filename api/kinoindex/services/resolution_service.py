"""Playable-link resolution through an ordered chain of lookup attempts.

Invariants:
- Attempts are ordered most specific first; only the first ``max_attempts`` run.
- In concurrent mode the first attempt to succeed wins and the rest are
  cancelled; every attempt still gets an ``AttemptOutcome``.
- With no success, the first hard upstream error in attempt order becomes the
  failure cause; otherwise the result is a clean not-found.
- Successes and failures live in separate caches with separate TTLs, keyed by
  identifiers only. Decoration options are applied after the cache lookup.
"""

from __future__ import annotations

import asyncio
import enum
import logging
from dataclasses import dataclass, field
from functools import partial
from time import monotonic

import httpx

from kinoindex.core.config import settings
from kinoindex.core.errors import InvalidRequestError
from kinoindex.upstream.base import BaseProvider, LinkIdentifiers, LookupAttempt
from kinoindex.upstream.http import UpstreamError, UpstreamNotFound
from kinoindex.upstream.observability import UpstreamMonitor, call_upstream
from kinoindex.utils.cache import TTLCache

logger = logging.getLogger("kinoindex.services.resolution")


class AttemptStatus(str, enum.Enum):
    FOUND = "found"
    NOT_FOUND = "not_found"
    ERROR = "error"
    CANCELLED = "cancelled"


class ResolutionStatus(str, enum.Enum):
    FOUND = "found"
    NOT_FOUND = "not_found"
    FAILED = "failed"


@dataclass(slots=True)
class AttemptOutcome:
    name: str
    status: AttemptStatus
    url: str | None = None
    error: str | None = None
    elapsed_ms: float = 0.0


@dataclass(frozen=True, slots=True)
class LinkOptions:
    """Per-request player parameters that never take part in caching."""
    start: str | None = None
    subtitle: str | None = None
    default_audio: str | None = None
    autostart: str | None = None

    def decorate(self, url: str) -> str:
        params = {
            name: value
            for name, value in (
                ("subtitle", self.subtitle),
                ("default_audio", self.default_audio),
                ("autostart", self.autostart),
                ("start", self.start),
            )
            if value
        }
        if not params:
            return url
        try:
            return str(httpx.URL(url).copy_merge_params(params))
        except httpx.InvalidURL:
            logger.warning("Cannot decorate malformed player URL %r", url)
            return url


@dataclass(slots=True)
class CachedResolution:
    status: ResolutionStatus
    url: str | None = None
    strategy: str | None = None
    error: str | None = None


@dataclass(slots=True)
class LinkResolution:
    status: ResolutionStatus
    provider: str
    url: str | None = None
    strategy: str | None = None
    error: str | None = None
    cached: bool = False
    attempts: list[AttemptOutcome] = field(default_factory=list)

    @property
    def found(self) -> bool:
        return self.status is ResolutionStatus.FOUND


class LinkResolver:
    """Resolve playable links for one provider with positive/negative caching."""

    def __init__(
        self,
        provider: BaseProvider,
        *,
        success_cache: TTLCache[CachedResolution] | None = None,
        failure_cache: TTLCache[CachedResolution] | None = None,
        monitor: UpstreamMonitor | None = None,
        max_attempts: int | None = None,
        concurrent: bool | None = None,
    ) -> None:
        self.provider = provider
        if success_cache is None:
            success_cache = TTLCache(settings.resolution_success_ttl_seconds)
        if failure_cache is None:
            failure_cache = TTLCache(settings.resolution_failure_ttl_seconds)
        self.success_cache: TTLCache[CachedResolution] = success_cache
        self.failure_cache: TTLCache[CachedResolution] = failure_cache
        self.monitor = monitor
        self.max_attempts = max_attempts or settings.resolution_max_attempts
        self.concurrent = settings.resolution_concurrent if concurrent is None else concurrent

    def cache_key(self, identifiers: LinkIdentifiers) -> str:
        return f"{self.provider.name}|{identifiers.cache_key()}"

    async def _run_attempt(self, attempt: LookupAttempt) -> AttemptOutcome:
        start = monotonic()
        try:
            url = await call_upstream(
                self.monitor,
                self.provider.name,
                "resolve",
                partial(self.provider.lookup_link, attempt),
                context={"attempt": attempt.name},
            )
        except UpstreamNotFound:
            url = None
        except UpstreamError as exc:
            return AttemptOutcome(
                attempt.name, AttemptStatus.ERROR, error=exc.message, elapsed_ms=(monotonic() - start) * 1000
            )
        status = AttemptStatus.FOUND if url else AttemptStatus.NOT_FOUND
        return AttemptOutcome(attempt.name, status, url=url, elapsed_ms=(monotonic() - start) * 1000)

    async def _sequential(self, attempts: list[LookupAttempt]) -> tuple[AttemptOutcome | None, list[AttemptOutcome]]:
        outcomes: list[AttemptOutcome] = []
        for attempt in attempts:
            outcome = await self._run_attempt(attempt)
            outcomes.append(outcome)
            if outcome.status is AttemptStatus.FOUND:
                return outcome, outcomes
        return None, outcomes

    async def _race(self, attempts: list[LookupAttempt]) -> tuple[AttemptOutcome | None, list[AttemptOutcome]]:
        """Run attempts concurrently; the first success wins and the others are cancelled."""
        order = {attempt.name: index for index, attempt in enumerate(attempts)}
        tasks = {asyncio.create_task(self._run_attempt(attempt)): attempt for attempt in attempts}
        outcomes: dict[str, AttemptOutcome] = {}
        winner: AttemptOutcome | None = None
        pending = set(tasks)
        try:
            while pending and winner is None:
                done, pending = await asyncio.wait(pending, return_when=asyncio.FIRST_COMPLETED)
                for task in sorted(done, key=lambda item: order[tasks[item].name]):
                    outcome = task.result()
                    outcomes[outcome.name] = outcome
                    if winner is None and outcome.status is AttemptStatus.FOUND:
                        winner = outcome
        finally:
            for task in pending:
                task.cancel()
                name = tasks[task].name
                outcomes[name] = AttemptOutcome(name, AttemptStatus.CANCELLED)
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)
        return winner, sorted(outcomes.values(), key=lambda item: order[item.name])

    async def resolve_link(
        self, identifiers: LinkIdentifiers, options: LinkOptions | None = None
    ) -> LinkResolution:
        """Resolve ``identifiers`` to a playable URL, decorated with ``options``."""
        if identifiers.is_empty():
            raise InvalidRequestError("At least one of kp_id, imdb_id or title is required", field="identifiers")
        options = options or LinkOptions()
        key = self.cache_key(identifiers)

        hit = self.success_cache.get(key)
        if hit is not None and hit.url:
            return LinkResolution(
                status=ResolutionStatus.FOUND,
                provider=self.provider.name,
                url=options.decorate(hit.url),
                strategy=hit.strategy,
                cached=True,
            )
        miss = self.failure_cache.get(key)
        if miss is not None:
            return LinkResolution(
                status=miss.status,
                provider=self.provider.name,
                strategy=miss.strategy,
                error=miss.error,
                cached=True,
            )

        attempts = self.provider.resolution_attempts(identifiers)[: self.max_attempts]
        if not attempts:
            raise InvalidRequestError(
                f"{self.provider.name} cannot resolve links from the given identifiers", field="identifiers"
            )
        if self.concurrent and len(attempts) > 1:
            winner, outcomes = await self._race(attempts)
        else:
            winner, outcomes = await self._sequential(attempts)

        if winner is not None and winner.url:
            self.success_cache.set(key, CachedResolution(ResolutionStatus.FOUND, url=winner.url, strategy=winner.name))
            logger.info("Resolved %s via %s/%s", key, self.provider.name, winner.name)
            return LinkResolution(
                status=ResolutionStatus.FOUND,
                provider=self.provider.name,
                url=options.decorate(winner.url),
                strategy=winner.name,
                attempts=outcomes,
            )

        first_error = next((outcome for outcome in outcomes if outcome.status is AttemptStatus.ERROR), None)
        if first_error is not None:
            result = CachedResolution(ResolutionStatus.FAILED, strategy=first_error.name, error=first_error.error)
            logger.warning("Link resolution for %s failed: %s", key, first_error.error)
        else:
            result = CachedResolution(ResolutionStatus.NOT_FOUND)
        self.failure_cache.set(key, result)
        return LinkResolution(
            status=result.status,
            provider=self.provider.name,
            strategy=result.strategy,
            error=result.error,
            attempts=outcomes,
        )
