"""Circuit breaking and per-operation telemetry for upstream providers."""

from __future__ import annotations

import asyncio
import json
import logging
import time
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, DefaultDict, TypeVar

from kinoindex.upstream.http import UpstreamNotFound, UpstreamUnavailable

logger = logging.getLogger("kinoindex.upstream")

T = TypeVar("T")


class CircuitOpenError(UpstreamUnavailable):
    """Raised while a provider circuit is open and calls are blocked."""


@dataclass
class CircuitBreakerState:
    """Per-provider failure streak and cooldown window."""
    threshold: int = 5
    base_backoff_seconds: float = 10.0
    max_backoff_seconds: float = 300.0
    failure_streak: int = 0
    open_until: float = 0.0
    current_backoff: float = field(init=False)
    opened_count: int = 0

    def __post_init__(self) -> None:
        self.current_backoff = self.base_backoff_seconds

    def can_call(self) -> bool:
        return time.monotonic() >= self.open_until

    def remaining_cooldown(self) -> float:
        if self.can_call():
            return 0.0
        return self.open_until - time.monotonic()

    def record_success(self) -> None:
        self.failure_streak = 0
        self.open_until = 0.0
        self.current_backoff = self.base_backoff_seconds

    def record_failure(self) -> None:
        """Count a failure and open the circuit once the streak hits the threshold."""
        self.failure_streak += 1
        if self.failure_streak < self.threshold:
            return
        self.open_until = time.monotonic() + self.current_backoff
        self.failure_streak = 0
        self.opened_count += 1
        self.current_backoff = min(self.current_backoff * 2, self.max_backoff_seconds)

    def snapshot(self) -> dict[str, Any]:
        return {
            "failure_streak": self.failure_streak,
            "remaining_cooldown": round(self.remaining_cooldown(), 3),
            "current_backoff": self.current_backoff,
            "opened_count": self.opened_count,
        }


@dataclass
class OperationMetrics:
    """Aggregated counters for one provider operation."""
    started: int = 0
    succeeded: int = 0
    not_found: int = 0
    failed: int = 0
    skipped: int = 0
    last_latency_ms: float | None = None
    last_error: str | None = None


class UpstreamMonitor:
    """Track upstream latency and outcomes and short-circuit failing providers.

    Only ``UpstreamUnavailable`` failures count towards opening a circuit: a
    rejected request or a clean not-found says nothing about provider health.
    """

    def __init__(
        self,
        *,
        circuit_threshold: int = 5,
        base_backoff_seconds: float = 10.0,
        max_backoff_seconds: float = 300.0,
    ) -> None:
        self._metrics: DefaultDict[str, DefaultDict[str, OperationMetrics]] = defaultdict(
            lambda: defaultdict(OperationMetrics)
        )
        self._circuits: DefaultDict[str, CircuitBreakerState] = defaultdict(
            lambda: CircuitBreakerState(
                threshold=circuit_threshold,
                base_backoff_seconds=base_backoff_seconds,
                max_backoff_seconds=max_backoff_seconds,
            )
        )
        self._lock = asyncio.Lock()

    def allow_call(self, provider: str) -> bool:
        return self._circuits[provider].can_call()

    async def record_skip(
        self,
        provider: str,
        operation: str,
        *,
        reason: str,
        context: dict[str, Any] | None = None,
    ) -> None:
        async with self._lock:
            self._metrics[provider][operation].skipped += 1
            payload = {
                "event": "upstream_skip",
                "provider": provider,
                "operation": operation,
                "reason": reason,
                "context": context or {},
                "circuit": self._circuits[provider].snapshot(),
            }
        logger.warning(json.dumps(payload, default=str))

    async def track(
        self,
        provider: str,
        operation: str,
        func: Callable[[], Awaitable[T]],
        *,
        context: dict[str, Any] | None = None,
    ) -> T:
        """Run an upstream call while recording metrics and circuit state."""
        context = context or {}
        async with self._lock:
            circuit = self._circuits[provider]
            metrics = self._metrics[provider][operation]
            if not circuit.can_call():
                remaining = circuit.remaining_cooldown()
                metrics.skipped += 1
                payload = {
                    "event": "upstream_circuit_open",
                    "provider": provider,
                    "operation": operation,
                    "context": context,
                    "remaining_cooldown": round(remaining, 3),
                }
                logger.warning(json.dumps(payload, default=str))
                raise CircuitOpenError(f"{provider} circuit open for {remaining:.2f}s", provider=provider)
            metrics.started += 1

        start = time.monotonic()
        try:
            result = await func()
        except UpstreamNotFound:
            async with self._lock:
                metrics = self._metrics[provider][operation]
                metrics.not_found += 1
                metrics.last_latency_ms = (time.monotonic() - start) * 1000
            raise
        except Exception as exc:
            latency_ms = (time.monotonic() - start) * 1000
            async with self._lock:
                metrics = self._metrics[provider][operation]
                metrics.failed += 1
                metrics.last_latency_ms = latency_ms
                metrics.last_error = str(exc)
                if isinstance(exc, UpstreamUnavailable):
                    self._circuits[provider].record_failure()
                payload = {
                    "event": "upstream_failure",
                    "provider": provider,
                    "operation": operation,
                    "error": str(exc),
                    "error_type": type(exc).__name__,
                    "latency_ms": round(latency_ms, 2),
                    "context": context,
                    "circuit": self._circuits[provider].snapshot(),
                }
            logger.warning(json.dumps(payload, default=str))
            raise

        latency_ms = (time.monotonic() - start) * 1000
        async with self._lock:
            metrics = self._metrics[provider][operation]
            metrics.succeeded += 1
            metrics.last_latency_ms = latency_ms
            metrics.last_error = None
            self._circuits[provider].record_success()
            payload = {
                "event": "upstream_success",
                "provider": provider,
                "operation": operation,
                "latency_ms": round(latency_ms, 2),
                "context": context,
            }
        logger.debug(json.dumps(payload, default=str))
        return result

    async def snapshot(self) -> dict[str, Any]:
        async with self._lock:
            snap: dict[str, Any] = {}
            for provider, operations in self._metrics.items():
                snap[provider] = {
                    "circuit": self._circuits[provider].snapshot(),
                    "operations": {
                        name: {
                            "started": metrics.started,
                            "succeeded": metrics.succeeded,
                            "not_found": metrics.not_found,
                            "failed": metrics.failed,
                            "skipped": metrics.skipped,
                            "last_latency_ms": metrics.last_latency_ms,
                            "last_error": metrics.last_error,
                        }
                        for name, metrics in operations.items()
                    },
                }
            return snap


async def call_upstream(
    monitor: UpstreamMonitor | None,
    provider: str,
    operation: str,
    func: Callable[[], Awaitable[T]],
    *,
    context: dict[str, Any] | None = None,
) -> T:
    """Run ``func`` through ``monitor`` when one is configured."""
    if monitor is None:
        return await func()
    return await monitor.track(provider, operation, func, context=context)
