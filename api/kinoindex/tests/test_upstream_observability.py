from __future__ import annotations

import asyncio

import pytest

from kinoindex.upstream.http import UpstreamNotFound, UpstreamRejected, UpstreamUnavailable
from kinoindex.upstream.observability import CircuitOpenError, UpstreamMonitor, call_upstream


@pytest.mark.asyncio
async def test_upstream_monitor_opens_circuit_after_repeated_failures() -> None:
    monitor = UpstreamMonitor(circuit_threshold=2, base_backoff_seconds=0.01, max_backoff_seconds=0.02)

    async def failing_call() -> None:
        raise UpstreamUnavailable("boom", provider="vibix")

    with pytest.raises(UpstreamUnavailable):
        await monitor.track("vibix", "search", failing_call)
    with pytest.raises(UpstreamUnavailable):
        await monitor.track("vibix", "search", failing_call)

    assert monitor.allow_call("vibix") is False
    with pytest.raises(CircuitOpenError):
        await monitor.track("vibix", "search", failing_call)

    snapshot = await monitor.snapshot()
    assert snapshot["vibix"]["circuit"]["opened_count"] >= 1
    assert snapshot["vibix"]["operations"]["search"]["failed"] == 2

    await monitor.record_skip("vibix", "search", reason="circuit_open", context={"query": "дюна"})
    updated = await monitor.snapshot()
    assert updated["vibix"]["operations"]["search"]["skipped"] >= 2


@pytest.mark.asyncio
async def test_upstream_monitor_recovers_after_cooldown_and_success() -> None:
    monitor = UpstreamMonitor(circuit_threshold=1, base_backoff_seconds=0.01, max_backoff_seconds=0.02)

    async def failing_call() -> None:
        raise UpstreamUnavailable("boom", provider="flixcdn")

    with pytest.raises(UpstreamUnavailable):
        await monitor.track("flixcdn", "updates", failing_call)

    assert monitor.allow_call("flixcdn") is False
    await asyncio.sleep(0.02)

    async def ok_call() -> str:
        return "ok"

    assert await monitor.track("flixcdn", "updates", ok_call, context={"cursor": 0}) == "ok"
    snapshot = await monitor.snapshot()
    assert snapshot["flixcdn"]["operations"]["updates"]["succeeded"] == 1
    assert snapshot["flixcdn"]["circuit"]["failure_streak"] == 0


@pytest.mark.asyncio
async def test_not_found_and_rejections_do_not_open_circuit() -> None:
    monitor = UpstreamMonitor(circuit_threshold=1, base_backoff_seconds=10, max_backoff_seconds=10)

    async def missing() -> None:
        raise UpstreamNotFound("gone", provider="kodik", status_code=404)

    async def rejected() -> None:
        raise UpstreamRejected("bad token", provider="kodik", status_code=403)

    with pytest.raises(UpstreamNotFound):
        await monitor.track("kodik", "resolve", missing)
    with pytest.raises(UpstreamRejected):
        await monitor.track("kodik", "resolve", rejected)

    assert monitor.allow_call("kodik") is True
    snapshot = await monitor.snapshot()
    assert snapshot["kodik"]["operations"]["resolve"]["not_found"] == 1
    assert snapshot["kodik"]["operations"]["resolve"]["failed"] == 1


@pytest.mark.asyncio
async def test_call_upstream_without_monitor_runs_directly() -> None:
    async def ok_call() -> int:
        return 7

    assert await call_upstream(None, "vibix", "details", ok_call) == 7
