from __future__ import annotations

import asyncio
import logging
from typing import Any

from redis import Redis
from rq import Queue
from rq.job import Job

from kinoindex.core.config import settings
from kinoindex.db.session import async_session
from kinoindex.models.catalog import SyncMode
from kinoindex.services.catalog_core import get_core

logger = logging.getLogger("kinoindex.jobs.sync")

SYNC_QUEUE = "sync"


def run_catalog_sync_job(
    *,
    provider: str,
    mode: str = SyncMode.RECENT.value,
    page_size: int = 100,
    max_pages: int = 1,
    reset: bool = False,
) -> dict[str, Any]:
    """RQ-friendly catalog sync hook."""

    async def _run() -> dict[str, Any]:
        async with async_session() as session:
            summary = await get_core().sync_catalog(
                session,
                provider,
                mode=mode,
                page_size=page_size,
                max_pages=max_pages,
                reset=reset,
            )
            return summary.as_dict()

    summary = asyncio.run(_run())
    logger.info(
        "Catalog sync job complete for %s/%s (%s upserted, done=%s)",
        provider,
        mode,
        summary["upserted"],
        summary["done"],
    )
    return summary


def enqueue_catalog_sync(
    *,
    provider: str,
    mode: str = SyncMode.RECENT.value,
    page_size: int = 100,
    max_pages: int = 1,
    reset: bool = False,
    connection: Redis | None = None,
) -> Job:
    """Queue a catalog sync on the worker's sync queue."""
    queue = Queue(SYNC_QUEUE, connection=connection or Redis.from_url(settings.redis_url))
    job = queue.enqueue(
        run_catalog_sync_job,
        provider=provider,
        mode=mode,
        page_size=page_size,
        max_pages=max_pages,
        reset=reset,
        job_timeout=60 * 30,
    )
    logger.info("Enqueued catalog sync %s for %s/%s", job.id, provider, mode)
    return job
