from __future__ import annotations

import logging
from types import TracebackType

from redis import Redis
from rq import Queue, Worker
from rq.job import Job

from kinoindex.core.config import settings
from kinoindex.jobs.sync import SYNC_QUEUE
from kinoindex.services.sync_service import SyncAbortedError

WORKER_LOG_FORMAT = "%(asctime)s %(name)s [%(levelname)s] %(message)s"

logger = logging.getLogger("kinoindex.worker")


def _configure_logging() -> None:
    logging.basicConfig(level=settings.log_level, format=WORKER_LOG_FORMAT, force=True)


def _queue_names() -> list[str]:
    names = list(settings.worker_queue_names)
    if SYNC_QUEUE not in names:
        names.append(SYNC_QUEUE)
    return names


def log_aborted_sync(
    job: Job, exc_type: type[BaseException], exc_value: BaseException, traceback: TracebackType | None
) -> bool:
    """Record how far an aborted sync got; other failures fall through to rq's default handling."""
    if isinstance(exc_value, SyncAbortedError):
        summary = exc_value.summary
        logger.warning(
            "Sync job %s aborted for %s/%s after %s pages (%s upserted); cursor stays at %s",
            job.id,
            summary.provider,
            summary.mode,
            summary.pages,
            summary.upserted,
            summary.next_cursor,
        )
    return True


def build_worker(connection: Redis) -> Worker:
    queues = [Queue(name, connection=connection) for name in _queue_names()]
    return Worker(
        queues,
        connection=connection,
        name="kinoindex-worker",
        exception_handlers=[log_aborted_sync],
    )


def main() -> None:
    _configure_logging()
    redis_connection = Redis.from_url(settings.redis_url)
    worker = build_worker(redis_connection)
    logger.info("Starting catalog worker for queues: %s", ", ".join(_queue_names()))
    try:
        worker.work()
    except KeyboardInterrupt:
        logger.info("Worker shutdown requested")


if __name__ == "__main__":
    main()
