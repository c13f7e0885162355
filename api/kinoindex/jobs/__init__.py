from .sync import enqueue_catalog_sync, run_catalog_sync_job

__all__ = [
    "enqueue_catalog_sync",
    "run_catalog_sync_job",
]
