from kinoindex.models.catalog import CatalogVideo, SyncCursor, SyncMode, VideoKind

__all__ = [
    "CatalogVideo",
    "SyncCursor",
    "SyncMode",
    "VideoKind",
]
