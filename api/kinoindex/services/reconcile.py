"""Coalesce/union merge rules for partial catalog records.

Invariants:
- Scalar fields keep the first non-null value, preferring ``existing``.
- ``genres`` and ``countries`` are unioned, so merging is commutative and
  associative on them.
- ``provider``/``video_id`` identify the record and must match; ``kind`` is
  fixed once a record exists and never changes on merge.
- ``merge(x, x) == x``.
"""

from __future__ import annotations

import logging
from dataclasses import fields, replace
from typing import Iterable

from kinoindex.upstream.base import IDENTITY_FIELDS, SET_FIELDS, CatalogRecord

logger = logging.getLogger("kinoindex.services.reconcile")

_IMMUTABLE_FIELDS = (*IDENTITY_FIELDS, "kind")
_SCALAR_FIELDS = tuple(
    f.name for f in fields(CatalogRecord) if f.name not in _IMMUTABLE_FIELDS and f.name not in SET_FIELDS
)


def merge(existing: CatalogRecord, incoming: CatalogRecord) -> CatalogRecord:
    """Fold ``incoming`` into ``existing`` without ever regressing a value to null."""
    if existing.identity != incoming.identity:
        raise ValueError(f"Cannot merge records with different identities: {existing.identity} != {incoming.identity}")
    if existing.kind != incoming.kind:
        logger.debug(
            "Ignoring kind change for %s/%s: %s -> %s",
            existing.provider,
            existing.video_id,
            existing.kind.value,
            incoming.kind.value,
        )
    changes: dict[str, object] = {}
    for name in _SCALAR_FIELDS:
        if getattr(existing, name) is None:
            value = getattr(incoming, name)
            if value is not None:
                changes[name] = value
    for name in SET_FIELDS:
        union = getattr(existing, name) | getattr(incoming, name)
        if union != getattr(existing, name):
            changes[name] = union
    if not changes:
        return existing
    return replace(existing, **changes)


def dedupe_batch(records: Iterable[CatalogRecord]) -> list[CatalogRecord]:
    """Reconcile records sharing an identity within one batch, keeping first-seen order."""
    merged: dict[tuple[str, int], CatalogRecord] = {}
    for record in records:
        current = merged.get(record.identity)
        merged[record.identity] = record if current is None else merge(current, record)
    return list(merged.values())
