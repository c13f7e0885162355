"""Coercion helpers for loosely typed upstream JSON payloads."""

from __future__ import annotations

import math
import re
from collections import deque
from typing import Any, Callable, Iterable

from kinoindex.models.catalog import VideoKind

_INT_RE = re.compile(r"-?\d+")
_YEAR_RE = re.compile(r"\d{4}")
_SERIAL_KINDS = {"serial", "series", "tv", "tv-series", "tv_series", "anime-serial", "cartoon-serial", "show"}


def parse_int(raw: Any) -> int | None:
    """Return the first integer found in ``raw`` or None."""
    if isinstance(raw, bool):
        return None
    if isinstance(raw, int):
        return raw
    if isinstance(raw, float):
        return int(raw) if math.isfinite(raw) else None
    if isinstance(raw, str):
        match = _INT_RE.search(raw)
        return int(match.group(0)) if match else None
    return None


def parse_positive_int(raw: Any) -> int | None:
    value = parse_int(raw)
    return value if value is not None and value > 0 else None


def parse_year(raw: Any) -> int | None:
    """Extract a plausible release year (1800-2100 exclusive)."""
    if isinstance(raw, str):
        match = _YEAR_RE.search(raw)
        value = int(match.group(0)) if match else None
    else:
        value = parse_int(raw)
    if value is None:
        return None
    return value if 1800 < value < 2100 else None


def parse_rating(raw: Any) -> float | None:
    """Parse a 0-10 rating; zero and out-of-range values mean unrated."""
    if isinstance(raw, bool) or raw is None:
        return None
    if isinstance(raw, (int, float)):
        value = float(raw)
    elif isinstance(raw, str):
        try:
            value = float(raw.strip().replace(",", "."))
        except ValueError:
            return None
    else:
        return None
    if not math.isfinite(value) or value <= 0 or value > 10:
        return None
    return round(value, 2)


def parse_str(raw: Any) -> str | None:
    if isinstance(raw, (int, float)) and not isinstance(raw, bool):
        return str(raw)
    if not isinstance(raw, str):
        return None
    stripped = raw.strip()
    return stripped or None


def parse_kind(raw: Any, default: VideoKind = VideoKind.MOVIE) -> VideoKind:
    if isinstance(raw, VideoKind):
        return raw
    if isinstance(raw, str) and raw.strip().lower() in _SERIAL_KINDS:
        return VideoKind.SERIAL
    return default


def split_list(raw: Any) -> frozenset[str]:
    """Accept ``"a, b"``, ``["a", "b"]`` or ``[{"name": "a"}]`` and return a clean set."""
    values: Iterable[Any]
    if isinstance(raw, str):
        values = raw.split(",")
    elif isinstance(raw, (list, tuple, set, frozenset)):
        values = raw
    else:
        return frozenset()
    cleaned: set[str] = set()
    for value in values:
        if isinstance(value, dict):
            value = value.get("name") or value.get("title")
        text = parse_str(value)
        if text:
            cleaned.add(text)
    return frozenset(cleaned)


def is_http_url(value: Any) -> bool:
    return isinstance(value, str) and bool(re.match(r"^(https?:)?//", value.strip(), re.IGNORECASE))


def normalize_player_link(raw: str) -> str:
    """Force player links onto https, including protocol-relative ones."""
    link = raw.strip()
    if link.startswith("//"):
        return f"https:{link}"
    return re.sub(r"^http://", "https://", link, flags=re.IGNORECASE)


def find_first_leaf(
    tree: Any,
    predicate: Callable[[Any], bool],
    *,
    keys: Iterable[str] | None = None,
    max_depth: int = 4,
) -> Any | None:
    """Breadth-first search for the first scalar leaf accepted by ``predicate``.

    When ``keys`` is given only leaves stored under one of those keys qualify,
    and the keys are tried in the given order within each mapping. Containers
    deeper than ``max_depth`` are not descended into.
    """
    wanted = list(keys) if keys is not None else None
    queue: deque[tuple[Any, int]] = deque([(tree, 0)])
    while queue:
        node, depth = queue.popleft()
        if isinstance(node, dict):
            if wanted is not None:
                for key in wanted:
                    value = node.get(key)
                    if not isinstance(value, (dict, list)) and value is not None and predicate(value):
                        return value
                children = list(node.values())
            else:
                children = list(node.values())
                for value in children:
                    if not isinstance(value, (dict, list)) and value is not None and predicate(value):
                        return value
        elif isinstance(node, list):
            children = node
            if wanted is None:
                for value in children:
                    if not isinstance(value, (dict, list)) and value is not None and predicate(value):
                        return value
        else:
            if depth == 0 and wanted is None and node is not None and predicate(node):
                return node
            continue
        if depth >= max_depth:
            continue
        for child in children:
            if isinstance(child, (dict, list)):
                queue.append((child, depth + 1))
    return None
