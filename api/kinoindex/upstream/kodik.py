from __future__ import annotations

import re
from typing import Any

from kinoindex.core.config import settings
from kinoindex.upstream.base import BaseProvider, LinkIdentifiers, LookupAttempt
from kinoindex.upstream.http import UpstreamRejected, fetch_json
from kinoindex.upstream.payload import normalize_player_link, parse_str

_CAMRIP_RE = re.compile(r"(cam|\bts\b|telesync|\btc\b|telecine)")
_RESOLUTION_RE = re.compile(r"(\d{3,4})\s*p")
_KNOWN_RESOLUTION_RE = re.compile(r"\b(360|480|540|576|720|1080|1440|2160)\b")


def quality_score(raw: Any) -> int:
    """Rank a free-form quality label; camrips sink below unknown labels."""
    label = str(raw).lower() if raw is not None else ""
    if not label:
        return 0
    if _CAMRIP_RE.search(label):
        return -10
    if "4k" in label or "2160" in label:
        return 2160
    match = _RESOLUTION_RE.search(label) or _KNOWN_RESOLUTION_RE.search(label)
    if match:
        return int(match.group(1))
    return 1


def translation_score(raw: Any) -> int:
    if not isinstance(raw, dict):
        return 0
    kind = raw.get("type")
    if kind == "voice":
        return 2
    if kind == "subtitles":
        return 1
    return 0


class KodikProvider(BaseProvider):
    """Kodik player search; used only for link resolution."""

    name = "kodik"
    catalog_name = "kodik"

    def __init__(self, token: str | None = None, api_base: str | None = None) -> None:
        self.token = token or settings.kodik_token
        self.api_base = (api_base or settings.kodik_api_base).rstrip("/")

    def resolution_attempts(self, identifiers: LinkIdentifiers) -> list[LookupAttempt]:
        year = (("year", str(identifiers.year)),) if identifiers.year else ()
        attempts: list[LookupAttempt] = []
        if identifiers.kp_id is not None:
            attempts.append(LookupAttempt("kinopoisk_id", (("kinopoisk_id", str(identifiers.kp_id)),) + year))
        if identifiers.imdb_id:
            attempts.append(LookupAttempt("imdb_id", (("imdb_id", identifiers.imdb_id),) + year))
        if identifiers.title:
            attempts.append(LookupAttempt("title", (("title", identifiers.title),) + year))
        return attempts

    async def lookup_link(self, attempt: LookupAttempt) -> str | None:
        if not self.token:
            raise UpstreamRejected("KODIK_TOKEN is not set", provider=self.name)
        params = {
            "token": self.token,
            "limit": 50,
            "camrip": "false",
            "prioritize_translation_type": "voice",
            **dict(attempt.params),
        }
        payload = await fetch_json(f"{self.api_base}/search", provider=self.name, params=params)
        results = payload.get("results") if isinstance(payload, dict) else None
        if not isinstance(results, list):
            return None
        best: tuple[int, str] | None = None
        for item in results:
            if not isinstance(item, dict):
                continue
            link = parse_str(item.get("link"))
            if not link:
                continue
            score = translation_score(item.get("translation")) * 10_000 + quality_score(item.get("quality"))
            if best is None or score > best[0]:
                best = (score, normalize_player_link(link))
        return best[1] if best else None
