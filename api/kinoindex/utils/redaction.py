"""Redaction helpers applied to upstream URLs and errors before they are logged."""

from __future__ import annotations

import re

_URL_USERINFO_RE = re.compile(r"([a-z][a-z0-9+.-]*://)([^@/\s]+)@", re.IGNORECASE)
# Provider credentials travel as query parameters (token=, api_key=) or bearer headers.
_QUERY_SECRET_RE = re.compile(r"(?i)\b(token|secret|password|api_key|apikey|access_token|key)=([^&\s]+)")
_BEARER_RE = re.compile(r"(?i)(bearer\s+)([A-Za-z0-9._~+/=-]+)")


def redact_secrets(text: str) -> str:
    """Mask credentials embedded in URLs, query strings, and auth headers."""
    if not text:
        return text
    redacted = _URL_USERINFO_RE.sub(r"\1***@", text)
    redacted = _QUERY_SECRET_RE.sub(r"\1=***", redacted)
    return _BEARER_RE.sub(r"\1***", redacted)


def summarize_body(body: str, *, limit: int = 220) -> str:
    """Collapse an upstream error body (often HTML) into a short loggable snippet."""
    stripped = re.sub(r"<[^>]+>", " ", body or "")
    collapsed = re.sub(r"\s+", " ", stripped).strip()
    if len(collapsed) > limit:
        collapsed = f"{collapsed[:limit]}..."
    return redact_secrets(collapsed)
