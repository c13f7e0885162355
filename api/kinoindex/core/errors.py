"""Caller-facing errors raised by the aggregation core."""

from __future__ import annotations


class InvalidRequestError(ValueError):
    """Raised when a caller omits or malforms a required parameter."""

    def __init__(self, message: str, *, field: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.field = field
