"""
Error taxonomy shared by the ingestion and query paths.

Each error carries the HTTP status the API layer answers with, so routers can
map any `AnalyticsError` to an `HTTPException` in one place.
"""
from __future__ import annotations


class AnalyticsError(Exception):
    code = "internal"
    http_status = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class InvalidArgument(AnalyticsError):
    """Malformed or missing required fields."""

    code = "invalid_argument"
    http_status = 400


class NotFound(AnalyticsError):
    """Unknown tenant or video."""

    code = "not_found"
    http_status = 404


class InvalidState(AnalyticsError):
    """The operation needs data that doesn't exist yet."""

    code = "invalid_state"
    http_status = 409


class ResourceExhausted(AnalyticsError):
    """A raw-event scan would exceed the configured bound."""

    code = "resource_exhausted"
    http_status = 429


class Unavailable(AnalyticsError):
    """Storage or transient failure; safe to retry."""

    code = "unavailable"
    http_status = 503
