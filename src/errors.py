"""Error taxonomy for the redirect, attribution and reporting paths.

API handlers in ``src.api.main`` map each class to an HTTP status; the
redirect path catches everything and degrades instead.
"""
from __future__ import annotations

from typing import Optional


class LinkVaultError(Exception):
    """Base class for all domain errors."""

    status_code = 500
    error_code = "internal_error"

    def __init__(self, message: str = ""):
        super().__init__(message)
        self.message = message or self.__class__.__name__


class NotFoundError(LinkVaultError):
    """Missing or inactive link, product, click or conversion."""

    status_code = 404
    error_code = "not_found"


class ValidationError(LinkVaultError):
    """Malformed rotation config, out-of-range weights, bad transitions."""

    status_code = 400
    error_code = "validation_error"

    def __init__(self, message: str, field: Optional[str] = None, details: Optional[list[dict]] = None):
        super().__init__(message)
        if details is None:
            details = [{"field": field or "unknown", "message": message}]
        self.details = details


class UpstreamTimeout(LinkVaultError):
    """An outbound probe or fetch exceeded its time budget."""

    status_code = 504
    error_code = "upstream_timeout"


class PersistenceFailure(LinkVaultError):
    """A write to the event store failed."""

    status_code = 500
    error_code = "persistence_failure"


class DuplicateConversion(LinkVaultError):
    """The same external order id was submitted twice."""

    status_code = 409
    error_code = "duplicate_conversion"

    def __init__(self, message: str, conversion_id: Optional[str] = None):
        super().__init__(message)
        self.conversion_id = conversion_id
