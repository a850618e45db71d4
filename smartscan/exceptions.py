"""Error taxonomy for SmartScan.

Every failure a caller can observe is one of these. The server maps them
onto HTTP status codes; the CLI prints the message.
"""

from __future__ import annotations


class SmartScanError(Exception):
    """Base exception for all SmartScan errors."""

    status_code = 500
    kind = "server_error"

    def __init__(self, message: str = ""):
        super().__init__(message)
        self.message = message or self.__class__.__doc__ or ""


class ValidationError(SmartScanError):
    """Missing or malformed input. Raised before any write happens."""

    status_code = 400
    kind = "validation_error"


class AuthError(SmartScanError):
    """The request carries no valid identity."""

    status_code = 401
    kind = "unauthenticated"


class ForbiddenError(SmartScanError):
    """Authenticated, but the role lacks the required permission."""

    status_code = 403
    kind = "forbidden"


class NotFoundError(SmartScanError):
    """The resource does not exist or is not visible to the actor."""

    status_code = 404
    kind = "not_found"


class ConflictError(SmartScanError):
    """A unique key is already taken."""

    status_code = 409
    kind = "conflict"


class OCRFailure(SmartScanError):
    """Text recognition failed for a single file.

    Absorbed by the ingestion pipeline; never surfaced as a request failure.
    """

    kind = "ocr_failure"

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class StoreFailure(SmartScanError):
    """The relational store or blob store failed; the operation was aborted."""

    status_code = 503
    kind = "store_failure"


class ConfigurationError(SmartScanError):
    """Static configuration is inconsistent (detected at startup)."""

    kind = "configuration_error"
