"""
Error taxonomy shared by the service and HTTP layers.

Each class carries the HTTP status and the short machine-readable code
used in JSON error bodies, so `main.py` maps every error the same way.
Conflicts are deliberately absent: they are result data, not errors.
"""

from typing import Dict, Optional


class SyncError(Exception):
    status_code = 500
    code = "internal_error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(SyncError, ValueError):
    """Malformed or out-of-range input. Never retried automatically."""

    status_code = 400
    code = "validation_error"

    def __init__(self, message: str, fields: Optional[Dict[str, str]] = None):
        super().__init__(message)
        self.fields = fields or {}


class UnauthorizedError(SyncError):
    status_code = 401
    code = "unauthorized"

    def __init__(self, message: str = "Unauthorized"):
        super().__init__(message)


class NotFoundError(SyncError, LookupError):
    """Ownership or identity could not be confirmed. Permanent."""

    status_code = 404
    code = "not_found"


class DatabaseError(SyncError):
    """Wraps a store failure. Safe to retry the whole call."""

    status_code = 500
    code = "database_error"


class RateLimitError(SyncError):
    status_code = 429
    code = "rate_limit_exceeded"

    def __init__(
        self,
        retry_after: int,
        limit: int = 0,
        window: float = 0,
        message: str = "Rate limit exceeded",
    ):
        super().__init__(message)
        self.retry_after = retry_after
        self.limit = limit
        self.window = window
