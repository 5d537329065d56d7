"""
Error taxonomy shared by the cache, the realtime channel and mutation workflows.

- ValidationError: bad input, recoverable, reported per field
- NotFoundError: stale reference to a deleted product or branch
- NetworkError: fetch failed; callers may retry, cache serves last-good data
- AuthorizationError: role mismatch; fatal for the current view, never retried
- ConflictError: duplicate idempotency key; the original result is attached
  and callers treat it as success
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any


class IssueCode(Enum):
    PRODUCT_NOT_FOUND = "product_not_found"
    QUANTITY_OUT_OF_RANGE = "quantity_out_of_range"
    MISSING_REASON = "missing_reason"
    EMPTY_REQUEST = "empty_request"
    INVALID = "invalid"


@dataclass(frozen=True)
class LineIssue:
    """A single problem with one line (or the whole request when index is None)."""

    code: IssueCode
    field: str
    message: str
    index: int | None = None


class DashboardError(Exception):
    """Base class for errors surfaced to the presentation layer."""

    retryable = False

    def __init__(self, message: str = "", status: int | None = None):
        super().__init__(message)
        self.message = message
        self.status = status


class ValidationError(DashboardError):
    def __init__(self, message: str = "Invalid data", issues: list[LineIssue] | None = None, status: int | None = None):
        super().__init__(message, status)
        self.issues = list(issues or [])


class NotFoundError(DashboardError):
    pass


class NetworkError(DashboardError):
    retryable = True


class AuthorizationError(DashboardError):
    retryable = False


class ConflictError(DashboardError):
    def __init__(self, message: str = "Duplicate request", result: Any = None, status: int | None = 409):
        super().__init__(message, status)
        self.result = result
