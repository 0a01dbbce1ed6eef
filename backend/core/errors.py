"""
Error taxonomy for the inventory analysis engine.

Every failure the orchestrator API (or the transport underneath it) can
produce is represented by one `InventoryApiError`. Components above the
transport never let it escape; they classify it by `kind` and turn it into
a result value or view state.
"""

from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    """How the caller should react to a failure."""

    NOT_FOUND = "not_found"  # valid empty state, no retry affordance
    VALIDATION = "validation"  # user-fixable, never retried
    CONFLICT = "conflict"  # refetch and re-present, never overwrite
    SERVICE_UNAVAILABLE = "service_unavailable"  # halt polling, manual refresh
    TRANSIENT = "transient"  # retry with backoff
    SCHEMA_MISMATCH = "schema_mismatch"  # fail loud
    UNEXPECTED = "unexpected"


_KIND_BY_CODE = {
    "INVENTORY_NOT_FOUND": ErrorKind.NOT_FOUND,
    "CONTAINER_NOT_FOUND": ErrorKind.NOT_FOUND,
    "REVIEW_INVALID": ErrorKind.VALIDATION,
    "VALIDATION_FAILED": ErrorKind.VALIDATION,
    "REVIEW_CONFLICT": ErrorKind.CONFLICT,
    "RERUN_IN_PROGRESS": ErrorKind.CONFLICT,
    "SERVICE_UNAVAILABLE": ErrorKind.SERVICE_UNAVAILABLE,
    "NETWORK_ERROR": ErrorKind.TRANSIENT,
    "TIMEOUT": ErrorKind.TRANSIENT,
    "INTERNAL_ERROR": ErrorKind.TRANSIENT,
    "SCHEMA_MISMATCH": ErrorKind.SCHEMA_MISMATCH,
    "HTML_FALLBACK": ErrorKind.SCHEMA_MISMATCH,
}


ERROR_MESSAGES = {
    "INVENTORY_NOT_FOUND": "No inventory analysis found.",
    "CONTAINER_NOT_FOUND": "The container was not found. It may have been removed.",
    "REVIEW_INVALID": "Review data is invalid. Please check your corrections.",
    "VALIDATION_FAILED": "Invalid input. Please check your data and try again.",
    "REVIEW_CONFLICT": "This analysis has already been reviewed by another operator.",
    "RERUN_IN_PROGRESS": "A re-run is already in progress for this analysis.",
    "SERVICE_UNAVAILABLE": "Inventory analysis is temporarily unavailable. Refresh manually to try again.",
    "NETWORK_ERROR": "Network unavailable. Check your connection.",
    "TIMEOUT": "The orchestrator did not respond in time.",
    "INTERNAL_ERROR": "An internal error occurred. Please try again or contact support.",
    "SCHEMA_MISMATCH": "The orchestrator returned data in an unexpected format.",
    "HTML_FALLBACK": "The API endpoint returned an HTML page instead of data. It may not be registered.",
}

DEFAULT_USER_MESSAGE = "An unexpected error occurred. Please try again."


def get_user_message(code: str) -> str:
    """Operator-facing text for an error code, with a generic fallback."""
    return ERROR_MESSAGES.get(code, DEFAULT_USER_MESSAGE)


class InventoryApiError(Exception):
    """Structured failure from the orchestrator v1 API."""

    def __init__(
        self,
        code: str,
        message: str,
        *,
        retryable: bool = False,
        retry_after_seconds: float | None = None,
        http_status: int | None = None,
        request_id: str | None = None,
        details: list[str] | None = None,
    ):
        super().__init__(message)
        self.code = code
        self.message = message
        self.retryable = retryable
        self.retry_after_seconds = retry_after_seconds
        self.http_status = http_status
        self.request_id = request_id
        self.details = list(details or [])

    @property
    def kind(self) -> ErrorKind:
        return _KIND_BY_CODE.get(self.code, ErrorKind.UNEXPECTED)

    @property
    def user_message(self) -> str:
        return get_user_message(self.code)

    def to_dict(self) -> dict:
        return {
            "code": self.code,
            "kind": self.kind.value,
            "message": self.message,
            "retryable": self.retryable,
            "retry_after_seconds": self.retry_after_seconds,
            "http_status": self.http_status,
            "request_id": self.request_id,
            "details": self.details,
        }

    def __repr__(self) -> str:
        return f"InventoryApiError(code={self.code!r}, message={self.message!r}, http_status={self.http_status!r})"
