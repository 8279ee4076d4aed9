"""Application error taxonomy.

Every failure that crosses a component boundary is an ``AppError`` carrying a
stable, snake_case ``code`` and the HTTP-style status that code maps to.
Validation errors are raised immediately; upstream failures (sandbox,
tools, GitHub, model gateway) become ``bad_gateway`` or ``upstream_timeout``.
"""

from __future__ import annotations

import enum
from typing import Any


class ErrorCode(str, enum.Enum):
    """Stable error codes, safe for logs, URLs and UIs."""

    BAD_REQUEST = "bad_request"
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    ENV_INVALID = "env_invalid"
    BAD_GATEWAY = "bad_gateway"
    UPSTREAM_TIMEOUT = "upstream_timeout"
    ABORTED = "aborted"
    DB_NOT_MIGRATED = "db_not_migrated"
    INTERNAL = "internal"


STATUS_BY_CODE: dict[ErrorCode, int] = {
    ErrorCode.BAD_REQUEST: 400,
    ErrorCode.NOT_FOUND: 404,
    ErrorCode.CONFLICT: 409,
    ErrorCode.ENV_INVALID: 500,
    ErrorCode.BAD_GATEWAY: 502,
    ErrorCode.UPSTREAM_TIMEOUT: 504,
    ErrorCode.ABORTED: 499,
    ErrorCode.DB_NOT_MIGRATED: 500,
    ErrorCode.INTERNAL: 500,
}


class AppError(Exception):
    """A structured application error.

    Args:
        code: Stable error code.
        message: Short user-facing message.
        status: HTTP status; derived from ``code`` when omitted.
        cause: Underlying error (kept for logs, not exposed to callers).
    """

    def __init__(
        self,
        code: ErrorCode | str,
        message: str,
        *,
        status: int | None = None,
        cause: BaseException | None = None,
    ):
        super().__init__(message)
        self.code = ErrorCode(code)
        self.status = status if status is not None else STATUS_BY_CODE[self.code]
        self.message = message
        self.cause = cause
        if cause is not None:
            self.__cause__ = cause

    def __repr__(self) -> str:
        return f"AppError({self.code.value!r}, {self.status}, {self.message!r})"

    def to_payload(self) -> dict[str, Any]:
        return {"code": self.code.value, "status": self.status, "message": self.message}


def is_app_error(value: object, code: ErrorCode | str | None = None) -> bool:
    """Whether ``value`` is an AppError (optionally with a specific code)."""
    if not isinstance(value, AppError):
        return False
    return code is None or value.code == ErrorCode(code)


def to_error_payload(err: BaseException) -> dict[str, Any]:
    """JSON-safe error payload for step records and stream events.

    Non-AppError exceptions are reported as ``internal`` with their type name
    only, so raw messages (which may carry secrets) are not persisted.
    """
    if isinstance(err, AppError):
        return err.to_payload()
    return {
        "code": ErrorCode.INTERNAL.value,
        "status": STATUS_BY_CODE[ErrorCode.INTERNAL],
        "message": f"Unexpected error ({type(err).__name__}).",
    }
