from __future__ import annotations

from typing import Any

VALIDATION_ERROR = "VALIDATION_ERROR"
CONFLICT = "CONFLICT"
NOT_FOUND = "NOT_FOUND"
INVALID_STATE = "INVALID_STATE"
FORBIDDEN = "FORBIDDEN"
INTERNAL = "INTERNAL"
AUTH_UNAUTHORIZED = "AUTH_UNAUTHORIZED"


class ApiError(Exception):
    def __init__(
        self,
        *,
        code: str,
        message: str,
        error_class: str,
        retryable: bool,
        http_status: int,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.error_class = error_class
        self.retryable = retryable
        self.http_status = http_status
        self.details = details


def validation_error(message: str, *, invalid_ids: list[str] | None = None) -> ApiError:
    details = {"invalid_ids": sorted(invalid_ids)} if invalid_ids else None
    return ApiError(
        code=VALIDATION_ERROR,
        message=message,
        error_class="validation",
        retryable=False,
        http_status=400,
        details=details,
    )


def not_found(message: str) -> ApiError:
    return ApiError(
        code=NOT_FOUND,
        message=message,
        error_class="validation",
        retryable=False,
        http_status=404,
    )


def conflict(message: str) -> ApiError:
    return ApiError(
        code=CONFLICT,
        message=message,
        error_class="business_rule",
        retryable=False,
        http_status=409,
    )


def invalid_state(message: str) -> ApiError:
    return ApiError(
        code=INVALID_STATE,
        message=message,
        error_class="business_rule",
        retryable=False,
        http_status=409,
    )


def forbidden(message: str) -> ApiError:
    return ApiError(
        code=FORBIDDEN,
        message=message,
        error_class="security_sensitive",
        retryable=False,
        http_status=403,
    )


def internal_error(message: str = "internal error") -> ApiError:
    return ApiError(
        code=INTERNAL,
        message=message,
        error_class="internal",
        retryable=True,
        http_status=500,
    )


def unauthorized(message: str) -> ApiError:
    return ApiError(
        code=AUTH_UNAUTHORIZED,
        message=message,
        error_class="security_sensitive",
        retryable=False,
        http_status=401,
    )
