# ruff: noqa: D107
"""Base exception classes."""

from typing import Any

from fastapi import HTTPException


class BaseAppException(HTTPException):
    """Base application exception."""

    def __init__(
        self,
        message: str,
        status_code: int = 500,
        error_code: str = "INTERNAL_ERROR",
        details: dict[str, Any] | None = None,
        retry_after_ms: int | None = None,
    ):
        self.message = message
        self.error_code = error_code
        self.details = details or {}
        self.retry_after_ms = retry_after_ms

        super().__init__(
            status_code=status_code,
            detail={
                "message": message,
                "error_code": error_code,
                "details": details,
                "retry_after_ms": retry_after_ms,
            },
        )

    def __str__(self) -> str:
        return self.message


class NotFoundError(BaseAppException):
    """Exception raised when a resource is not found."""

    def __init__(
        self,
        message: str = "Resource not found",
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message=message, status_code=404, error_code="NOT_FOUND", details=details)


class ValidationError(BaseAppException):
    """Exception raised when input validation fails."""

    def __init__(
        self,
        message: str = "Validation failed",
        details: dict[str, Any] | None = None,
    ):
        super().__init__(
            message=message,
            status_code=400,
            error_code="VALIDATION_ERROR",
            details=details,
        )


class ConflictError(BaseAppException):
    """Exception raised when a storage constraint is violated."""

    def __init__(
        self,
        message: str = "Request conflicts with stored data",
        details: dict[str, Any] | None = None,
    ):
        super().__init__(
            message=message,
            status_code=400,
            error_code="CONFLICT",
            details=details,
        )


class StorageUnavailableError(BaseAppException):
    """Exception raised when the database cannot be reached."""

    def __init__(
        self,
        message: str = "Storage is temporarily unavailable",
        retry_after_ms: int | None = None,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(
            message=message,
            status_code=503,
            error_code="STORAGE_UNAVAILABLE",
            details=details,
            retry_after_ms=retry_after_ms,
        )


class RequestAbortedError(BaseAppException):
    """Raised when the client went away; never rendered as a response."""

    def __init__(
        self,
        message: str = "Request aborted by client",
        details: dict[str, Any] | None = None,
    ):
        # 499 is the conventional "client closed request" code; it is only used in logs
        super().__init__(
            message=message,
            status_code=499,
            error_code="ABORTED",
            details=details,
        )
