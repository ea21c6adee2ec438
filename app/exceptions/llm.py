# ruff: noqa: D107
"""Completion provider exceptions."""

from typing import Any

from .base import BaseAppException


class ProviderError(BaseAppException):
    """Base exception for completion provider failures; terminal, not retried."""

    def __init__(
        self,
        message: str = "Completion provider failed",
        status_code: int = 500,
        error_code: str = "PROVIDER_ERROR",
        details: dict[str, Any] | None = None,
        retry_after_ms: int | None = None,
    ):
        super().__init__(
            message,
            status_code=status_code,
            error_code=error_code,
            details=details,
            retry_after_ms=retry_after_ms,
        )


class UpstreamServerError(ProviderError):
    """The provider reported an internal fault. Retried by the retry policy."""

    def __init__(
        self,
        message: str = "Completion provider reported an internal error",
        retry_after_ms: int | None = None,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(
            message,
            status_code=500,
            error_code="UPSTREAM_SERVER_ERROR",
            details=details,
            retry_after_ms=retry_after_ms,
        )


class ProviderTimeoutError(ProviderError):
    """The provider call exceeded its deadline."""

    def __init__(
        self,
        message: str = "Completion provider timed out",
        retry_after_ms: int | None = None,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(
            message,
            status_code=504,
            error_code="PROVIDER_TIMEOUT",
            details=details,
            retry_after_ms=retry_after_ms,
        )


class ProviderUnavailableError(ProviderError):
    """The provider could not be reached or is not ready to serve."""

    def __init__(
        self,
        message: str = "Completion provider is unavailable",
        retry_after_ms: int | None = None,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(
            message,
            status_code=503,
            error_code="PROVIDER_UNAVAILABLE",
            details=details,
            retry_after_ms=retry_after_ms,
        )


class ProviderConfigurationError(ProviderError):
    """The provider selector or its settings are invalid. Fatal at startup."""

    def __init__(
        self,
        message: str = "Completion provider is not properly configured",
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message, status_code=500, error_code="PROVIDER_CONFIGURATION_ERROR", details=details)


# Error kinds that the client may retry after a back-off
RETRYABLE_ERRORS = (UpstreamServerError, ProviderTimeoutError, ProviderUnavailableError)
