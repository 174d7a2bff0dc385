"""Typed error hierarchy for the E2B Python client."""

from __future__ import annotations

from typing import Literal

ErrorCode = Literal[
    "api_error",
    "unauthorized",
    "not_found",
    "invalid_state",
    "rate_limited",
    "timeout",
    "connection_error",
    "validation_error",
    "unsupported_template",
]


class E2BError(Exception):
    """Base error for all E2B client errors."""

    def __init__(self, *, code: ErrorCode, message: str, status: int = 0) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.status = status


class ApiError(E2BError):
    """The remote API rejected the request.

    ``status`` and ``message`` are the server's, unmodified.
    """

    def __init__(
        self, *, status: int, message: str, code: ErrorCode = "api_error"
    ) -> None:
        super().__init__(code=code, message=message, status=status)

    def __str__(self) -> str:
        return f"API error ({self.status}): {self.message}"


class NotFoundError(ApiError):
    """Sandbox, process or path no longer exists (HTTP 404)."""

    def __init__(self, *, message: str, resource: str = "") -> None:
        super().__init__(status=404, message=message, code="not_found")
        self.resource = resource


class AuthenticationError(ApiError):
    """Missing or invalid API key (HTTP 401)."""

    def __init__(self, *, message: str) -> None:
        super().__init__(status=401, message=message, code="unauthorized")


class RateLimitError(ApiError):
    """Rate limited (HTTP 429)."""

    def __init__(self, *, message: str, retry_after: float = 1.0) -> None:
        super().__init__(status=429, message=message, code="rate_limited")
        self.retry_after = retry_after


class InvalidStateError(ApiError):
    """Operation not valid for the sandbox's current lifecycle state."""

    def __init__(self, *, message: str, status: int = 409) -> None:
        super().__init__(status=status, message=message, code="invalid_state")


class TimeoutError(E2BError):
    """A client-side deadline elapsed before the operation finished.

    The remote side is not cancelled: a command or code execution may keep
    running until its own limits apply.
    """

    def __init__(self, *, message: str, timeout: float | None = None) -> None:
        super().__init__(code="timeout", message=message)
        self.timeout = timeout


class ConnectionError(E2BError):
    """Network-level failure, could not reach the server."""

    def __init__(self, *, message: str, cause: Exception | None = None) -> None:
        super().__init__(code="connection_error", message=message)
        self.__cause__ = cause


class ValidationError(E2BError):
    """Malformed caller input, detected before any request is made."""

    def __init__(self, *, message: str) -> None:
        super().__init__(code="validation_error", message=message)


class UnsupportedTemplateError(E2BError):
    """The sandbox template cannot dispatch code by language."""

    def __init__(self, *, message: str, template_id: str) -> None:
        super().__init__(code="unsupported_template", message=message)
        self.template_id = template_id
