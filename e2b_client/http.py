"""Internal async HTTP client with retry, backoff and error parsing."""

from __future__ import annotations

import asyncio
import json
import logging
import random
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

import httpx

from .errors import (
    ApiError,
    AuthenticationError,
    ConnectionError,
    E2BError,
    InvalidStateError,
    NotFoundError,
    RateLimitError,
    TimeoutError,
)

logger = logging.getLogger(__name__)

MAX_RATE_LIMIT_WAIT_S = 60.0

# Connect protocol error codes and the HTTP status each one corresponds to.
CONNECT_CODE_STATUS = {
    "canceled": 499,
    "unknown": 500,
    "invalid_argument": 400,
    "deadline_exceeded": 504,
    "not_found": 404,
    "already_exists": 409,
    "permission_denied": 403,
    "resource_exhausted": 429,
    "failed_precondition": 412,
    "aborted": 409,
    "out_of_range": 400,
    "unimplemented": 501,
    "internal": 500,
    "unavailable": 503,
    "data_loss": 500,
    "unauthenticated": 401,
}


def _backoff_delay(attempt: int) -> float:
    """Exponential backoff with jitter."""
    base = min(0.5 * (2**attempt), 10.0)
    jitter = random.random() * base * 0.5  # noqa: S311
    return base + jitter


class HttpClient:
    """Internal HTTP client shared by a client and its sandboxes."""

    def __init__(
        self,
        *,
        base_url: str,
        headers: dict[str, str] | None = None,
        timeout: float,
        retries: int,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._retries = retries
        self._client = httpx.AsyncClient(
            base_url=self._base_url,
            headers=headers,
            timeout=httpx.Timeout(timeout),
            transport=transport,
        )

    @property
    def base_url(self) -> str:
        return self._base_url

    async def close(self) -> None:
        await self._client.aclose()

    async def request(
        self,
        method: str,
        path: str,
        *,
        body: Any | None = None,
        query: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
        timeout: float | None = None,
        retry: bool = True,
    ) -> Any:
        """Make a JSON API request with retry logic.

        With ``retry=False`` the request is repeated only when the connection
        could not be established, so a request the server may have acted on
        is never sent twice.
        """
        merged_headers = {"Accept": "application/json"}
        if body is not None:
            merged_headers["Content-Type"] = "application/json"
        if headers:
            merged_headers.update(headers)

        response = await self._send(
            method,
            path,
            headers=merged_headers,
            json=body,
            params=_build_params(query) if query else None,
            timeout=timeout,
            retry=retry,
        )
        if response.status_code == 204 or not response.content:
            return None
        return response.json()

    async def request_raw(
        self,
        method: str,
        path: str,
        *,
        query: dict[str, Any] | None = None,
        content: bytes | str | None = None,
        files: Any | None = None,
        headers: dict[str, str] | None = None,
        timeout: float | None = None,
    ) -> httpx.Response:
        """Make a request and return the ``httpx.Response`` directly."""
        return await self._send(
            method,
            path,
            headers=headers,
            content=content,
            files=files,
            params=_build_params(query) if query else None,
            timeout=timeout,
        )

    @asynccontextmanager
    async def stream(
        self,
        method: str,
        path: str,
        *,
        content: bytes | None = None,
        json_body: Any | None = None,
        query: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
    ) -> AsyncIterator[httpx.Response]:
        """Open a streaming response, closed on every exit path.

        Streams are not retried and have no read deadline; callers bound
        them with ``asyncio.wait_for`` or by closing them.
        """
        request = self._client.build_request(
            method,
            path,
            headers=headers,
            content=content,
            json=json_body,
            params=_build_params(query) if query else None,
            timeout=httpx.Timeout(self._timeout, read=None),
        )
        logger.debug("Opening stream %s %s", method, request.url)

        try:
            response = await self._client.send(request, stream=True)
        except httpx.TimeoutException as exc:
            raise TimeoutError(
                message=f"Request timed out after {self._timeout}s",
                timeout=self._timeout,
            ) from exc
        except (httpx.NetworkError, httpx.RemoteProtocolError, OSError) as exc:
            raise ConnectionError(
                message=str(exc) or "Network request failed", cause=exc
            ) from exc

        try:
            if not response.is_success:
                await response.aread()
                raise _error_from_response(response)
            yield response
        except httpx.TimeoutException as exc:
            raise TimeoutError(message="Stream read timed out") from exc
        except (httpx.NetworkError, httpx.RemoteProtocolError) as exc:
            raise ConnectionError(
                message=str(exc) or "Stream interrupted", cause=exc
            ) from exc
        finally:
            await response.aclose()
            logger.debug("Closed stream %s %s", method, request.url)

    async def _send(
        self,
        method: str,
        path: str,
        *,
        timeout: float | None = None,
        retry: bool = True,
        **kwargs: Any,
    ) -> httpx.Response:
        effective_timeout = timeout if timeout is not None else self._timeout
        last_error: Exception | None = None

        for attempt in range(self._retries + 1):
            if attempt > 0 and last_error is not None:
                if isinstance(last_error, RateLimitError):
                    delay = min(last_error.retry_after, MAX_RATE_LIMIT_WAIT_S)
                else:
                    delay = _backoff_delay(attempt - 1)
                logger.warning(
                    "Retrying %s %s in %.2fs (attempt %d/%d): %s",
                    method,
                    path,
                    delay,
                    attempt,
                    self._retries,
                    last_error,
                )
                await asyncio.sleep(delay)

            try:
                logger.debug("%s %s", method, path)
                response = await self._client.request(
                    method, path, timeout=effective_timeout, **kwargs
                )

                if response.is_success:
                    return response

                error = _error_from_response(response)
                retryable = isinstance(error, RateLimitError) or (
                    retry and response.status_code >= 500
                )
                if retryable and attempt < self._retries:
                    last_error = error
                    continue
                raise error

            except httpx.TimeoutException as exc:
                if attempt < self._retries and _may_retry(exc, retry):
                    last_error = exc
                    continue
                raise TimeoutError(
                    message=f"Request timed out after {effective_timeout}s",
                    timeout=effective_timeout,
                ) from exc

            except (httpx.NetworkError, httpx.RemoteProtocolError, OSError) as exc:
                if attempt < self._retries and _may_retry(exc, retry):
                    last_error = exc
                    continue
                raise ConnectionError(
                    message=str(exc) or "Network request failed",
                    cause=exc,
                ) from exc

        # Exhausted retries
        if isinstance(last_error, E2BError):  # pragma: no cover
            raise last_error
        raise ConnectionError(  # pragma: no cover
            message="Request failed after retries"
        )


def _may_retry(exc: Exception, retry: bool) -> bool:
    """Whether a failed attempt may be repeated.

    A connect-phase failure means the request never reached the server.
    """
    return retry or isinstance(exc, (httpx.ConnectError, httpx.ConnectTimeout))


def _build_params(
    query: dict[str, Any],
) -> dict[str, str]:
    """Build query params, filtering out None values."""
    return {k: str(v) for k, v in query.items() if v is not None}


def _try_parse_json(data: bytes) -> Any:
    try:
        return json.loads(data)
    except ValueError:
        return None


def _error_from_response(response: httpx.Response) -> E2BError:
    body = _try_parse_json(response.content)
    retry_after = response.headers.get("retry-after")
    return parse_error_response(
        response.status_code,
        body if isinstance(body, dict) else None,
        response.text,
        retry_after=float(retry_after) if retry_after and retry_after.isdigit() else None,
    )


def parse_error_response(
    status: int,
    error_body: dict[str, Any] | None,
    text: str = "",
    *,
    retry_after: float | None = None,
) -> E2BError:
    """Map an error response onto the error taxonomy.

    Connect-style bodies (a string ``code``) are mapped by code, everything
    else by HTTP status.
    """
    body = error_body or {}
    message = body.get("message") or text or f"HTTP {status}"
    code = body.get("code")
    if isinstance(code, str) and code in CONNECT_CODE_STATUS:
        return connect_error(code, message)

    if status == 401:
        return AuthenticationError(message=message)
    if status == 404:
        return NotFoundError(message=message)
    if status == 409:
        return InvalidStateError(message=message)
    if status == 429:
        return RateLimitError(
            message=message,
            retry_after=(
                retry_after if retry_after is not None else body.get("retry_after") or 1.0
            ),
        )
    return ApiError(status=status, message=message)


def connect_error(code: str, message: str) -> E2BError:
    """Map a Connect protocol error code onto the error taxonomy."""
    if code == "not_found":
        return NotFoundError(message=message)
    if code == "unauthenticated":
        return AuthenticationError(message=message)
    if code in ("already_exists", "failed_precondition"):
        return InvalidStateError(
            message=message, status=CONNECT_CODE_STATUS[code]
        )
    if code == "resource_exhausted":
        return RateLimitError(message=message)
    if code == "deadline_exceeded":
        return TimeoutError(message=message)
    return ApiError(status=CONNECT_CODE_STATUS.get(code, 500), message=message)
