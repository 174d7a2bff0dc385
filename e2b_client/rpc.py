"""Connect-protocol client for envd, the agent running inside each sandbox."""

from __future__ import annotations

import base64
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, Any, Protocol

import httpx

from .errors import NotFoundError
from .http import HttpClient
from .stream import encode_envelope, parse_envelopes

if TYPE_CHECKING:
    from .config import ConnectionConfig

logger = logging.getLogger(__name__)

DEFAULT_USER = "user"
CONNECT_PROTOCOL_VERSION = "1"


class Closeable(Protocol):
    async def close(self) -> None: ...


def basic_auth(user: str) -> str:
    credentials = base64.b64encode(f"{user}:".encode()).decode()
    return f"Basic {credentials}"


def envd_headers(access_token: str | None, user: str = DEFAULT_USER) -> dict[str, str]:
    headers = {"Authorization": basic_auth(user)}
    if access_token:
        headers["X-Access-Token"] = access_token
    return headers


class EnvdClient:
    """RPC channel to one sandbox's envd.

    Bound to a single sandbox: once ``invalidate()`` is called (the sandbox
    was deleted) every call fails with ``NotFoundError`` without a request,
    and any stream still open is closed.
    """

    def __init__(
        self,
        *,
        sandbox_id: str,
        base_url: str,
        config: ConnectionConfig,
        access_token: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.sandbox_id = sandbox_id
        self._http = HttpClient(
            base_url=base_url,
            headers=envd_headers(access_token),
            timeout=config.timeout,
            retries=config.max_retries,
            transport=transport,
        )
        self._deleted = False
        self._watchers: set[Closeable] = set()

    @property
    def base_url(self) -> str:
        return self._http.base_url

    @property
    def deleted(self) -> bool:
        return self._deleted

    def ensure_alive(self) -> None:
        if self._deleted:
            raise NotFoundError(
                message=f"Sandbox {self.sandbox_id} has been deleted",
                resource=f"sandbox {self.sandbox_id}",
            )

    def track(self, watcher: Closeable) -> None:
        self._watchers.add(watcher)

    def untrack(self, watcher: Closeable) -> None:
        self._watchers.discard(watcher)

    async def invalidate(self) -> None:
        """Mark the sandbox deleted and close every tracked watcher."""
        self._deleted = True
        for watcher in list(self._watchers):
            await watcher.close()
        self._watchers.clear()
        await self._http.close()

    async def close(self) -> None:
        await self._http.close()

    async def call(
        self,
        service: str,
        method: str,
        body: dict[str, Any] | None = None,
        *,
        timeout: float | None = None,
        user: str | None = None,
        retry: bool = True,
    ) -> dict[str, Any]:
        """Unary Connect call with JSON codec.

        Pass ``retry=False`` for calls that must not run twice.
        """
        self.ensure_alive()
        headers = {"Connect-Protocol-Version": CONNECT_PROTOCOL_VERSION}
        if user:
            headers["Authorization"] = basic_auth(user)
        result = await self._http.request(
            "POST",
            f"/{service}/{method}",
            body=body or {},
            headers=headers,
            timeout=timeout,
            retry=retry,
        )
        return result or {}

    @asynccontextmanager
    async def stream(
        self,
        service: str,
        method: str,
        body: dict[str, Any],
        *,
        user: str | None = None,
    ) -> AsyncIterator[AsyncIterator[dict[str, Any]]]:
        """Server-streaming Connect call.

        Yields an async iterator of decoded messages; the connection is
        closed when the block exits, however it exits.
        """
        self.ensure_alive()
        headers = {
            "Content-Type": "application/connect+json",
            "Connect-Protocol-Version": CONNECT_PROTOCOL_VERSION,
        }
        if user:
            headers["Authorization"] = basic_auth(user)
        async with self._http.stream(
            "POST",
            f"/{service}/{method}",
            content=encode_envelope(body),
            headers=headers,
        ) as response:
            messages = parse_envelopes(response)
            try:
                yield messages
            finally:
                await messages.aclose()

    async def health(self, *, timeout: float | None = None) -> None:
        self.ensure_alive()
        await self._http.request_raw("GET", "/health", timeout=timeout)

    async def read_file(self, path: str, *, user: str = DEFAULT_USER) -> bytes:
        self.ensure_alive()
        logger.debug("Reading %s from sandbox %s", path, self.sandbox_id)
        response = await self._http.request_raw(
            "GET", "/files", query={"path": path, "username": user}
        )
        return response.content

    async def write_file(
        self, path: str, data: bytes, *, user: str = DEFAULT_USER
    ) -> list[dict[str, Any]]:
        self.ensure_alive()
        logger.debug(
            "Writing %d bytes to %s in sandbox %s", len(data), path, self.sandbox_id
        )
        response = await self._http.request_raw(
            "POST",
            "/files",
            query={"path": path, "username": user},
            files={"file": (path, data, "application/octet-stream")},
        )
        if not response.content:
            return []
        result = response.json()
        return result if isinstance(result, list) else [result]
