"""Sandbox: one live remote execution environment."""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Callable
from dataclasses import replace
from typing import TYPE_CHECKING, Any

import httpx

from .code_interpreter import DEFAULT_CODE_TIMEOUT, CodeInterpreter
from .commands import Commands
from .config import ENVD_PORT, JUPYTER_PORT
from .errors import (
    ApiError,
    ConnectionError,
    NotFoundError,
    TimeoutError,
    UnsupportedTemplateError,
    ValidationError,
)
from .filesystem import Filesystem
from .http import HttpClient
from .rpc import EnvdClient, envd_headers
from .types import (
    Execution,
    LogLevel,
    SandboxInfo,
    SandboxLog,
    SandboxMetrics,
    parse_timestamp,
)

if TYPE_CHECKING:
    from .config import ConnectionConfig

logger = logging.getLogger(__name__)

WAIT_READY_DEFAULT_TIMEOUT_S = 60.0
WAIT_READY_POLL_INTERVAL_S = 0.5
CODE_INTERPRETER_MARKER = "code-interpreter"

_LOG_LEVELS = {
    "debug": LogLevel.DEBUG,
    "info": LogLevel.INFO,
    "warn": LogLevel.WARN,
    "warning": LogLevel.WARN,
    "error": LogLevel.ERROR,
}


def parse_sandbox_info(raw: dict[str, Any]) -> SandboxInfo:
    """Build a SandboxInfo from an API payload (camelCase keys)."""
    return SandboxInfo(
        sandbox_id=raw["sandboxID"],
        template_id=raw.get("templateID", ""),
        alias=raw.get("alias"),
        client_id=raw.get("clientID"),
        state=raw.get("state") or "running",
        cpu_count=int(raw.get("cpuCount") or 0),
        memory_mb=int(raw.get("memoryMB") or 0),
        metadata=dict(raw.get("metadata") or {}),
        env_vars=dict(raw.get("envVars") or {}),
        started_at=parse_timestamp(raw.get("startedAt")),
        end_at=parse_timestamp(raw.get("endAt")),
        envd_version=raw.get("envdVersion"),
        envd_access_token=raw.get("envdAccessToken"),
        domain=raw.get("domain"),
    )


def supports_code_interpreter(info: SandboxInfo) -> bool:
    """Whether the sandbox's template can dispatch code by language."""
    return any(
        CODE_INTERPRETER_MARKER in (name or "")
        for name in (info.template_id, info.alias)
    )


def parse_metrics(raw: dict[str, Any]) -> SandboxMetrics:
    try:
        return SandboxMetrics(
            cpu_count=int(raw.get("cpuCount", 0)),
            cpu_used_pct=float(raw.get("cpuUsedPct", 0.0)),
            mem_used=int(raw.get("memUsed", 0)),
            mem_total=int(raw.get("memTotal", 0)),
            disk_used=int(raw.get("diskUsed", 0)),
            disk_total=int(raw.get("diskTotal", 0)),
            timestamp=parse_timestamp(raw.get("timestamp")),
        )
    except (TypeError, ValueError) as exc:
        raise ApiError(status=500, message=f"Invalid metrics format: {exc}") from exc


def _parse_structured_log(raw: dict[str, Any]) -> SandboxLog:
    fields = raw.get("fields")
    fields = fields if isinstance(fields, dict) else {}
    return SandboxLog(
        timestamp=parse_timestamp(raw.get("timestamp")),
        level=_LOG_LEVELS.get(str(raw.get("level", "info")).lower(), LogLevel.INFO),
        message=raw.get("message", ""),
        source=fields.get("service") or fields.get("logger") or "unknown",
    )


def _parse_line_log(raw: dict[str, Any]) -> SandboxLog:
    line = raw.get("line", "")
    timestamp = parse_timestamp(raw.get("timestamp"))
    try:
        parsed = json.loads(line)
    except ValueError:
        parsed = None
    if isinstance(parsed, dict):
        return replace(_parse_structured_log(parsed), timestamp=timestamp)
    return SandboxLog(timestamp=timestamp, level=LogLevel.INFO, message=line, source="log")


class Sandbox:
    """A live E2B sandbox.

    Commands, files and code execution hang off this instance. Use
    ``E2B.create()`` or ``E2B.connect()`` to obtain one. A handle may be
    shared by concurrent tasks; after ``delete()`` every operation raises
    ``NotFoundError``.
    """

    def __init__(
        self,
        info: SandboxInfo,
        http: HttpClient,
        config: ConnectionConfig,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        on_release: Callable[[Sandbox], None] | None = None,
    ) -> None:
        self.id = info.sandbox_id
        self.info = info
        self._http = http
        self._config = config
        self._on_release = on_release
        domain = info.domain or config.domain

        self._envd = EnvdClient(
            sandbox_id=self.id,
            base_url=config.sandbox_url(self.id, ENVD_PORT, domain),
            config=config,
            access_token=info.envd_access_token,
            transport=transport,
        )
        self.commands = Commands(self._envd, env_vars=info.env_vars)
        self.files = Filesystem(self._envd)

        self.code_interpreter: CodeInterpreter | None = None
        if supports_code_interpreter(info):
            jupyter = HttpClient(
                base_url=config.sandbox_url(self.id, JUPYTER_PORT, domain),
                headers=envd_headers(info.envd_access_token),
                timeout=config.timeout,
                retries=config.max_retries,
                transport=transport,
            )
            self.code_interpreter = CodeInterpreter(jupyter, self._envd)

    def __repr__(self) -> str:
        return f"Sandbox(id={self.id!r}, template_id={self.info.template_id!r})"

    @property
    def deleted(self) -> bool:
        return self._envd.deleted

    @property
    def envd_url(self) -> str:
        return self._envd.base_url

    # -- Context manager support -----------------------------------------------

    async def __aenter__(self) -> Sandbox:
        return self

    async def __aexit__(self, *_: object) -> None:
        await self.delete()

    # -- Lifecycle -------------------------------------------------------------

    async def refresh(self) -> SandboxInfo:
        """Re-fetch the sandbox description from the API."""
        self._envd.ensure_alive()
        res = await self._http.request("GET", f"/sandboxes/{self.id}")
        info = parse_sandbox_info(res)
        self.info = replace(
            info,
            envd_access_token=info.envd_access_token or self.info.envd_access_token,
            domain=info.domain or self.info.domain,
        )
        return self.info

    async def pause(self) -> None:
        """Pause a running sandbox."""
        self._envd.ensure_alive()
        await self._http.request("POST", f"/sandboxes/{self.id}/pause", body={})
        self.info = replace(self.info, state="paused")
        logger.info("Paused sandbox %s", self.id)

    async def resume(self, *, timeout: int | None = None) -> None:
        """Resume a paused sandbox.

        Raises:
            InvalidStateError: The sandbox is not paused.
        """
        self._envd.ensure_alive()
        body: dict[str, Any] = {}
        if timeout is not None:
            body["timeout"] = validate_positive_int("timeout", timeout)
        await self._http.request("POST", f"/sandboxes/{self.id}/resume", body=body)
        self.info = replace(self.info, state="running")
        logger.info("Resumed sandbox %s", self.id)

    async def set_timeout(self, seconds: int) -> None:
        """Reset the sandbox time-to-live to ``seconds`` from now."""
        body = {"timeout": validate_positive_int("timeout", seconds)}
        self._envd.ensure_alive()
        await self._http.request("POST", f"/sandboxes/{self.id}/timeout", body=body)

    async def delete(self) -> None:
        """Delete the sandbox. Deleting an already deleted sandbox is a no-op."""
        if self._envd.deleted:
            return
        try:
            await self._http.request("DELETE", f"/sandboxes/{self.id}")
        except NotFoundError:
            logger.debug("Sandbox %s was already gone", self.id)
        self.info = replace(self.info, state="deleted")
        await self._envd.invalidate()
        if self.code_interpreter is not None:
            await self.code_interpreter.close()
        self._release()
        logger.info("Deleted sandbox %s", self.id)

    async def kill(self) -> None:
        """Alias of ``delete()``."""
        await self.delete()

    async def close(self) -> None:
        """Release local connections without deleting the sandbox."""
        await self._envd.close()
        if self.code_interpreter is not None:
            await self.code_interpreter.close()
        self._release()

    def _release(self) -> None:
        if self._on_release is not None:
            self._on_release(self)
            self._on_release = None

    async def wait_ready(self, *, timeout: float | None = None) -> None:
        """Wait until envd inside the sandbox answers health checks.

        Args:
            timeout: Max wait time in seconds. Defaults to 60.
        """
        timeout_s = timeout if timeout is not None else WAIT_READY_DEFAULT_TIMEOUT_S
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout_s

        while True:
            self._envd.ensure_alive()
            remaining = deadline - loop.time()
            try:
                await self._envd.health(timeout=max(remaining, 0.1))
                return
            except (ConnectionError, TimeoutError, ApiError) as exc:
                logger.debug("Sandbox %s not ready yet: %s", self.id, exc)

            if loop.time() + WAIT_READY_POLL_INTERVAL_S >= deadline:
                raise TimeoutError(
                    message=f"Sandbox {self.id} did not become ready within {timeout_s}s",
                    timeout=timeout_s,
                )
            await asyncio.sleep(WAIT_READY_POLL_INTERVAL_S)

    # -- Observability ---------------------------------------------------------

    async def metrics(self) -> SandboxMetrics:
        """Latest resource usage snapshot.

        Right after creation no sample exists yet, which is reported as
        ``SandboxMetrics.empty()``.
        """
        self._envd.ensure_alive()
        res = await self._http.request("GET", f"/sandboxes/{self.id}/metrics")
        if not res:
            return SandboxMetrics.empty()
        if isinstance(res, list):
            res = res[-1]
        if not isinstance(res, dict):
            raise ApiError(status=500, message="Invalid metrics format")
        return parse_metrics(res)

    async def logs(self) -> list[SandboxLog]:
        """Sandbox logs, structured entries first."""
        self._envd.ensure_alive()
        res = await self._http.request("GET", f"/sandboxes/{self.id}/logs") or {}
        if not isinstance(res, dict):
            raise ApiError(status=500, message="Invalid logs format")
        entries = [
            _parse_structured_log(e) for e in res.get("logEntries") or [] if isinstance(e, dict)
        ]
        entries.extend(_parse_line_log(e) for e in res.get("logs") or [] if isinstance(e, dict))
        return entries

    # -- Code execution --------------------------------------------------------

    def _interpreter(self) -> CodeInterpreter:
        self._envd.ensure_alive()
        if self.code_interpreter is None:
            raise UnsupportedTemplateError(
                message=(
                    f"Template {self.info.alias or self.info.template_id!r} does not "
                    "support code execution; create the sandbox from a "
                    "code-interpreter template"
                ),
                template_id=self.info.template_id,
            )
        return self.code_interpreter

    async def run_code(self, code: str, **kwargs: Any) -> Execution:
        """Execute code in the default language of the interpreter."""
        return await self._interpreter().run_code(code, **kwargs)

    async def run_code_with_language(self, code: str, language: str, **kwargs: Any) -> Execution:
        if not language:
            raise ValidationError(message="language must not be empty")
        return await self._interpreter().run_code(code, language=language, **kwargs)

    async def run_python(self, code: str, **kwargs: Any) -> Execution:
        return await self.run_code_with_language(code, "python", **kwargs)

    async def run_javascript(self, code: str, **kwargs: Any) -> Execution:
        return await self.run_code_with_language(code, "javascript", **kwargs)

    async def run_code_with_timeout(
        self, code: str, timeout: float = DEFAULT_CODE_TIMEOUT, **kwargs: Any
    ) -> Execution:
        """Execute code, raising ``TimeoutError`` once ``timeout`` seconds pass.

        The execution itself may keep running in the sandbox.
        """
        return await self._interpreter().run_code(code, timeout=timeout, **kwargs)


def validate_positive_int(name: str, value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise ValidationError(message=f"{name} must be a positive integer, got {value!r}")
    return value
