"""E2B client, the main entry point."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import replace
from typing import Any
from urllib.parse import urlencode

import httpx

from .config import ConnectionConfig
from .errors import E2BError, ValidationError
from .http import HttpClient
from .sandbox import Sandbox, parse_sandbox_info, validate_positive_int
from .types import SandboxInfo, Template, parse_timestamp

logger = logging.getLogger(__name__)

USER_AGENT = "e2b-client-python"


def _check_str_mapping(name: str, value: Any) -> dict[str, str] | None:
    if value is None:
        return None
    if not isinstance(value, Mapping) or not all(
        isinstance(k, str) and isinstance(v, str) for k, v in value.items()
    ):
        raise ValidationError(message=f"{name} must map strings to strings")
    return dict(value)


def parse_template(raw: dict[str, Any]) -> Template:
    """Build a Template from an API payload (camelCase or snake_case keys)."""

    def pick(*keys: str) -> Any:
        for key in keys:
            if raw.get(key) is not None:
                return raw[key]
        return None

    aliases = pick("aliases") or []
    return Template(
        template_id=pick("templateID", "template_id") or "",
        name=pick("name") or (aliases[0] if aliases else ""),
        description=pick("description"),
        aliases=list(aliases),
        build_id=pick("buildID", "build_id"),
        public=bool(pick("public")),
        cpu_count=int(pick("cpuCount", "cpu_count") or 0),
        memory_mb=int(pick("memoryMB", "memory_mb") or 0),
        disk_mb=int(pick("diskSizeMB", "disk_mb") or 0),
        created_at=parse_timestamp(pick("createdAt", "created_at")),
        updated_at=parse_timestamp(pick("updatedAt", "updated_at")),
    )


class E2B:
    """E2B client.

    Example::

        async with E2B(api_key="e2b_...") as client:
            sandbox = await client.create("base")
            result = await sandbox.commands.run("echo hello")
            print(result.stdout)
            await sandbox.delete()
    """

    def __init__(
        self,
        *,
        api_key: str | None = None,
        base_url: str | None = None,
        domain: str | None = None,
        timeout: float | None = None,
        max_retries: int | None = None,
        debug: bool | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.config = ConnectionConfig.resolve(
            api_key=api_key,
            base_url=base_url,
            domain=domain,
            timeout=timeout,
            max_retries=max_retries,
            debug=debug,
        )
        self._transport = transport
        self._http = HttpClient(
            base_url=self.config.base_url,
            headers={"X-API-Key": self.config.api_key, "User-Agent": USER_AGENT},
            timeout=self.config.timeout,
            retries=self.config.max_retries,
            transport=transport,
        )
        self._sandboxes: set[Sandbox] = set()

    async def close(self) -> None:
        """Close the underlying HTTP clients. Sandboxes are left running."""
        for sandbox in list(self._sandboxes):
            await sandbox.close()
        await self._http.close()

    async def __aenter__(self) -> E2B:
        return self

    async def __aexit__(self, *_: object) -> None:
        await self.close()

    def _attach(self, info: SandboxInfo) -> Sandbox:
        sandbox = Sandbox(
            info,
            self._http,
            self.config,
            transport=self._transport,
            on_release=self._sandboxes.discard,
        )
        self._sandboxes.add(sandbox)
        return sandbox

    async def create(
        self,
        template_id: str,
        *,
        timeout: int | None = None,
        metadata: dict[str, str] | None = None,
        env_vars: dict[str, str] | None = None,
        cpu_count: int | None = None,
        memory_mb: int | None = None,
        auto_pause: bool | None = None,
        secure: bool | None = None,
        allow_internet_access: bool | None = None,
        wait_ready: bool = True,
    ) -> Sandbox:
        """Create a new sandbox. Waits until envd answers by default.

        Args:
            template_id: Template id or alias, e.g. 'base' or 'code-interpreter-v1'.
            timeout: Sandbox time-to-live in seconds.
            metadata: Free-form tags, returned unmodified by the API.
            env_vars: Environment variables of every process in the sandbox.
            cpu_count: Requested vCPUs.
            memory_mb: Requested memory in MB.
            auto_pause: Pause instead of killing the sandbox when it times out.
            secure: Require an access token for envd.
            allow_internet_access: Whether the sandbox may reach the internet.
            wait_ready: If True (default), poll until the sandbox is reachable.

        Returns:
            A Sandbox instance.

        Raises:
            ValidationError: An option is malformed; nothing was sent.
            TimeoutError: The sandbox never became ready. It has been deleted.
        """
        if not isinstance(template_id, str) or not template_id.strip():
            raise ValidationError(message="template_id must be a non-empty string")
        limits = {"timeout": timeout, "cpu_count": cpu_count, "memory_mb": memory_mb}
        for name, value in limits.items():
            if value is not None:
                validate_positive_int(name, value)
        body: dict[str, Any] = {
            "templateID": template_id,
            "timeout": timeout,
            "metadata": _check_str_mapping("metadata", metadata),
            "envVars": _check_str_mapping("env_vars", env_vars),
            "cpuCount": cpu_count,
            "memoryMB": memory_mb,
            "autoPause": auto_pause,
            "secure": secure,
            "allow_internet_access": allow_internet_access,
        }
        body = {k: v for k, v in body.items() if v is not None}

        res = await self._http.request("POST", "/sandboxes", body=body, retry=False)
        info = parse_sandbox_info(res)
        info = replace(
            info,
            alias=info.alias or (template_id if template_id != info.template_id else None),
            metadata=info.metadata or dict(metadata or {}),
            env_vars=info.env_vars or dict(env_vars or {}),
            cpu_count=info.cpu_count or cpu_count or 0,
            memory_mb=info.memory_mb or memory_mb or 0,
        )
        logger.info("Created sandbox %s from template %s", info.sandbox_id, template_id)

        sandbox = self._attach(info)
        if wait_ready:
            try:
                await sandbox.wait_ready()
            except BaseException:
                logger.warning("Sandbox %s never became ready, deleting it", sandbox.id)
                try:
                    await sandbox.delete()
                except E2BError as exc:
                    logger.warning("Could not delete sandbox %s: %s", sandbox.id, exc)
                raise
        return sandbox

    async def get(self, sandbox_id: str) -> Sandbox:
        """Attach to an existing sandbox by ID."""
        if not sandbox_id:
            raise ValidationError(message="sandbox_id must not be empty")
        res = await self._http.request("GET", f"/sandboxes/{sandbox_id}")
        return self._attach(parse_sandbox_info(res))

    async def connect(self, sandbox_id: str) -> Sandbox:
        """Alias of ``get()``."""
        return await self.get(sandbox_id)

    async def list(self, *, metadata: dict[str, str] | None = None) -> list[SandboxInfo]:
        """Describe running and paused sandboxes, optionally filtered by metadata.

        Order is whatever the server returns.
        """
        query = {"metadata": urlencode(_check_str_mapping("metadata", metadata) or {}) or None}
        res = await self._http.request("GET", "/sandboxes", query=query)
        return [parse_sandbox_info(s) for s in res or []]

    async def list_templates(self) -> list[Template]:
        """Templates visible to this API key."""
        res = await self._http.request("GET", "/templates")
        return [parse_template(t) for t in res or []]

    async def get_template(self, template_id: str) -> Template:
        if not template_id:
            raise ValidationError(message="template_id must not be empty")
        res = await self._http.request("GET", f"/templates/{template_id}")
        return parse_template(res)
