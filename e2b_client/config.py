"""Connection settings resolved from arguments and the environment."""

from __future__ import annotations

import os
from dataclasses import dataclass

DEFAULT_BASE_URL = "https://api.e2b.app"
DEFAULT_DEBUG_BASE_URL = "http://localhost:3000"
DEFAULT_DOMAIN = "e2b.dev"
DEFAULT_TIMEOUT = 30.0
DEFAULT_RETRIES = 3

ENVD_PORT = 49983
JUPYTER_PORT = 49999

API_KEY_ENV = "E2B_API_KEY"


def _env_flag(name: str) -> bool:
    return os.environ.get(name, "").strip().lower() == "true"


def _env_domain() -> str | None:
    raw = os.environ.get("E2B_SANDBOX_DOMAIN") or os.environ.get("E2B_DOMAIN")
    if raw is None:
        return None
    domain = raw.strip().removeprefix("api.")
    return domain or None


@dataclass(frozen=True)
class ConnectionConfig:
    """Settings shared by every request the client makes."""

    api_key: str
    base_url: str
    domain: str
    timeout: float
    max_retries: int
    debug: bool

    @classmethod
    def resolve(
        cls,
        *,
        api_key: str | None = None,
        base_url: str | None = None,
        domain: str | None = None,
        timeout: float | None = None,
        max_retries: int | None = None,
        debug: bool | None = None,
    ) -> ConnectionConfig:
        resolved_key = api_key or os.environ.get(API_KEY_ENV)
        if not resolved_key:
            raise ValueError(
                f"E2B API key is required. Pass api_key or set {API_KEY_ENV}."
            )

        resolved_debug = debug if debug is not None else _env_flag("E2B_DEBUG")
        default_url = DEFAULT_DEBUG_BASE_URL if resolved_debug else DEFAULT_BASE_URL
        if resolved_debug:
            default_domain = "localhost"
        else:
            default_domain = _env_domain() or DEFAULT_DOMAIN

        return cls(
            api_key=resolved_key,
            base_url=(base_url or os.environ.get("E2B_API_URL") or default_url).rstrip("/"),
            domain=domain or default_domain,
            timeout=timeout or DEFAULT_TIMEOUT,
            max_retries=max_retries if max_retries is not None else DEFAULT_RETRIES,
            debug=resolved_debug,
        )

    def sandbox_url(self, sandbox_id: str, port: int, domain: str | None = None) -> str:
        """URL of a port exposed by a sandbox."""
        if self.debug:
            return f"http://localhost:{port}"
        return f"https://{port}-{sandbox_id}.{domain or self.domain}"
