"""Shared fixtures."""

import pytest

E2B_ENV_VARS = (
    "E2B_API_KEY",
    "E2B_API_URL",
    "E2B_DEBUG",
    "E2B_DOMAIN",
    "E2B_SANDBOX_DOMAIN",
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    """Keep the developer's E2B settings out of every test."""
    for name in E2B_ENV_VARS:
        monkeypatch.delenv(name, raising=False)
