"""Shared pytest fixtures and configuration for the adprov test suite.

This file is loaded automatically by pytest before any test module.
It provides project-wide fixtures used across unit and integration tests.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Callable

import pytest
from botocore.exceptions import ClientError
from pydantic_settings import SettingsConfigDict

from adprov.core import configure_logging
from adprov.core.settings import Settings

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def _configure_test_logging() -> None:
    """Force DEBUG logging in text format for every test.

    ``force=True`` replaces any handler pytest or a previous test installed.
    """
    configure_logging(level="DEBUG", fmt="text", force=True)


# ---------------------------------------------------------------------------
# Environment
# ---------------------------------------------------------------------------


@pytest.fixture()
def clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Remove every env var a :class:`Settings` field could read.

    Also disables pydantic-settings ``.env`` file loading so values in a
    local ``.env`` do not leak into settings isolation tests.
    """
    field_vars = {name.upper() for name in Settings.model_fields}
    for key in list(os.environ):
        if key.upper() in field_vars:
            monkeypatch.delenv(key, raising=False)

    monkeypatch.setattr(
        Settings,
        "model_config",
        SettingsConfigDict(
            env_file=None,
            env_file_encoding="utf-8",
            extra="ignore",
        ),
    )


# ---------------------------------------------------------------------------
# Simulated time
# ---------------------------------------------------------------------------


class FakeClock:
    """Monotonic clock plus an awaitable sleep that advances it instantly.

    ``sleeps`` records every requested delay in order.
    """

    def __init__(self, start: float = 0.0) -> None:
        self.now = start
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds

    @property
    def slept(self) -> float:
        return sum(self.sleeps)


@pytest.fixture()
def fake_clock() -> FakeClock:
    return FakeClock()


# ---------------------------------------------------------------------------
# botocore errors
# ---------------------------------------------------------------------------


def make_client_error(
    code: str,
    message: str = "",
    *,
    status: int = 400,
    operation: str = "Operation",
) -> ClientError:
    """Build a real :class:`ClientError` as botocore would raise it."""
    return ClientError(
        {
            "Error": {"Code": code, "Message": message or f"{code} raised"},
            "ResponseMetadata": {"HTTPStatusCode": status},
        },
        operation,
    )


@pytest.fixture()
def client_error() -> Callable[..., ClientError]:
    return make_client_error


# ---------------------------------------------------------------------------
# Misc helpers
# ---------------------------------------------------------------------------


@pytest.fixture()
def logger() -> logging.Logger:
    """Return a logger scoped to test code."""
    return logging.getLogger("tests")
