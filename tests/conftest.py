"""Shared pytest fixtures and configuration for the Devicecron test suite.

This file is loaded automatically by pytest before any test module.
It provides project-wide fixtures plus in-memory fakes for the two
collaborators every scheduler test needs: a session driver and a clock.
"""

from __future__ import annotations

import asyncio
import logging
import os
from collections.abc import Mapping
from typing import Any

import pytest
from pydantic_settings import SettingsConfigDict

from devicecron.core import configure_logging
from devicecron.core.settings import Settings
from devicecron.session.base import SessionDriver, SessionHandle
from devicecron.session.manager import SessionManager

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def _configure_test_logging() -> None:
    """Force DEBUG logging in text format for every test.

    Using ``force=True`` ensures the configuration is applied even when
    pytest's own ``log_cli`` handler is already present.
    """
    configure_logging(level="DEBUG", fmt="text", force=True)


# ---------------------------------------------------------------------------
# Environment
# ---------------------------------------------------------------------------


@pytest.fixture()
def clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Remove all Devicecron env vars for the duration of a test.

    Also disables pydantic-settings `.env` file loading so that values in a
    local `.env` file do not leak into Settings isolation tests.
    """
    prefixes = (
        "APPIUM_",
        "SESSION_",
        "TASK_",
        "TICK_",
        "HEARTBEAT_",
        "STATS_",
        "LOG_LEVEL",
        "LOG_FORMAT",
    )
    for key in list(os.environ):
        if any(key.startswith(prefix) for prefix in prefixes):
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
# Fakes
# ---------------------------------------------------------------------------


class ManualClock:
    """Epoch-millisecond clock that only moves when told to."""

    def __init__(self, now: int = 0) -> None:
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += int(seconds * 1000)


class FakeDriver(SessionDriver):
    """Scriptable in-memory session driver.

    * ``scripts[op]`` is a list consumed one item per call: exceptions are
      raised, anything else is returned.  When it runs dry ``defaults[op]``
      is returned.
    * Session ids listed in ``dead`` fail the health probe.
    """

    def __init__(self) -> None:
        self.connect_calls = 0
        self.connect_delay = 0.0
        self.connect_error: BaseException | None = None
        self.invoke_delay = 0.0
        self.dead: set[str] = set()
        self.disconnected: list[str] = []
        self.invocations: list[tuple[str, str, dict[str, Any]]] = []
        self.scripts: dict[str, list[Any]] = {}
        self.defaults: dict[str, Any] = {"is_locked": True, "page_source": "<hierarchy/>"}
        self.closed = False

    async def connect(self) -> SessionHandle:
        self.connect_calls += 1
        n = self.connect_calls
        await asyncio.sleep(self.connect_delay)
        if self.connect_error is not None:
            raise self.connect_error
        return SessionHandle(session_id=f"session-{n}")

    async def is_healthy(self, handle: SessionHandle) -> bool:
        return handle.session_id not in self.dead

    async def disconnect(self, handle: SessionHandle) -> None:
        self.disconnected.append(handle.session_id)

    async def invoke(
        self,
        handle: SessionHandle,
        op: str,
        args: Mapping[str, Any] | None = None,
    ) -> Any:
        self.invocations.append((handle.session_id, op, dict(args or {})))
        if self.invoke_delay:
            await asyncio.sleep(self.invoke_delay)
        script = self.scripts.get(op)
        if script:
            item = script.pop(0)
            if isinstance(item, BaseException):
                raise item
            return item
        return self.defaults.get(op)

    async def close(self) -> None:
        self.closed = True


@pytest.fixture()
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture()
def fake_driver() -> FakeDriver:
    return FakeDriver()


@pytest.fixture()
def manager(fake_driver: FakeDriver) -> SessionManager:
    """Session manager over the fake driver with no retry backoff."""
    return SessionManager(
        fake_driver,
        max_retries=1,
        retry_backoff_s=0.0,
        connect_timeout_s=5.0,
        invoke_timeout_s=5.0,
    )


# ---------------------------------------------------------------------------
# Misc helpers
# ---------------------------------------------------------------------------


@pytest.fixture()
def logger() -> logging.Logger:
    """Return a ``logging.Logger`` scoped to the running test."""
    return logging.getLogger("tests")
