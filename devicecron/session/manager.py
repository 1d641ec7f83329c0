"""Lifecycle owner for the single shared remote automation session.

The automation backend is known to lose its on-device instrumentation under
load.  Without supervision, one dead session would fail every scheduled task
that follows it until someone restarts things by hand.
:class:`SessionManager` keeps that failure local:

* **At most one session.**  Connect, health-check and invalidate all run
  under one :class:`asyncio.Lock`.  The first caller to find no live session
  connects while holding the lock; concurrent callers queue on the lock and
  then observe (and reuse) the handle it created.
* **Reference-counted release.**  Each task execution :meth:`acquire`\\ s
  before it runs and :meth:`release`\\ s after.  The session is torn down
  when the last user releases it, so two overlapping tasks share one session
  and neither closes it under the other.
* **Crash-aware retry.**  :meth:`invoke_with_retry` runs an operation under
  :class:`tenacity.AsyncRetrying`.  A failure whose message matches a crash
  signature discards the handle immediately, waits a fixed backoff and
  retries the whole operation on a fresh session.  Anything else is raised
  at once.

State machine
~~~~~~~~~~~~~
::

    ABSENT ──connect()──▶ CONNECTING ──ok──▶ LIVE
      ▲                        │               │
      │                      error        crash / last release
      │                        │               ▼
      └────────────────────────┴──── CRASHED | CLOSED

``CRASHED`` and ``CLOSED`` are transient: they last while the best-effort
remote delete runs, then the manager returns to ``ABSENT``.  After any
failure the manager is therefore either ``ABSENT`` or freshly ``LIVE``,
never holding a handle it knows to be bad.

Typical usage::

    manager = SessionManager(WebDriverSession.from_settings(settings), max_retries=1)

    async with manager.session() as device:
        xml = await device.page_source()
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import AsyncIterator, Iterable, Mapping
from enum import StrEnum
from typing import Any

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_fixed,
)

from devicecron.core import events
from devicecron.core.exceptions import (
    SessionConnectError,
    SessionCrashError,
    SessionTimeoutError,
)
from devicecron.core.settings import DEFAULT_CRASH_SIGNATURES, Settings
from devicecron.session.base import SessionDriver, SessionHandle
from devicecron.session.capabilities import SessionCapabilities

__all__ = ["SessionManager", "SessionState"]

logger = logging.getLogger(__name__)


class SessionState(StrEnum):
    """Lifecycle state of the shared session."""

    ABSENT = "absent"
    CONNECTING = "connecting"
    LIVE = "live"
    CRASHED = "crashed"
    CLOSED = "closed"


class SessionManager:
    """Single-flight owner of the remote session handle.

    Args:
        driver: Transport to the automation backend.
        max_retries: Default retries after a crash-signature failure.
        retry_backoff_s: Fixed wait before each retry.
        connect_timeout_s: Upper bound on :meth:`SessionDriver.connect`.
        invoke_timeout_s: Upper bound on each invoke, health probe and
            disconnect.
        crash_signatures: Case-insensitive message fragments that classify
            an error as a session crash.
    """

    def __init__(
        self,
        driver: SessionDriver,
        *,
        max_retries: int = 1,
        retry_backoff_s: float = 1.0,
        connect_timeout_s: float = 120.0,
        invoke_timeout_s: float = 60.0,
        crash_signatures: Iterable[str] = DEFAULT_CRASH_SIGNATURES,
    ) -> None:
        if max_retries < 0:
            raise ValueError(f"max_retries must be >= 0, got {max_retries}")
        self._driver = driver
        self._max_retries = max_retries
        self._retry_backoff_s = retry_backoff_s
        self._connect_timeout_s = connect_timeout_s
        self._invoke_timeout_s = invoke_timeout_s
        self._crash_signatures = tuple(s.lower() for s in crash_signatures)

        self._lock = asyncio.Lock()
        self._handle: SessionHandle | None = None
        self._state = SessionState.ABSENT
        self._users = 0

        #: Sessions created over the manager's lifetime.
        self.connects = 0
        #: Failures classified as crashes.
        self.crashes = 0

    @classmethod
    def from_settings(cls, settings: Settings, driver: SessionDriver) -> SessionManager:
        return cls(
            driver,
            max_retries=settings.session_max_retries,
            retry_backoff_s=settings.session_retry_backoff_s,
            connect_timeout_s=settings.session_connect_timeout_s,
            invoke_timeout_s=settings.session_invoke_timeout_s,
            crash_signatures=settings.session_crash_signatures,
        )

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    @property
    def driver(self) -> SessionDriver:
        return self._driver

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def handle(self) -> SessionHandle | None:
        return self._handle

    @property
    def users(self) -> int:
        return self._users

    def is_crash(self, exc: BaseException) -> bool:
        """Return ``True`` if *exc* means the remote session is gone.

        Connect failures are never crashes: there is no session to recover,
        and retrying them here would hide an unreachable server behind the
        retry budget.
        """
        if isinstance(exc, SessionConnectError):
            return False
        if isinstance(exc, SessionCrashError):
            return True
        text = str(exc).lower()
        return any(sig in text for sig in self._crash_signatures)

    # ------------------------------------------------------------------
    # Acquire / release
    # ------------------------------------------------------------------

    async def acquire(self) -> SessionHandle:
        """Return a healthy live handle, connecting if necessary, and claim it.

        Every successful call must be paired with :meth:`release`.

        Raises:
            SessionConnectError: no session could be created.
        """
        handle, _ = await self._ensure_live(probe=True, claim=True)
        return handle

    async def release(self) -> None:
        """Drop one claim; close the session when nobody holds it any more.

        The claim is dropped before the first ``await`` and the close is
        shielded, so a caller cancelled while waiting for the lock (a
        dispatch hitting its timeout, or shutdown) still gives the session
        back.
        """
        if self._users > 0:
            self._users -= 1
        if self._users == 0:
            await asyncio.shield(self.close_if_idle())

    async def close_if_idle(self) -> bool:
        """Close the session if no claim is outstanding.

        Returns:
            ``True`` if a session was closed.
        """
        async with self._lock:
            if self._users == 0 and self._handle is not None:
                await self._discard(self._handle, SessionState.CLOSED)
                return True
            return False

    async def close(self) -> None:
        """Close the session regardless of claims (process shutdown)."""
        async with self._lock:
            if self._users:
                logger.warning("Closing session with %d active user(s).", self._users)
            self._users = 0
            if self._handle is not None:
                await self._discard(self._handle, SessionState.CLOSED)

    @contextlib.asynccontextmanager
    async def session(self) -> AsyncIterator[SessionCapabilities]:
        """Claim the session for the duration of the block.

        The claim is released on exit whatever happens inside the block.
        """
        await self.acquire()
        try:
            yield SessionCapabilities(self)
        finally:
            await self.release()

    # ------------------------------------------------------------------
    # Explicit connect / status (control-panel operations)
    # ------------------------------------------------------------------

    async def connect(self) -> tuple[SessionHandle, bool]:
        """Ensure a live session without claiming it.

        Returns:
            ``(handle, reused)``; ``reused`` is ``True`` when an existing
            healthy session was returned.
        """
        return await self._ensure_live(probe=True, claim=False)

    async def check_connection(self) -> dict[str, Any]:
        """Probe the current session without creating a new one."""
        async with self._lock:
            handle = self._handle
            if handle is None:
                return {"connected": False, "message": "No session exists"}
            if await self._probe(handle):
                return {"connected": True, "message": "Session is active"}
            await self._discard(handle, SessionState.CRASHED)
            return {"connected": False, "message": "Session is not active"}

    async def invalidate(self, handle: SessionHandle) -> None:
        """Discard *handle* if it is still the current one.

        A stale handle (already replaced by a concurrent reconnect) is
        ignored so one task's crash report cannot tear down another task's
        fresh session.
        """
        async with self._lock:
            if self._handle is None or self._handle != handle:
                return
            await self._discard(handle, SessionState.CRASHED)

    # ------------------------------------------------------------------
    # Retrying invoke
    # ------------------------------------------------------------------

    async def invoke_with_retry(
        self,
        op: str,
        args: Mapping[str, Any] | None = None,
        max_retries: int | None = None,
    ) -> Any:
        """Run *op* on the current session, recovering from session crashes.

        Args:
            op: Operation name understood by the driver.
            args: Operation arguments.
            max_retries: Override of the manager's default retry count.

        Returns:
            Whatever the driver returned for the successful attempt.

        Raises:
            SessionConnectError: a (re)connect failed.
            SessionTimeoutError: an attempt exceeded ``invoke_timeout_s``.
            Exception: the last error once retries are exhausted, or the
                first non-crash error.
        """
        retries = self._max_retries if max_retries is None else max_retries
        attempts = retries + 1

        def _before_sleep(rs: RetryCallState) -> None:
            exc = rs.outcome.exception() if rs.outcome else None
            logger.warning(
                "Session crashed during %s, recreating session (attempt %d/%d, %s); "
                "retrying in %.1f s",
                op,
                rs.attempt_number,
                attempts,
                type(exc).__name__ if exc else "?",
                self._retry_backoff_s,
                extra={"event": events.SESSION_RETRY},
            )

        result: Any = None
        async for attempt in AsyncRetrying(
            wait=wait_fixed(self._retry_backoff_s),
            stop=stop_after_attempt(attempts),
            retry=retry_if_exception(self.is_crash),
            reraise=True,
            before_sleep=_before_sleep,
        ):
            with attempt:
                result = await self._invoke_once(op, args)
        return result

    async def _invoke_once(self, op: str, args: Mapping[str, Any] | None) -> Any:
        handle, _ = await self._ensure_live(probe=False, claim=False)
        try:
            return await asyncio.wait_for(
                self._driver.invoke(handle, op, args),
                timeout=self._invoke_timeout_s,
            )
        except TimeoutError as exc:
            raise SessionTimeoutError(op, self._invoke_timeout_s) from exc
        except Exception as exc:
            if self.is_crash(exc):
                self.crashes += 1
                logger.warning(
                    "Session %s crashed during %s: %s",
                    handle.session_id,
                    op,
                    exc,
                    extra={"event": events.SESSION_CRASHED},
                )
                await self.invalidate(handle)
            else:
                logger.error("Failed to %s: %s", op, exc)
            raise

    # ------------------------------------------------------------------
    # Internal helpers (callers hold no lock)
    # ------------------------------------------------------------------

    async def _ensure_live(self, *, probe: bool, claim: bool) -> tuple[SessionHandle, bool]:
        async with self._lock:
            handle = self._handle
            if handle is not None:
                if not probe or await self._probe(handle):
                    if claim:
                        self._users += 1
                    logger.debug(
                        "Reusing session %s (age %.0f s)",
                        handle.session_id,
                        handle.age_s,
                        extra={"event": events.SESSION_REUSED},
                    )
                    return handle, True
                logger.warning(
                    "Session %s is no longer active, creating a new one...",
                    handle.session_id,
                )
                await self._discard(handle, SessionState.CRASHED)

            handle = await self._connect_locked()
            if claim:
                self._users += 1
            return handle, False

    async def _connect_locked(self) -> SessionHandle:
        self._state = SessionState.CONNECTING
        connected = False
        try:
            handle = await asyncio.wait_for(
                self._driver.connect(),
                timeout=self._connect_timeout_s,
            )
            connected = True
        except TimeoutError as exc:
            logger.error(
                "Session connect timed out after %.1f s",
                self._connect_timeout_s,
                extra={"event": events.SESSION_CONNECT_FAILED},
            )
            raise SessionConnectError(
                "connect", f"timed out after {self._connect_timeout_s:.1f}s"
            ) from exc
        except SessionConnectError as exc:
            logger.error(
                "Session connect failed: %s",
                exc,
                extra={"event": events.SESSION_CONNECT_FAILED},
            )
            raise
        except Exception as exc:
            logger.error(
                "Session connect failed: %s",
                exc,
                extra={"event": events.SESSION_CONNECT_FAILED},
            )
            raise SessionConnectError("connect", str(exc)) from exc
        finally:
            if not connected:
                self._state = SessionState.ABSENT

        self._handle = handle
        self._state = SessionState.LIVE
        self.connects += 1
        logger.info(
            "Session %s connected",
            handle.session_id,
            extra={"event": events.SESSION_CONNECTED},
        )
        return handle

    async def _probe(self, handle: SessionHandle) -> bool:
        try:
            return await asyncio.wait_for(
                self._driver.is_healthy(handle),
                timeout=self._invoke_timeout_s,
            )
        except Exception as exc:  # noqa: BLE001
            logger.debug("Health probe for %s raised: %s", handle.session_id, exc)
            return False

    async def _discard(self, handle: SessionHandle, reason: SessionState) -> None:
        """Forget *handle* and delete it remotely (best effort).  Lock held."""
        self._handle = None
        self._state = reason
        try:
            await asyncio.wait_for(
                self._driver.disconnect(handle),
                timeout=self._invoke_timeout_s,
            )
        except Exception as exc:  # noqa: BLE001
            logger.warning("Error closing session %s (ignored): %s", handle.session_id, exc)
        finally:
            self._state = SessionState.ABSENT
        logger.info(
            "Session %s %s",
            handle.session_id,
            "discarded after crash" if reason is SessionState.CRASHED else "closed",
            extra={"event": events.SESSION_CLOSED},
        )
