"""W3C WebDriver / Appium session driver over :mod:`httpx`.

:class:`WebDriverSession` implements
:class:`~devicecron.session.base.SessionDriver` against an Appium server's
HTTP API.  It owns one keep-alive :class:`httpx.AsyncClient` and maps every
response onto the Devicecron exception taxonomy:

* ``{"value": {"error": "invalid session id", ...}}`` and transport errors
  (connection refused, reset, proxy failures) →
  :class:`~devicecron.core.exceptions.SessionCrashError`.
* Any other WebDriver error body or non-2xx status →
  :class:`~devicecron.core.exceptions.SessionCommandError`, carrying the
  remote ``error`` code and message.  The session manager still inspects
  the message for crash signatures (e.g. *"instrumentation process is not
  running"* arrives as an ``unknown error``).

The driver does **no** retrying of its own; retry policy lives in
:class:`~devicecron.session.manager.SessionManager`.

Typical usage::

    async with WebDriverSession("http://127.0.0.1:4723", {"platformName": "Android"}) as wd:
        handle = await wd.connect()
        xml = await wd.invoke(handle, "page_source")
        await wd.disconnect(handle)
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from typing import Any, Final, NamedTuple

import httpx

from devicecron.core.exceptions import (
    SessionCommandError,
    SessionConnectError,
    SessionCrashError,
    SessionError,
    SessionTimeoutError,
)
from devicecron.core.settings import Settings
from devicecron.session.base import SessionDriver, SessionHandle

__all__ = ["WebDriverSession", "OPERATIONS"]

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

#: WebDriver error codes that mean the session no longer exists.
_CRASH_ERROR_CODES: Final[frozenset[str]] = frozenset({"invalid session id"})

_DEFAULT_CONNECT_TIMEOUT: Final[float] = 10.0
_DEFAULT_WRITE_TIMEOUT: Final[float] = 10.0

#: Session creation on a cold device can take a minute or more.
_DEFAULT_READ_TIMEOUT: Final[float] = 120.0


# ---------------------------------------------------------------------------
# Operation table
# ---------------------------------------------------------------------------


class _Operation(NamedTuple):
    method: str
    path: str
    body: Callable[[Mapping[str, Any]], dict[str, Any]] | None = None


def _empty(_: Mapping[str, Any]) -> dict[str, Any]:
    return {}


def _app_id(args: Mapping[str, Any]) -> dict[str, Any]:
    return {"appId": args["app_id"]}


def _keycode(args: Mapping[str, Any]) -> dict[str, Any]:
    body: dict[str, Any] = {"keycode": int(args["keycode"])}
    if args.get("metastate") is not None:
        body["metastate"] = int(args["metastate"])
    return body


def _actions(args: Mapping[str, Any]) -> dict[str, Any]:
    return {"actions": list(args["actions"])}


def _execute(args: Mapping[str, Any]) -> dict[str, Any]:
    return {"script": args["script"], "args": [dict(args.get("params") or {})]}


def _lock(args: Mapping[str, Any]) -> dict[str, Any]:
    seconds = args.get("seconds")
    return {"seconds": seconds} if seconds is not None else {}


#: Every operation a unit can run, keyed by name.  Paths are relative to
#: ``/session/{id}``.
OPERATIONS: Final[dict[str, _Operation]] = {
    # Screen
    "page_source": _Operation("GET", "/source"),
    "screenshot": _Operation("GET", "/screenshot"),
    "window_rect": _Operation("GET", "/window/rect"),
    # Input
    "perform_actions": _Operation("POST", "/actions", _actions),
    "release_actions": _Operation("DELETE", "/actions"),
    "back": _Operation("POST", "/back", _empty),
    "press_keycode": _Operation("POST", "/appium/device/press_keycode", _keycode),
    "long_press_keycode": _Operation("POST", "/appium/device/long_press_keycode", _keycode),
    # Device
    "lock": _Operation("POST", "/appium/device/lock", _lock),
    "unlock": _Operation("POST", "/appium/device/unlock", _empty),
    "is_locked": _Operation("POST", "/appium/device/is_locked", _empty),
    # Apps
    "current_activity": _Operation("GET", "/appium/device/current_activity"),
    "current_package": _Operation("GET", "/appium/device/current_package"),
    "activate_app": _Operation("POST", "/appium/device/activate_app", _app_id),
    "terminate_app": _Operation("POST", "/appium/device/terminate_app", _app_id),
    "query_app_state": _Operation("POST", "/appium/device/app_state", _app_id),
    # Mobile commands ("mobile: shell", "mobile: swipeGesture", ...)
    "execute": _Operation("POST", "/execute/sync", _execute),
    # Timeouts
    "get_timeouts": _Operation("GET", "/timeouts"),
    "set_timeouts": _Operation("POST", "/timeouts", lambda args: dict(args)),
}


# ---------------------------------------------------------------------------
# Driver
# ---------------------------------------------------------------------------


class WebDriverSession(SessionDriver):
    """Appium HTTP driver.

    Args:
        base_url: Appium server root (e.g. ``http://127.0.0.1:4723``).
        capabilities: W3C capabilities sent on ``POST /session``.  Vendor
            keys must already carry their ``appium:`` prefix (see
            :attr:`Settings.webdriver_capabilities
            <devicecron.core.settings.Settings.webdriver_capabilities>`).
        implicit_wait_ms: Implicit element wait applied right after connect;
            ``0`` leaves the server default.
        timeout: Optional explicit :class:`httpx.Timeout`.
        transport: Optional custom transport (``httpx.MockTransport`` in
            tests).
    """

    def __init__(
        self,
        base_url: str,
        capabilities: Mapping[str, Any],
        *,
        implicit_wait_ms: int = 0,
        timeout: httpx.Timeout | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._capabilities = dict(capabilities)
        self._implicit_wait_ms = implicit_wait_ms
        self._timeout = timeout or httpx.Timeout(
            connect=_DEFAULT_CONNECT_TIMEOUT,
            read=_DEFAULT_READ_TIMEOUT,
            write=_DEFAULT_WRITE_TIMEOUT,
            pool=_DEFAULT_CONNECT_TIMEOUT,
        )
        self._transport = transport
        self._http: httpx.AsyncClient | None = None

    @classmethod
    def from_settings(cls, settings: Settings) -> WebDriverSession:
        return cls(
            settings.appium_url,
            settings.webdriver_capabilities,
            implicit_wait_ms=settings.appium_implicit_wait_ms,
            timeout=httpx.Timeout(
                connect=_DEFAULT_CONNECT_TIMEOUT,
                read=max(settings.session_connect_timeout_s, settings.session_invoke_timeout_s),
                write=_DEFAULT_WRITE_TIMEOUT,
                pool=_DEFAULT_CONNECT_TIMEOUT,
            ),
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def close(self) -> None:
        """Close the HTTP client.  Safe to call repeatedly."""
        if self._http is not None and not self._http.is_closed:
            await self._http.aclose()
            logger.debug("WebDriver HTTP client closed.")
        self._http = None

    # ------------------------------------------------------------------
    # SessionDriver contract
    # ------------------------------------------------------------------

    async def connect(self) -> SessionHandle:
        payload = {"capabilities": {"alwaysMatch": self._capabilities, "firstMatch": [{}]}}
        logger.info("Creating remote session at %s", self._base_url)
        try:
            value, body = await self._request("connect", "POST", "/session", payload)
        except SessionError as exc:
            raise SessionConnectError("connect", str(exc)) from exc

        session_id = None
        caps: Mapping[str, Any] = {}
        if isinstance(value, dict):
            session_id = value.get("sessionId")
            caps = value.get("capabilities") or {}
        # Legacy JSONWP servers put the id at the top level.
        session_id = session_id or body.get("sessionId")
        if not session_id:
            raise SessionConnectError("connect", "server response carried no sessionId")

        handle = SessionHandle(session_id=str(session_id), capabilities=caps)

        if self._implicit_wait_ms:
            try:
                await self.invoke(handle, "set_timeouts", {"implicit": self._implicit_wait_ms})
            except SessionError as exc:
                await self.disconnect(handle)
                raise SessionConnectError("connect", f"could not set implicit wait: {exc}") from exc

        logger.info("Remote session %s created", handle.session_id)
        return handle

    async def is_healthy(self, handle: SessionHandle) -> bool:
        try:
            await self.invoke(handle, "get_timeouts")
        except SessionError as exc:
            logger.debug("Session %s failed health probe: %s", handle.session_id, exc)
            return False
        return True

    async def disconnect(self, handle: SessionHandle) -> None:
        try:
            await self._request("disconnect", "DELETE", f"/session/{handle.session_id}")
        except SessionError as exc:
            logger.warning("Error deleting session %s (ignored): %s", handle.session_id, exc)
            return
        logger.info("Remote session %s deleted", handle.session_id)

    async def invoke(
        self,
        handle: SessionHandle,
        op: str,
        args: Mapping[str, Any] | None = None,
    ) -> Any:
        operation = OPERATIONS.get(op)
        if operation is None:
            raise SessionCommandError(op, "unknown operation", error_code="unknown command")

        try:
            body = operation.body(args or {}) if operation.body is not None else None
        except (KeyError, TypeError, ValueError) as exc:
            raise SessionCommandError(
                op, f"bad arguments: {exc!r}", error_code="invalid argument"
            ) from exc

        path = f"/session/{handle.session_id}{operation.path}"
        value, _ = await self._request(op, operation.method, path, body)
        return value

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _ensure_http_client(self) -> httpx.AsyncClient:
        """Return the open HTTP client, creating it lazily if necessary."""
        if self._http is None or self._http.is_closed:
            self._http = httpx.AsyncClient(
                base_url=self._base_url,
                timeout=self._timeout,
                transport=self._transport,
                headers={"Content-Type": "application/json; charset=utf-8"},
            )
            logger.debug("WebDriver HTTP client opened for %s", self._base_url)
        return self._http

    async def _request(
        self,
        op: str,
        method: str,
        path: str,
        body: dict[str, Any] | None = None,
    ) -> tuple[Any, dict[str, Any]]:
        """Perform one HTTP call and unwrap the WebDriver ``value``.

        Returns:
            ``(value, full_body)``.

        Raises:
            SessionTimeoutError: the HTTP read or connect timeout fired.
            SessionCrashError: transport failure or ``invalid session id``.
            SessionCommandError: any other error response.
        """
        client = await self._ensure_http_client()
        logger.debug("WebDriver %s %s (op=%s)", method, path, op)

        try:
            response = await client.request(method, path, json=body)
        except httpx.TimeoutException as exc:
            raise SessionTimeoutError(op, self._timeout.read or 0.0) from exc
        except httpx.TransportError as exc:
            raise SessionCrashError(op, f"automation server unreachable: {exc!r}") from exc

        try:
            payload = response.json()
        except ValueError:
            payload = None

        if not isinstance(payload, dict):
            if response.is_success:
                raise SessionCommandError(
                    op,
                    "malformed response body",
                    status_code=response.status_code,
                )
            raise SessionCommandError(
                op,
                response.text[:200] or response.reason_phrase,
                status_code=response.status_code,
            )

        value = payload.get("value")
        error_code = value.get("error") if isinstance(value, dict) else None

        if error_code or not response.is_success:
            message = ""
            if isinstance(value, dict):
                message = str(value.get("message") or "")
            message = message or response.reason_phrase
            if error_code in _CRASH_ERROR_CODES:
                raise SessionCrashError(op, message)
            raise SessionCommandError(
                op,
                message,
                error_code=error_code,
                status_code=response.status_code,
            )

        return value, payload
