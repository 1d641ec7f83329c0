"""Device operations exposed to executable units.

:class:`SessionCapabilities` is the only object a unit's ``execute``
receives.  Each method is a thin, typed wrapper that routes one operation
through :meth:`SessionManager.invoke_with_retry
<devicecron.session.manager.SessionManager.invoke_with_retry>`, so every
call a unit makes is crash-aware without the unit knowing about sessions.
Units never see a session handle.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from devicecron.session.manager import SessionManager

__all__ = ["SessionCapabilities", "tap_action", "swipe_action"]

logger = logging.getLogger(__name__)


def tap_action(x: int, y: int, *, hold_ms: int = 100) -> dict[str, Any]:
    """Build a W3C pointer action sequence for a single touch tap."""
    return {
        "type": "pointer",
        "id": "finger1",
        "parameters": {"pointerType": "touch"},
        "actions": [
            {"type": "pointerMove", "duration": 0, "x": x, "y": y},
            {"type": "pointerDown", "button": 0},
            {"type": "pause", "duration": hold_ms},
            {"type": "pointerUp", "button": 0},
        ],
    }


def swipe_action(
    start_x: int,
    start_y: int,
    end_x: int,
    end_y: int,
    *,
    duration_ms: int = 300,
) -> dict[str, Any]:
    """Build a W3C pointer action sequence for a straight-line swipe."""
    return {
        "type": "pointer",
        "id": "finger1",
        "parameters": {"pointerType": "touch"},
        "actions": [
            {"type": "pointerMove", "duration": 0, "x": start_x, "y": start_y},
            {"type": "pointerDown", "button": 0},
            {"type": "pointerMove", "duration": duration_ms, "x": end_x, "y": end_y},
            {"type": "pointerUp", "button": 0},
        ],
    }


class SessionCapabilities:
    """Crash-aware device API handed to ``BaseTask.execute``."""

    def __init__(self, manager: SessionManager) -> None:
        self._manager = manager

    async def invoke(self, op: str, **args: Any) -> Any:
        """Run any driver operation by name."""
        return await self._manager.invoke_with_retry(op, args)

    # ------------------------------------------------------------------
    # Screen
    # ------------------------------------------------------------------

    async def page_source(self) -> str:
        return await self.invoke("page_source")

    async def screenshot(self) -> str:
        """Return the current screen as a base64-encoded PNG."""
        return await self.invoke("screenshot")

    async def window_size(self) -> tuple[int, int]:
        rect = await self.invoke("window_rect")
        return int(rect["width"]), int(rect["height"])

    # ------------------------------------------------------------------
    # Input
    # ------------------------------------------------------------------

    async def tap(self, x: int, y: int) -> None:
        await self.invoke("perform_actions", actions=[tap_action(x, y)])
        await self.invoke("release_actions")

    async def swipe(
        self,
        start_x: int,
        start_y: int,
        end_x: int,
        end_y: int,
        *,
        duration_ms: int = 300,
    ) -> None:
        action = swipe_action(start_x, start_y, end_x, end_y, duration_ms=duration_ms)
        await self.invoke("perform_actions", actions=[action])
        await self.invoke("release_actions")

    async def back(self) -> None:
        await self.invoke("back")

    async def press_keycode(self, keycode: int, metastate: int | None = None) -> None:
        await self.invoke("press_keycode", keycode=keycode, metastate=metastate)

    # ------------------------------------------------------------------
    # Device
    # ------------------------------------------------------------------

    async def lock(self) -> None:
        await self.invoke("lock")

    async def unlock(self) -> None:
        await self.invoke("unlock")

    async def is_locked(self) -> bool:
        return bool(await self.invoke("is_locked"))

    # ------------------------------------------------------------------
    # Apps
    # ------------------------------------------------------------------

    async def current_activity(self) -> str:
        return await self.invoke("current_activity")

    async def current_package(self) -> str:
        return await self.invoke("current_package")

    async def activate_app(self, app_id: str) -> None:
        await self.invoke("activate_app", app_id=app_id)

    async def terminate_app(self, app_id: str) -> bool:
        return bool(await self.invoke("terminate_app", app_id=app_id))

    async def query_app_state(self, app_id: str) -> int:
        """0 = not installed, 1 = not running, 3 = background, 4 = foreground."""
        return int(await self.invoke("query_app_state", app_id=app_id))

    async def execute(self, command: str, params: dict[str, Any] | None = None) -> Any:
        """Run a ``mobile:`` command, e.g. ``execute("mobile: shell", {...})``."""
        return await self.invoke("execute", script=command, params=params or {})

    # ------------------------------------------------------------------
    # Timing
    # ------------------------------------------------------------------

    async def pause(self, ms: int) -> None:
        """Sleep locally for *ms* milliseconds (no remote call)."""
        await asyncio.sleep(ms / 1000)
