"""Remote automation session driver, lifecycle manager, and device API."""

from devicecron.session.base import SessionDriver, SessionHandle
from devicecron.session.capabilities import SessionCapabilities, swipe_action, tap_action
from devicecron.session.manager import SessionManager, SessionState
from devicecron.session.webdriver import OPERATIONS, WebDriverSession

__all__ = [
    "SessionDriver",
    "SessionHandle",
    "SessionCapabilities",
    "SessionManager",
    "SessionState",
    "WebDriverSession",
    "OPERATIONS",
    "swipe_action",
    "tap_action",
]
