"""Driver contract for remote automation sessions.

The session manager never talks to the automation server directly; it goes
through a :class:`SessionDriver`, which exposes exactly four operations:

* ``connect()``: open a new remote session and return its handle.
* ``is_healthy(handle)``: cheap liveness probe for an existing handle.
* ``disconnect(handle)``: tear the session down (best effort).
* ``invoke(handle, op, args)``: run one named operation.

Drivers signal a dead session by raising
:class:`~devicecron.core.exceptions.SessionCrashError`; any other
:class:`~devicecron.core.exceptions.SessionError` is an ordinary command
failure.  The production driver is
:class:`~devicecron.session.webdriver.WebDriverSession`; tests use in-memory
fakes.

Typical usage::

    from devicecron.session.base import SessionDriver, SessionHandle


    class FakeDriver(SessionDriver):
        async def connect(self) -> SessionHandle:
            return SessionHandle(session_id="fake-1")

        async def is_healthy(self, handle: SessionHandle) -> bool:
            return True

        async def disconnect(self, handle: SessionHandle) -> None:
            pass

        async def invoke(self, handle, op, args):
            return {"op": op}
"""

from __future__ import annotations

import logging
import time
from abc import ABC, abstractmethod
from collections.abc import Mapping
from dataclasses import dataclass, field
from types import TracebackType
from typing import Any

__all__ = ["SessionDriver", "SessionHandle"]

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SessionHandle:
    """Opaque reference to one remote session.

    Attributes:
        session_id: Identifier assigned by the automation server.
        created_at: ``time.monotonic()`` reading at creation.
        capabilities: Capabilities the server reported for the session.
    """

    session_id: str
    created_at: float = field(default_factory=time.monotonic, compare=False)
    capabilities: Mapping[str, Any] = field(default_factory=dict, compare=False, repr=False)

    @property
    def age_s(self) -> float:
        return time.monotonic() - self.created_at


class SessionDriver(ABC):
    """Abstract transport to the remote automation backend.

    The async context manager protocol is provided for free; override
    :meth:`close` to release transport resources (HTTP pools and the like).
    """

    async def close(self) -> None:  # noqa: B027
        """Release transport resources.  The default is a no-op."""

    async def __aenter__(self) -> SessionDriver:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        await self.close()

    @abstractmethod
    async def connect(self) -> SessionHandle:
        """Create a new remote session.

        Raises:
            :class:`~devicecron.core.exceptions.SessionConnectError`: if the
            server refuses or cannot be reached.
        """

    @abstractmethod
    async def is_healthy(self, handle: SessionHandle) -> bool:
        """Return ``True`` if *handle* still refers to a usable session.

        Must not raise for an ordinary dead session; return ``False``.
        """

    @abstractmethod
    async def disconnect(self, handle: SessionHandle) -> None:
        """Delete the remote session.  Must not raise for an already-dead one."""

    @abstractmethod
    async def invoke(
        self,
        handle: SessionHandle,
        op: str,
        args: Mapping[str, Any] | None = None,
    ) -> Any:
        """Run operation *op* with *args* against *handle*.

        Raises:
            :class:`~devicecron.core.exceptions.SessionCrashError`: the
            session is gone.
            :class:`~devicecron.core.exceptions.SessionCommandError`: the
            command failed but the session is intact.
        """
