"""Devicecron application settings loaded from environment and ``.env`` files.

Uses :mod:`pydantic_settings` to parse environment variables (and optionally
an ``.env`` file) into a validated settings object.  The field name is the
**lowercase** version of the env-var name (e.g. ``APPIUM_URL`` →
``appium_url``).

Typical usage::

    from devicecron.core.settings import Settings

    settings = Settings()                       # loads from env + .env
    print(settings.webdriver_capabilities)      # {"platformName": "Android", ...}
"""

from __future__ import annotations

import logging
from typing import Annotated, Any

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

__all__ = ["Settings", "DEFAULT_CRASH_SIGNATURES"]

logger = logging.getLogger(__name__)

#: Error-message fragments that mean the remote automation session is gone.
#: Matched case-insensitively against ``str(exc)``.
DEFAULT_CRASH_SIGNATURES: tuple[str, ...] = (
    "instrumentation process is not running",
    "invalid session id",
    "no such session",
    "session is either terminated or not started",
    "could not proxy command",
    "socket hang up",
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _csv_to_list(value: str) -> list[str]:
    """Split a comma-separated string into a list of non-empty, stripped items."""
    if not value or not value.strip():
        return []
    return [item.strip() for item in value.split(",") if item.strip()]


# ---------------------------------------------------------------------------
# Settings model
# ---------------------------------------------------------------------------


class Settings(BaseSettings):
    """Central application configuration.

    Values are loaded in priority order:

    1. Actual environment variables (highest priority).
    2. ``.env`` file in the working directory.
    3. Field defaults (lowest priority).
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ------------------------------------------------------------------
    # Automation server
    # ------------------------------------------------------------------
    appium_url: str = Field(
        default="http://127.0.0.1:4723",
        description="Base URL of the Appium / WebDriver server.",
    )
    appium_capabilities: dict[str, Any] = Field(
        default_factory=lambda: {
            "platformName": "Android",
            "automationName": "UiAutomator2",
            "noReset": True,
        },
        description="Session capabilities (JSON object in env).",
    )
    appium_implicit_wait_ms: int = Field(
        default=0,
        ge=0,
        description="Implicit element wait applied after connect (0 = leave unset).",
    )

    # ------------------------------------------------------------------
    # Session lifecycle
    # ------------------------------------------------------------------
    session_connect_timeout_s: float = Field(
        default=120.0,
        gt=0,
        description="Upper bound on creating a new remote session.",
    )
    session_invoke_timeout_s: float = Field(
        default=60.0,
        gt=0,
        description="Upper bound on a single remote operation.",
    )
    session_max_retries: int = Field(
        default=1,
        ge=0,
        description="Retries after a crash-signature failure (0 = no retry).",
    )
    session_retry_backoff_s: float = Field(
        default=1.0,
        ge=0.0,
        description="Fixed wait before retrying a crashed operation.",
    )
    session_crash_signatures: Annotated[list[str], NoDecode] = Field(
        default_factory=lambda: list(DEFAULT_CRASH_SIGNATURES),
        description="Error fragments that classify a failure as a session crash "
        "(comma-separated in env).",
    )

    # ------------------------------------------------------------------
    # Scheduler
    # ------------------------------------------------------------------
    task_modules: Annotated[list[str], NoDecode] = Field(
        default_factory=lambda: ["devicecron.tasks"],
        description="Modules exposing a TASKS table (comma-separated in env).",
    )
    task_timeout_s: float = Field(
        default=1800.0,
        gt=0,
        description="Upper bound on one task execution, session setup included.",
    )
    tick_interval_s: float = Field(
        default=60.0,
        gt=0,
        description="Seconds between scheduler ticks in continuous mode.",
    )

    # ------------------------------------------------------------------
    # Operator files
    # ------------------------------------------------------------------
    heartbeat_path: str = Field(
        default="/tmp/devicecron_heartbeat",
        description="File touched after every tick (empty = disabled).",
    )
    stats_path: str = Field(
        default="/tmp/devicecron_stats.json",
        description="JSON lifetime stats snapshot (empty = disabled).",
    )

    # ------------------------------------------------------------------
    # Logging
    # ------------------------------------------------------------------
    log_level: str = Field(default="INFO", description="Logging level.")
    log_format: str = Field(default="text", description="Log format: 'text' or 'json'.")

    # ------------------------------------------------------------------
    # Field validators
    # ------------------------------------------------------------------

    @field_validator("session_crash_signatures", "task_modules", mode="before")
    @classmethod
    def _parse_csv(cls, v: str | list[str]) -> list[str]:
        """Accept a comma-separated string **or** an already-parsed list."""
        if isinstance(v, str):
            return _csv_to_list(v)
        return v

    @field_validator("session_crash_signatures")
    @classmethod
    def _lowercase_signatures(cls, v: list[str]) -> list[str]:
        return [s.lower() for s in v]

    @field_validator("appium_url")
    @classmethod
    def _validate_appium_url(cls, v: str) -> str:
        v = v.strip().rstrip("/")
        if not v.startswith(("http://", "https://")):
            raise ValueError(f"appium_url must start with http:// or https://, got {v!r}")
        return v

    @field_validator("log_level")
    @classmethod
    def _validate_log_level(cls, v: str) -> str:
        allowed = {"DEBUG", "INFO", "WARNING", "ERROR"}
        v_upper = v.upper()
        if v_upper not in allowed:
            raise ValueError(f"log_level must be one of {allowed}, got {v!r}")
        return v_upper

    @field_validator("log_format")
    @classmethod
    def _validate_log_format(cls, v: str) -> str:
        allowed = {"text", "json"}
        v_lower = v.lower()
        if v_lower not in allowed:
            raise ValueError(f"log_format must be one of {allowed}, got {v!r}")
        return v_lower

    # ------------------------------------------------------------------
    # Model validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def _validate_timeouts(self) -> Settings:
        """A task must be allowed at least as long as connecting its session."""
        if self.task_timeout_s < self.session_connect_timeout_s:
            raise ValueError(
                f"task_timeout_s ({self.task_timeout_s}) "
                f"< session_connect_timeout_s ({self.session_connect_timeout_s})"
            )
        return self

    # ------------------------------------------------------------------
    # Derived helpers
    # ------------------------------------------------------------------

    @property
    def webdriver_capabilities(self) -> dict[str, Any]:
        """Return capabilities with vendor keys prefixed by ``appium:``.

        ``platformName`` is a W3C standard capability and is left bare; keys
        that already carry a vendor prefix are passed through unchanged.
        """
        caps: dict[str, Any] = {}
        for key, value in self.appium_capabilities.items():
            if key == "platformName" or ":" in key:
                caps[key] = value
            else:
                caps[f"appium:{key}"] = value
        return caps
