"""Runner settings loaded from environment variables.

All settings have defaults. Override via DOCPILOT_* env vars or a YAML
file (see yaml_config.py).
"""
from __future__ import annotations

import inspect
import logging
import os
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, fields
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .interpreter import Notification

logger = logging.getLogger(__name__)


# Push callback for notifications produced during a Run.
# Signature: def callback(notification) -> None, or an async equivalent.
NotificationCallback = Callable[["Notification"], "Awaitable[None] | None"]

MODEL_ALIASES = ("", "sonnet", "opus", "haiku")


async def fire_notification(
    callback: NotificationCallback | None,
    notification: Notification,
) -> None:
    """Deliver a notification if a callback is set.

    Callback failures are logged and dropped so a broken consumer can
    never end a Run.
    """
    if callback is None:
        return
    try:
        result = callback(notification)
        if inspect.isawaitable(result):
            await result
    except Exception:
        logger.debug("Notification callback failed", exc_info=True)


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None:
        return default
    try:
        return float(value)
    except ValueError:
        logger.warning("Ignoring non-numeric %s=%r", name, value)
        return default


@dataclass
class RunnerSettings:
    """Document runner configuration."""

    # Path to the claude executable. Empty means "detect" when
    # auto_detect_path is on, otherwise a configuration error.
    executable_path: str = ""
    auto_detect_path: bool = True
    # One of MODEL_ALIASES; empty lets the CLI choose.
    model_alias: str = ""
    custom_system_prompt: str = ""
    # Wall-clock limit per Run. 0 disables the deadline.
    timeout_seconds: float = 300.0
    # Pass the workspace root to the CLI with --add-dir.
    allow_workspace_access: bool = True
    permissionless_mode: bool = False
    # Session directories live under <root>/<session_namespace>/.
    session_namespace: str = ".docpilot/sessions"
    log_level: str = "INFO"

    def validate(self) -> None:
        """Clamp values to their allowed ranges."""
        if self.model_alias not in MODEL_ALIASES:
            logger.warning(
                "Unknown model alias %r; using the CLI default", self.model_alias,
            )
            self.model_alias = ""
        try:
            self.timeout_seconds = float(self.timeout_seconds)
        except (TypeError, ValueError):
            self.timeout_seconds = RunnerSettings.timeout_seconds
        if self.timeout_seconds < 0:
            self.timeout_seconds = 0.0
        self.executable_path = (self.executable_path or "").strip()
        self.session_namespace = (
            self.session_namespace or RunnerSettings.session_namespace
        ).strip("/") or RunnerSettings.session_namespace
        self.log_level = (self.log_level or "INFO").upper()

    @classmethod
    def field_names(cls) -> set[str]:
        return {f.name for f in fields(cls)}

    @classmethod
    def from_env(cls) -> RunnerSettings:
        """Load settings from DOCPILOT_* environment variables."""
        overrides = {
            k: v for k, v in os.environ.items() if k.startswith("DOCPILOT_")
        }
        if overrides:
            logger.info(
                "RunnerSettings.from_env: DOCPILOT_* overrides: %s",
                ", ".join(sorted(overrides)),
            )
        else:
            logger.debug("RunnerSettings.from_env: no DOCPILOT_* vars set")

        settings = cls(
            executable_path=os.getenv(
                "DOCPILOT_CLAUDE_PATH", cls.executable_path
            ),
            auto_detect_path=_env_bool(
                "DOCPILOT_AUTO_DETECT", cls.auto_detect_path
            ),
            model_alias=os.getenv("DOCPILOT_MODEL", cls.model_alias),
            custom_system_prompt=os.getenv(
                "DOCPILOT_SYSTEM_PROMPT", cls.custom_system_prompt
            ),
            timeout_seconds=_env_float(
                "DOCPILOT_TIMEOUT", cls.timeout_seconds
            ),
            allow_workspace_access=_env_bool(
                "DOCPILOT_WORKSPACE_ACCESS", cls.allow_workspace_access
            ),
            permissionless_mode=_env_bool(
                "DOCPILOT_PERMISSIONLESS", cls.permissionless_mode
            ),
            session_namespace=os.getenv(
                "DOCPILOT_SESSION_NAMESPACE", cls.session_namespace
            ),
            log_level=os.getenv("DOCPILOT_LOG_LEVEL", cls.log_level),
        )
        settings.validate()
        return settings
