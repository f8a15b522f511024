"""docpilot engine: drives the claude CLI against a single document."""
from .models import (
    HistoryEntry,
    HistoryRole,
    RunRequest,
    RunResponse,
    SessionInfo,
    TokenUsage,
)
from .config import RunnerSettings
from .errors import (
    ConfigurationError,
    DecodeWarning,
    DocpilotError,
    PersistenceError,
    ProcessExitError,
    RunCancelledError,
    RunInProgressError,
    RunTimeoutError,
    SpawnError,
)

__all__ = [
    # Runner (lazy import to avoid circular deps)
    "DocumentRunner",
    # Models
    "HistoryEntry",
    "HistoryRole",
    "RunRequest",
    "RunResponse",
    "SessionInfo",
    "TokenUsage",
    # Config
    "RunnerSettings",
    # YAML config (lazy import)
    "load_yaml_settings",
    # Notifications (lazy import)
    "Notification",
    "NotificationKind",
    # Errors
    "ConfigurationError",
    "DecodeWarning",
    "DocpilotError",
    "PersistenceError",
    "ProcessExitError",
    "RunCancelledError",
    "RunInProgressError",
    "RunTimeoutError",
    "SpawnError",
]


def __getattr__(name: str):
    if name == "DocumentRunner":
        from .runner import DocumentRunner
        return DocumentRunner
    if name == "load_yaml_settings":
        from .yaml_config import load_yaml_settings
        return load_yaml_settings
    if name == "Notification":
        from .interpreter import Notification
        return Notification
    if name == "NotificationKind":
        from .interpreter import NotificationKind
        return NotificationKind
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
