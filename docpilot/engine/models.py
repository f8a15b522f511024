"""Core data models for the document runner.

Requests, responses, session info and history entries. Stream events
live in stream.py and notifications in interpreter.py.
"""
from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any

# 10 exchanges, user + assistant each.
MAX_HISTORY_ENTRIES = 20


class HistoryRole(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"


def _utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass(frozen=True)
class RunRequest:
    """Everything one Run needs. Immutable once built."""
    document_text: str
    user_prompt: str
    document_path: str
    selected_text: str | None = None
    root_dir: str | None = None
    bypass_permissions: bool = False
    model_override: str | None = None

    @property
    def content_to_edit(self) -> str:
        """The selection when there is one, otherwise the whole document."""
        return self.selected_text or self.document_text


@dataclass
class TokenUsage:
    input_tokens: int = 0
    output_tokens: int = 0
    cache_read_input_tokens: int = 0
    cache_creation_input_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens

    @classmethod
    def from_dict(cls, usage: dict[str, Any]) -> TokenUsage:
        def _count(key: str) -> int:
            try:
                return int(usage.get(key) or 0)
            except (TypeError, ValueError):
                return 0

        return cls(
            input_tokens=_count("input_tokens"),
            output_tokens=_count("output_tokens"),
            cache_read_input_tokens=_count("cache_read_input_tokens"),
            cache_creation_input_tokens=_count("cache_creation_input_tokens"),
        )

    def to_dict(self) -> dict[str, int]:
        data = asdict(self)
        data["total_tokens"] = self.total_tokens
        return data


@dataclass
class SessionInfo:
    """Conversation continuity state for one document.

    ``session_id`` is the opaque token issued by the CLI on first contact
    and passed back with ``--resume``. Once set it is never cleared.
    """
    session_dir: Path
    session_id: str | None = None
    is_new: bool = True

    def update_session_id(self, session_id: str | None) -> bool:
        """Adopt a token from the stream. Returns True when it changed."""
        if not session_id or session_id == self.session_id:
            return False
        self.session_id = session_id
        return True


@dataclass
class HistoryEntry:
    role: str
    content: str
    timestamp: str = field(default_factory=_utcnow_iso)

    def to_dict(self) -> dict[str, str]:
        return {
            "role": self.role,
            "content": self.content,
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> HistoryEntry | None:
        role = data.get("role")
        content = data.get("content")
        if not isinstance(role, str) or not isinstance(content, str):
            return None
        timestamp = data.get("timestamp")
        return cls(
            role=role,
            content=content,
            timestamp=timestamp if isinstance(timestamp, str) else _utcnow_iso(),
        )


@dataclass
class RunResponse:
    """Terminal result of a Run. Exactly one per Run, success or failure."""
    success: bool
    output: list[str] = field(default_factory=list)
    modified_content: str | None = None
    assistant_message: str | None = None
    error: str | None = None
    error_kind: str | None = None
    token_usage: TokenUsage | None = None
    is_permission_request: bool = False
    session_id: str | None = None
    duration_seconds: float = 0.0

    @property
    def has_changes(self) -> bool:
        return bool(self.success and self.modified_content)
