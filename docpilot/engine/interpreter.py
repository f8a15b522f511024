"""Turns decoded stream events into caller notifications.

The interpreter is a fold over one Run's events, applied in arrival order
on the event loop. Each ``interpret()`` call returns the notifications the
event produced (pushed to the caller right away) and updates the running
``ParsedOutput`` (assistant text, token usage, session id).

Assistant text has two sources. ``content_block_delta`` records carry the
text incrementally; complete ``assistant`` records repeat it. The complete
record is only used as a fallback for messages whose text was not
streamed, so each message is counted once.
"""
from __future__ import annotations

import logging
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from docpilot.shared.formatters.tool_activity import ToolActivity, format_activity

from .errors import DecodeWarning
from .models import SessionInfo, TokenUsage
from .stream import (
    AssistantMessageEvent,
    DeltaKind,
    InitEvent,
    LifecycleEvent,
    ResultEvent,
    StreamDeltaEvent,
    StreamEvent,
    ToolActivityEvent,
    UnrecognizedEvent,
    iter_events,
)

logger = logging.getLogger(__name__)


class NotificationKind(str, Enum):
    STATUS = "status"
    TEXT_DELTA = "text_delta"
    ASSISTANT_TEXT = "assistant_text"
    TEXT_FINISH = "text_finish"
    SESSION = "session"
    ACTIVITY = "activity"
    USAGE = "usage"
    RAW = "raw"
    STDERR = "stderr"
    WARNING = "warning"


@dataclass
class Notification:
    """A push-delivered signal produced during a Run."""
    kind: NotificationKind
    text: str = ""
    is_markdown: bool = False
    is_streaming: bool = False
    is_assistant_message: bool = False
    # False only for raw passthrough of lines that failed to decode.
    authoritative: bool = True
    metadata: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def status(cls, text: str, **metadata: Any) -> Notification:
        return cls(kind=NotificationKind.STATUS, text=text, metadata=metadata)

    @classmethod
    def warning(cls, text: str, **metadata: Any) -> Notification:
        return cls(kind=NotificationKind.WARNING, text=text, metadata=metadata)


@dataclass
class ParsedOutput:
    assistant_text: str = ""
    token_usage: TokenUsage | None = None
    completed: bool = False
    session_id: str | None = None


@dataclass
class _ActiveTool:
    name: str
    activity: ToolActivity
    started_at: float


class EventInterpreter:
    """Stateful interpretation of one Run's event sequence."""

    def __init__(
        self,
        session: SessionInfo | None = None,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._session = session
        self._clock = clock
        self._text_parts: list[str] = []
        self._deltas_since_message = False
        self._streamed_text = False
        self._tools: dict[str, _ActiveTool] = {}
        self.session_id: str | None = session.session_id if session else None
        self.token_usage: TokenUsage | None = None
        self.completed = False
        self.result_is_error = False

    @property
    def parsed(self) -> ParsedOutput:
        return ParsedOutput(
            assistant_text="".join(self._text_parts).strip(),
            token_usage=self.token_usage,
            completed=self.completed,
            session_id=self.session_id,
        )

    def interpret(self, event: StreamEvent) -> list[Notification]:
        if isinstance(event, StreamDeltaEvent):
            return self._on_delta(event)
        if isinstance(event, AssistantMessageEvent):
            return self._on_assistant(event)
        if isinstance(event, InitEvent):
            return self._on_init(event)
        if isinstance(event, ToolActivityEvent):
            return self._on_tool_activity(event)
        if isinstance(event, ResultEvent):
            return self._on_result(event)
        if isinstance(event, UnrecognizedEvent):
            return self._on_unrecognized(event)
        if isinstance(event, LifecycleEvent):
            logger.debug(
                "Lifecycle record type=%s subtype=%s",
                event.record_type, event.subtype,
            )
            return []
        logger.warning("Unhandled stream event %r", event)
        return []

    # ── handlers ─────────────────────────────────────────────

    def _adopt_session_id(self, session_id: str | None) -> bool:
        if not session_id or session_id == self.session_id:
            return False
        self.session_id = session_id
        if self._session is not None:
            self._session.update_session_id(session_id)
        return True

    def _on_init(self, event: InitEvent) -> list[Notification]:
        if not self._adopt_session_id(event.session_id):
            return []
        return [Notification(
            kind=NotificationKind.SESSION,
            text=f"Session: {event.session_id}",
            metadata={"session_id": event.session_id, "model": event.model},
        )]

    def _on_delta(self, event: StreamDeltaEvent) -> list[Notification]:
        if event.delta_kind is not DeltaKind.TEXT or not event.text:
            return []
        self._text_parts.append(event.text)
        self._deltas_since_message = True
        self._streamed_text = True
        return [Notification(
            kind=NotificationKind.TEXT_DELTA,
            text=event.text,
            is_markdown=True,
            is_streaming=True,
            is_assistant_message=True,
        )]

    def _on_assistant(self, event: AssistantMessageEvent) -> list[Notification]:
        notifications: list[Notification] = []
        if not self._deltas_since_message:
            texts = event.text_blocks()
            for text in texts:
                self._text_parts.append(text + "\n")
            if texts:
                notifications.append(Notification(
                    kind=NotificationKind.ASSISTANT_TEXT,
                    text="\n".join(texts),
                    is_markdown=True,
                    is_assistant_message=True,
                ))
        self._deltas_since_message = False

        for block in event.tool_use_blocks():
            notifications.append(self._start_tool(block))
        return notifications

    def _start_tool(self, block: dict[str, Any]) -> Notification:
        tool_id = str(block.get("id", ""))
        name = str(block.get("name") or "tool")
        activity = format_activity(name, block.get("input"))
        self._tools[tool_id] = _ActiveTool(
            name=name, activity=activity, started_at=self._clock(),
        )
        text = " ".join(
            part for part in (activity.icon, activity.action, activity.target) if part
        )
        return Notification(
            kind=NotificationKind.ACTIVITY,
            text=text,
            metadata={
                "phase": "started",
                "tool_id": tool_id,
                "tool_name": name,
                "icon": activity.icon,
                "action": activity.action,
                "target": activity.target,
            },
        )

    def _on_tool_activity(self, event: ToolActivityEvent) -> list[Notification]:
        notifications = []
        now = self._clock()
        for completion in event.completions:
            tool = self._tools.pop(completion.tool_id, None)
            activity = tool.activity if tool else ToolActivity()
            completion.tool_name = tool.name if tool else "tool"
            completion.target = activity.target
            if tool is not None:
                completion.duration_seconds = max(0.0, now - tool.started_at)

            phase = "failed" if completion.is_error else "completed"
            text = " ".join(
                part for part in (
                    "✗" if completion.is_error else "✓",
                    activity.action or completion.tool_name,
                    activity.target,
                ) if part
            )
            if completion.duration_seconds is not None:
                text = f"{text} ({completion.duration_seconds:.1f}s)"
            notifications.append(Notification(
                kind=NotificationKind.ACTIVITY,
                text=text,
                metadata={
                    "phase": phase,
                    "tool_id": completion.tool_id,
                    "tool_name": completion.tool_name,
                    "icon": activity.icon,
                    "action": activity.action,
                    "target": activity.target,
                    "duration_seconds": completion.duration_seconds,
                },
            ))
        return notifications

    def _on_result(self, event: ResultEvent) -> list[Notification]:
        self.completed = True
        self.result_is_error = event.is_error
        notifications: list[Notification] = []
        if self._adopt_session_id(event.session_id):
            notifications.append(Notification(
                kind=NotificationKind.SESSION,
                text=f"Session: {event.session_id}",
                metadata={"session_id": event.session_id},
            ))
        if self._streamed_text:
            notifications.append(Notification(
                kind=NotificationKind.TEXT_FINISH,
                is_markdown=True,
                is_assistant_message=True,
            ))
        if event.usage is not None:
            self.token_usage = event.usage
            notifications.append(Notification(
                kind=NotificationKind.USAGE,
                text=(
                    f"Tokens: {event.usage.input_tokens} in / "
                    f"{event.usage.output_tokens} out "
                    f"({event.usage.total_tokens} total)"
                ),
                metadata=event.usage.to_dict(),
            ))
        if event.is_error:
            notifications.append(Notification.warning(
                f"Claude Code reported an error result: {event.result or 'no details'}",
            ))
        return notifications

    def _on_unrecognized(self, event: UnrecognizedEvent) -> list[Notification]:
        logger.debug("Unrecognized stdout line (%s): %.200s", event.reason, event.raw)
        return [Notification(
            kind=NotificationKind.RAW,
            text=f"[raw] {event.raw}",
            authoritative=False,
            metadata={"reason": event.reason, "warning": DecodeWarning.__name__},
        )]


def parse_output(lines: Iterable[str]) -> ParsedOutput:
    """Fold a complete list of stdout lines into a ParsedOutput."""
    interpreter = EventInterpreter()
    for event in iter_events(lines):
        interpreter.interpret(event)
    return interpreter.parsed
