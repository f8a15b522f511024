"""Decoder for the claude CLI ``--output-format stream-json`` protocol.

Stdout carries one JSON record per line. Bytes arrive in arbitrary chunks,
so ``LineBuffer`` keeps the trailing partial line until its newline shows
up. Each complete line decodes into exactly one ``StreamEvent``:

    system/init                     -> InitEvent
    stream_event/content_block_delta -> StreamDeltaEvent
    assistant                       -> AssistantMessageEvent
    user with tool_result blocks    -> ToolActivityEvent
    result                          -> ResultEvent
    other known records             -> LifecycleEvent
    anything else                   -> UnrecognizedEvent

Malformed lines become ``UnrecognizedEvent`` and never stop decoding.
"""
from __future__ import annotations

import codecs
import json
import logging
from collections.abc import AsyncIterator, Callable, Iterable, Iterator
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, ClassVar, Union

from .models import TokenUsage

logger = logging.getLogger(__name__)


class DeltaKind(str, Enum):
    TEXT = "text"
    TOOL_USE = "tool_use"
    THINKING = "thinking"
    OTHER = "other"


_DELTA_KINDS = {
    "text_delta": DeltaKind.TEXT,
    "input_json_delta": DeltaKind.TOOL_USE,
    "thinking_delta": DeltaKind.THINKING,
}


@dataclass
class InitEvent:
    kind: ClassVar[str] = "init"
    raw: str
    session_id: str | None = None
    model: str | None = None
    cwd: str | None = None


@dataclass
class StreamDeltaEvent:
    kind: ClassVar[str] = "stream-delta"
    raw: str
    text: str = ""
    delta_kind: DeltaKind = DeltaKind.OTHER


@dataclass
class AssistantMessageEvent:
    kind: ClassVar[str] = "assistant-message"
    raw: str
    blocks: list[dict[str, Any]] = field(default_factory=list)
    message_id: str | None = None

    def text_blocks(self) -> list[str]:
        return [
            block["text"] for block in self.blocks
            if block.get("type") == "text" and isinstance(block.get("text"), str)
        ]

    def tool_use_blocks(self) -> list[dict[str, Any]]:
        return [block for block in self.blocks if block.get("type") == "tool_use"]


@dataclass
class ResultEvent:
    kind: ClassVar[str] = "result"
    raw: str
    usage: TokenUsage | None = None
    is_error: bool = False
    duration_ms: int | None = None
    result: str | None = None
    session_id: str | None = None


@dataclass
class ToolCompletion:
    """One finished tool call. Name, target and duration are filled in by
    the interpreter from the matching tool_use block."""
    tool_id: str
    is_error: bool = False
    tool_name: str | None = None
    target: str | None = None
    duration_seconds: float | None = None


@dataclass
class ToolActivityEvent:
    kind: ClassVar[str] = "tool-activity"
    raw: str
    completions: list[ToolCompletion] = field(default_factory=list)


@dataclass
class LifecycleEvent:
    kind: ClassVar[str] = "lifecycle"
    raw: str
    record_type: str = ""
    subtype: str | None = None


@dataclass
class UnrecognizedEvent:
    kind: ClassVar[str] = "unrecognized"
    raw: str
    reason: str = ""


StreamEvent = Union[
    InitEvent,
    StreamDeltaEvent,
    AssistantMessageEvent,
    ResultEvent,
    ToolActivityEvent,
    LifecycleEvent,
    UnrecognizedEvent,
]


# ── Line reassembly ──────────────────────────────────────────


class LineBuffer:
    """Reassembles newline-delimited text from arbitrary byte chunks.

    UTF-8 sequences split across chunk boundaries are decoded correctly.
    """

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._pending = ""

    @property
    def pending(self) -> str:
        return self._pending

    def feed(self, chunk: bytes) -> list[str]:
        """Add a chunk and return every line it completed."""
        self._pending += self._decoder.decode(chunk)
        if "\n" not in self._pending:
            return []
        *lines, self._pending = self._pending.split("\n")
        return [line[:-1] if line.endswith("\r") else line for line in lines]

    def close(self) -> str:
        """Flush the decoder and drop any unterminated remainder.

        The CLI terminates every record with a newline, so leftover text
        means the process was cut off mid-record.
        """
        remainder = self._pending + self._decoder.decode(b"", final=True)
        self._pending = ""
        if remainder.strip():
            logger.warning(
                "Discarding %d bytes of truncated output at end of stream",
                len(remainder),
            )
        return remainder


# ── Record decoding ──────────────────────────────────────────


def _as_dict(value: Any) -> dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _as_str(value: Any) -> str | None:
    return value if isinstance(value, str) and value else None


def _decode_system(raw: str, record: dict[str, Any]) -> StreamEvent:
    subtype = _as_str(record.get("subtype"))
    if subtype == "init":
        return InitEvent(
            raw=raw,
            session_id=_as_str(record.get("session_id")),
            model=_as_str(record.get("model")),
            cwd=_as_str(record.get("cwd")),
        )
    return LifecycleEvent(raw=raw, record_type="system", subtype=subtype)


def _decode_stream_event(raw: str, record: dict[str, Any]) -> StreamEvent:
    inner = _as_dict(record.get("event"))
    event_type = _as_str(inner.get("type")) or _as_str(record.get("event_type"))
    if event_type != "content_block_delta":
        return LifecycleEvent(raw=raw, record_type="stream_event", subtype=event_type)

    delta = _as_dict(inner.get("delta") or record.get("delta"))
    delta_kind = _DELTA_KINDS.get(_as_str(delta.get("type")) or "", DeltaKind.OTHER)
    text = delta.get("text") or delta.get("partial_json") or delta.get("thinking") or ""
    return StreamDeltaEvent(
        raw=raw,
        text=text if isinstance(text, str) else "",
        delta_kind=delta_kind,
    )


def _decode_assistant(raw: str, record: dict[str, Any]) -> StreamEvent:
    message = _as_dict(record.get("message"))
    content = message.get("content")
    if isinstance(content, str):
        blocks = [{"type": "text", "text": content}]
    elif isinstance(content, list):
        blocks = [block for block in content if isinstance(block, dict)]
    else:
        blocks = []
    return AssistantMessageEvent(
        raw=raw, blocks=blocks, message_id=_as_str(message.get("id")),
    )


def _decode_user(raw: str, record: dict[str, Any]) -> StreamEvent:
    content = _as_dict(record.get("message")).get("content")
    completions = []
    if isinstance(content, list):
        for block in content:
            if isinstance(block, dict) and block.get("type") == "tool_result":
                completions.append(ToolCompletion(
                    tool_id=str(block.get("tool_use_id", "")),
                    is_error=bool(block.get("is_error")),
                ))
    if completions:
        return ToolActivityEvent(raw=raw, completions=completions)
    return LifecycleEvent(raw=raw, record_type="user")


def _decode_result(raw: str, record: dict[str, Any]) -> StreamEvent:
    usage = record.get("usage")
    subtype = _as_str(record.get("subtype")) or ""
    duration = record.get("duration_ms")
    return ResultEvent(
        raw=raw,
        usage=TokenUsage.from_dict(usage) if isinstance(usage, dict) else None,
        is_error=bool(record.get("is_error")) or subtype.startswith("error"),
        duration_ms=duration if isinstance(duration, int) else None,
        result=record.get("result") if isinstance(record.get("result"), str) else None,
        session_id=_as_str(record.get("session_id")),
    )


_DECODERS: dict[str, Callable[[str, dict[str, Any]], StreamEvent]] = {
    "system": _decode_system,
    "stream_event": _decode_stream_event,
    "assistant": _decode_assistant,
    "user": _decode_user,
    "result": _decode_result,
}


def decode_line(line: str) -> StreamEvent:
    """Decode one complete stdout line into a StreamEvent."""
    try:
        record = json.loads(line)
    except ValueError as exc:
        return UnrecognizedEvent(raw=line, reason=f"invalid JSON: {exc}")
    if not isinstance(record, dict):
        return UnrecognizedEvent(raw=line, reason="record is not a JSON object")

    record_type = record.get("type")
    decoder = _DECODERS.get(record_type) if isinstance(record_type, str) else None
    if decoder is None:
        return UnrecognizedEvent(
            raw=line, reason=f"unknown record type {record_type!r}",
        )
    try:
        return decoder(line, record)
    except (TypeError, AttributeError, ValueError) as exc:
        return UnrecognizedEvent(
            raw=line, reason=f"malformed {record_type} record: {exc}",
        )


def iter_events(lines: Iterable[str]) -> Iterator[StreamEvent]:
    """Decode already-split lines, skipping blank ones."""
    for line in lines:
        if line.strip():
            yield decode_line(line)


async def decode_stream(
    chunks: AsyncIterator[bytes],
) -> AsyncIterator[tuple[str, StreamEvent]]:
    """Lazily turn raw stdout chunks into ``(line, event)`` pairs."""
    buffer = LineBuffer()
    async for chunk in chunks:
        for line in buffer.feed(chunk):
            if line.strip():
                yield line, decode_line(line)
    buffer.close()
