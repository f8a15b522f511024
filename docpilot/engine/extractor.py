"""Decides what the assistant's final text means for the document.

The prompt asks the assistant to put the new document body after
``---FINAL-CONTENT---``. Text with the delimiter is an edit; text without
it is a conversational answer. A response containing ``REQUIRED_APPROVAL``
is a request for permission rather than a result.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass

from .errors import DocpilotError
from .interpreter import ParsedOutput
from .models import RunResponse

logger = logging.getLogger(__name__)

FINAL_CONTENT_DELIMITER = "---FINAL-CONTENT---"
PERMISSION_SENTINEL = "REQUIRED_APPROVAL"

EMPTY_EDIT_ERROR = "Response contained an empty edit after the final-content delimiter"
NO_CONTENT_ERROR = "No content received from Claude Code"


@dataclass
class ExtractedContent:
    content: str
    has_changes: bool


def extract_final_content(text: str) -> ExtractedContent:
    """Return the text after the last delimiter, stripped.

    ``has_changes`` is True iff the delimiter occurs at all, even when
    the tail is blank.
    """
    _, sep, tail = text.rpartition(FINAL_CONTENT_DELIMITER)
    if not sep:
        return ExtractedContent(content="", has_changes=False)
    return ExtractedContent(content=tail.strip(), has_changes=True)


def detect_permission_request(text: str) -> bool:
    return PERMISSION_SENTINEL in text


def build_response(
    parsed: ParsedOutput,
    output: list[str],
    *,
    is_permission_request: bool | None = None,
    duration_seconds: float = 0.0,
) -> RunResponse:
    """Build the terminal response for a Run whose process exited cleanly."""
    text = parsed.assistant_text
    if is_permission_request is None:
        is_permission_request = detect_permission_request(text)

    common = dict(
        output=list(output),
        token_usage=parsed.token_usage,
        is_permission_request=is_permission_request,
        session_id=parsed.session_id,
        duration_seconds=duration_seconds,
    )

    if not text:
        return RunResponse(
            success=False, error=NO_CONTENT_ERROR, error_kind="EmptyResponse",
            **common,
        )

    extracted = extract_final_content(text)
    if extracted.has_changes and not extracted.content:
        # Applying a blank edit would wipe the document.
        logger.warning("Delimiter present with blank tail; refusing empty edit")
        return RunResponse(
            success=False,
            assistant_message=text,
            error=EMPTY_EDIT_ERROR,
            error_kind="EmptyEdit",
            **common,
        )

    return RunResponse(
        success=True,
        modified_content=extracted.content,
        assistant_message=text,
        **common,
    )


def build_error_response(
    error: BaseException | str,
    output: list[str],
    *,
    error_kind: str | None = None,
    parsed: ParsedOutput | None = None,
    duration_seconds: float = 0.0,
) -> RunResponse:
    """Build a failure response. Captured stdout lines are kept."""
    if error_kind is None:
        if isinstance(error, DocpilotError):
            error_kind = error.kind
        elif isinstance(error, BaseException):
            error_kind = type(error).__name__
    return RunResponse(
        success=False,
        output=list(output),
        error=str(error),
        error_kind=error_kind,
        token_usage=parsed.token_usage if parsed else None,
        assistant_message=(parsed.assistant_text or None) if parsed else None,
        session_id=parsed.session_id if parsed else None,
        duration_seconds=duration_seconds,
    )
