"""Prompt text sent to claude as the single user turn.

Sections, in order: optional custom system prompt, permission mode,
document context, the content and request, intent rules, and the output
format that the extractor relies on.
"""
from __future__ import annotations

import os
from pathlib import Path

from .extractor import FINAL_CONTENT_DELIMITER, PERMISSION_SENTINEL
from .models import RunRequest


def _permission_section(bypass_permissions: bool) -> str:
    if bypass_permissions:
        return (
            "PERMISSION MODE: AUTONOMOUS\n"
            "You may use every available tool without asking first. Read, "
            "write and run commands as the task requires.\n\n"
        )
    return (
        "PERMISSION MODE: INTERACTIVE\n"
        "If you need the user's approval before acting, your reply MUST "
        f'contain the text "{PERMISSION_SENTINEL}" and explain what you '
        "want to do.\n\n"
    )


def _context_section(
    request: RunRequest,
    session_dir: Path | str,
    allow_workspace_access: bool,
) -> str:
    lines = [
        "You are helping the user work on a text document. Answer in the "
        "language of the user's request.",
        "",
        "DOCUMENT:",
        f"- Path: {request.document_path}",
        f"- Name: {os.path.basename(request.document_path)}",
        f"- Session directory: {session_dir}",
    ]
    if request.selected_text:
        lines.append("- Scope: the user selected part of the document; "
                     "work on the selection only")
    if allow_workspace_access and request.root_dir:
        lines.append(f"- Workspace root: {request.root_dir}")
        lines.append("- Other workspace files are readable by absolute path "
                     "under the workspace root")
    return "\n".join(lines) + "\n\n"


def _intent_section() -> str:
    return (
        "DECIDE WHAT THE USER WANTS:\n"
        "1. A question, review or analysis: answer directly and do NOT use "
        f"the {FINAL_CONTENT_DELIMITER} separator.\n"
        "2. A change to the document: use the edit format below.\n\n"
    )


def _output_format_section() -> str:
    return (
        "EDIT FORMAT:\n"
        "[at most two sentences describing the change]\n"
        f"{FINAL_CONTENT_DELIMITER}\n"
        "[the complete new content]\n\n"
        "Rules for edits:\n"
        "- Everything that belongs in the document goes after the separator.\n"
        "- Do not wrap the content in a code fence.\n"
        "- Do not add commentary after the content.\n"
        "- Never return an empty body after the separator.\n"
    )


def build_prompt(
    request: RunRequest,
    session_dir: Path | str,
    *,
    custom_system_prompt: str = "",
    allow_workspace_access: bool = True,
    bypass_permissions: bool = False,
) -> str:
    parts = []
    if custom_system_prompt:
        parts.append(custom_system_prompt.rstrip() + "\n\n")
    parts.append(_permission_section(bypass_permissions))
    parts.append(_context_section(request, session_dir, allow_workspace_access))
    parts.append(f"Current content:\n---\n{request.content_to_edit}\n---\n\n")
    parts.append(f"USER REQUEST: {request.user_prompt}\n\n")
    parts.append(_intent_section())
    parts.append(_output_format_section())
    return "".join(parts)
