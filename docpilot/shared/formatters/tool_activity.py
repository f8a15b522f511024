"""Compact formatting for tool activity lines.

A registry maps claude tool names to a small IR (icon, action verb,
target) that the interpreter turns into activity notifications.

Adding a tool needs one decorated function:

    @activity_formatter("MyTool")
    def _format_my_tool(name, args):
        return ToolActivity(icon="🔧", action="Running", target=...)
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable


@dataclass
class ToolActivity:
    icon: str = "🔧"
    action: str = ""
    target: str = ""


_FORMATTERS: dict[str, Callable[[str, dict[str, Any]], ToolActivity]] = {}
_TOOL_NAME_ALIASES: dict[str, str] = {
    "read": "Read",
    "write": "Write",
    "edit": "Edit",
    "multiedit": "Edit",
    "bash": "Bash",
    "glob": "Glob",
    "grep": "Grep",
    "webfetch": "WebFetch",
    "websearch": "WebSearch",
    "todowrite": "TodoWrite",
    "task": "Task",
}


def activity_formatter(*names: str):
    """Decorator to register a formatter for one or more tool names."""

    def decorator(fn: Callable[[str, dict[str, Any]], ToolActivity]):
        for name in names:
            _FORMATTERS[name] = fn
        return fn

    return decorator


def _normalize_tool_name(name: str) -> str:
    """``mcp__server__tool`` -> ``tool``; lowercase aliases -> canonical."""
    if name.startswith("mcp__") and name.count("__") >= 2:
        name = name.split("__", 2)[2]
    return _TOOL_NAME_ALIASES.get(name.lower(), name)


def _short_path(path: str) -> str:
    """Last two path components."""
    if not path:
        return ""
    parts = path.replace("\\", "/").rstrip("/").split("/")
    return "/".join(parts[-2:]) if len(parts) >= 2 else parts[-1]


def _trunc(text: str, length: int = 60) -> str:
    text = " ".join(str(text).split())
    return text if len(text) <= length else text[: length - 1] + "…"


def format_activity(name: str, args: dict[str, Any] | None = None) -> ToolActivity:
    """Dispatch to a registered formatter or the default."""
    args = args if isinstance(args, dict) else {}
    formatter = _FORMATTERS.get(name) or _FORMATTERS.get(_normalize_tool_name(name))
    if formatter is None:
        return _format_default(name, args)
    return formatter(name, args)


def tool_target(name: str, args: dict[str, Any] | None = None) -> str:
    return format_activity(name, args).target


def _format_default(name: str, args: dict[str, Any]) -> ToolActivity:
    for key in ("file_path", "path", "pattern", "command", "url", "query"):
        value = args.get(key)
        if isinstance(value, str) and value:
            return ToolActivity(icon="🔧", action=name, target=_trunc(value))
    return ToolActivity(icon="🔧", action=name)


@activity_formatter("Read")
def _format_read(name: str, args: dict[str, Any]) -> ToolActivity:
    return ToolActivity(
        icon="\U0001f4c4", action="Reading",
        target=_short_path(str(args.get("file_path") or args.get("path") or "")),
    )


@activity_formatter("Write")
def _format_write(name: str, args: dict[str, Any]) -> ToolActivity:
    return ToolActivity(
        icon="\U0001f4dd", action="Writing",
        target=_short_path(str(args.get("file_path") or args.get("path") or "")),
    )


@activity_formatter("Edit")
def _format_edit(name: str, args: dict[str, Any]) -> ToolActivity:
    return ToolActivity(
        icon="✏", action="Editing",
        target=_short_path(str(args.get("file_path") or args.get("path") or "")),
    )


@activity_formatter("Bash")
def _format_bash(name: str, args: dict[str, Any]) -> ToolActivity:
    return ToolActivity(
        icon="$", action="Running", target=_trunc(args.get("command", ""), 60),
    )


@activity_formatter("Glob", "Grep")
def _format_search(name: str, args: dict[str, Any]) -> ToolActivity:
    pattern = str(args.get("pattern") or "")
    where = str(args.get("path") or "")
    target = f"{pattern} in {_short_path(where)}" if where else pattern
    return ToolActivity(icon="\U0001f50d", action="Searching", target=_trunc(target))


@activity_formatter("WebFetch", "WebSearch")
def _format_web(name: str, args: dict[str, Any]) -> ToolActivity:
    return ToolActivity(
        icon="\U0001f310",
        action="Fetching" if name == "WebFetch" else "Searching web",
        target=_trunc(args.get("url") or args.get("query") or "", 60),
    )


@activity_formatter("TodoWrite")
def _format_todo(name: str, args: dict[str, Any]) -> ToolActivity:
    todos = args.get("todos")
    count = len(todos) if isinstance(todos, list) else 0
    return ToolActivity(icon="☑", action="Planning", target=f"{count} items")


@activity_formatter("Task")
def _format_task(name: str, args: dict[str, Any]) -> ToolActivity:
    return ToolActivity(
        icon="🚀", action="Delegating", target=_trunc(args.get("description", "")),
    )
