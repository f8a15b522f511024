"""Tests for docpilot.shared.formatters.tool_activity."""

import pytest

from docpilot.shared.formatters.tool_activity import (
    ToolActivity,
    _normalize_tool_name,
    _short_path,
    activity_formatter,
    format_activity,
    tool_target,
)


class TestNormalizeToolName:
    def test_mcp_prefix_stripped(self):
        assert _normalize_tool_name("mcp__notes__read") == "Read"

    def test_lowercase_alias(self):
        assert _normalize_tool_name("multiedit") == "Edit"

    def test_unknown_passthrough(self):
        assert _normalize_tool_name("Custom") == "Custom"


def test_short_path():
    assert _short_path("/a/b/c/d.md") == "c/d.md"
    assert _short_path("d.md") == "d.md"
    assert _short_path("") == ""


@pytest.mark.parametrize("name,args,action,target", [
    ("Read", {"file_path": "/vault/notes/a.md"}, "Reading", "notes/a.md"),
    ("Write", {"file_path": "/vault/b.md"}, "Writing", "vault/b.md"),
    ("Edit", {"file_path": "c.md"}, "Editing", "c.md"),
    ("Bash", {"command": "ls   -la"}, "Running", "ls -la"),
    ("Grep", {"pattern": "TODO", "path": "/vault/notes"}, "Searching", "TODO in vault/notes"),
    ("Glob", {"pattern": "*.md"}, "Searching", "*.md"),
    ("WebFetch", {"url": "https://example.com"}, "Fetching", "https://example.com"),
    ("WebSearch", {"query": "markdown tables"}, "Searching web", "markdown tables"),
    ("TodoWrite", {"todos": [1, 2, 3]}, "Planning", "3 items"),
    ("Task", {"description": "review links"}, "Delegating", "review links"),
])
def test_registered_formatters(name, args, action, target):
    activity = format_activity(name, args)
    assert activity.action == action
    assert activity.target == target


def test_default_formatter_uses_known_keys():
    activity = format_activity("Mystery", {"query": "x" * 100})
    assert activity.action == "Mystery"
    assert activity.target.endswith("…")
    assert len(activity.target) == 60


def test_non_dict_args_tolerated():
    assert format_activity("Read", None).target == ""
    assert format_activity("Read", "garbage").target == ""


def test_non_string_search_args_tolerated():
    activity = format_activity("Grep", {"pattern": 42, "path": ["a", "b"]})
    assert activity.action == "Searching"
    assert activity.target.startswith("42 in ")


def test_tool_target():
    assert tool_target("mcp__fs__read", {"path": "/x/y/z.md"}) == "y/z.md"


def test_custom_registration():
    @activity_formatter("Lint")
    def _lint(name, args):
        return ToolActivity(icon="L", action="Linting", target=args.get("file", ""))

    assert format_activity("Lint", {"file": "a.md"}).action == "Linting"
