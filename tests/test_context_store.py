"""Tests for DocumentContextManager."""
from __future__ import annotations

import asyncio
import json
from pathlib import Path

import pytest

from docpilot.engine.config import RunnerSettings
from docpilot.engine.errors import RunInProgressError
from docpilot.engine.interpreter import Notification, NotificationKind
from docpilot.engine.models import RunRequest, RunResponse
from docpilot.shared.services.context_store import DocumentContextManager
from docpilot.shared.services.session_store import CONTEXT_FILE, SessionStore


class _ScriptedRunner:
    """Runner double: emits a few notifications, then waits for release."""

    def __init__(self, settings):
        self.settings = settings
        self.release = asyncio.Event()
        self.cancelled = False

    def update_settings(self, settings):
        self.settings = settings

    def cancel(self):
        self.cancelled = True
        self.release.set()
        return True

    async def run(self, request, on_notification):
        await on_notification(Notification(
            kind=NotificationKind.SESSION, text="Session: s-9", metadata={"session_id": "s-9"},
        ))
        await on_notification(Notification(
            kind=NotificationKind.ACTIVITY, text="📄 Reading doc.md",
            metadata={"phase": "started", "tool_name": "Read"},
        ))
        await on_notification(Notification.status("Working"))
        await on_notification(Notification(
            kind=NotificationKind.TEXT_DELTA, text="partial", is_streaming=True,
        ))
        await self.release.wait()
        return RunResponse(
            success=True, assistant_message="All good.", modified_content="", session_id="s-9",
        )


def _manager() -> DocumentContextManager:
    return DocumentContextManager(RunnerSettings(), runner_factory=_ScriptedRunner)


def _request(path: str, root: Path) -> RunRequest:
    return RunRequest(document_text="x", user_prompt="Check it", document_path=path, root_dir=str(root))


def test_get_context_creates_once():
    manager = _manager()
    assert manager.has_context("a.md") is False
    ctx = manager.get_context("a.md")
    assert manager.get_context("a.md") is ctx
    assert manager.has_context("a.md") is True


@pytest.mark.asyncio
async def test_run_records_context(tmp_path: Path):
    manager = _manager()
    forwarded = []
    ctx = manager.get_context("a.md")
    ctx.runner.release.set()

    response = await manager.run(_request("a.md", tmp_path), forwarded.append)

    assert response.success is True
    assert ctx.is_running is False
    assert ctx.session_id == "s-9"
    assert [(e.role, e.content) for e in ctx.history] == [("user", "Check it"), ("assistant", "All good.")]
    assert ctx.activity_steps[0]["tool_name"] == "Read"
    assert ctx.output_lines == ["Working"]
    assert len(forwarded) == 4
    assert ctx.current_response is response


@pytest.mark.asyncio
async def test_concurrent_run_for_same_document_is_refused(tmp_path: Path):
    manager = _manager()
    first = asyncio.create_task(manager.run(_request("a.md", tmp_path)))
    await asyncio.sleep(0)
    assert manager.get_context("a.md").is_running is True

    with pytest.raises(RunInProgressError):
        await manager.run(_request("a.md", tmp_path))

    # A different document runs independently.
    other = manager.get_context("b.md")
    other.runner.release.set()
    assert (await manager.run(_request("b.md", tmp_path))).success is True

    manager.get_context("a.md").runner.release.set()
    assert (await first).success is True
    assert manager.get_context("a.md").is_running is False


@pytest.mark.asyncio
async def test_cancel_only_when_running(tmp_path: Path):
    manager = _manager()
    assert manager.cancel("a.md") is False
    task = asyncio.create_task(manager.run(_request("a.md", tmp_path)))
    await asyncio.sleep(0)
    assert manager.cancel("a.md") is True
    await task


def test_clear_history():
    manager = _manager()
    ctx = manager.get_context("a.md")
    ctx.output_lines.append("x")
    ctx.activity_steps.append({"text": "y"})
    manager.clear_history("a.md")
    assert ctx.output_lines == [] and ctx.activity_steps == [] and ctx.history == []
    manager.clear_history("missing.md")


@pytest.mark.asyncio
async def test_save_and_load_contexts(tmp_path: Path):
    manager = _manager()
    manager.get_context("a.md").runner.release.set()
    await manager.run(_request("a.md", tmp_path))

    path = manager.save_context("a.md", tmp_path)
    assert path == SessionStore().session_dir("a.md", tmp_path) / CONTEXT_FILE
    data = json.loads(path.read_text())
    assert data["document_path"] == "a.md"
    assert data["session_id"] == "s-9"

    restored = _manager()
    assert restored.load_contexts(tmp_path) == 1
    ctx = restored.get_context("a.md")
    assert ctx.session_id == "s-9"
    assert [e.content for e in ctx.history] == ["Check it", "All good."]
    assert ctx.is_running is False


def test_load_contexts_skips_corrupt_files(tmp_path: Path):
    bad_dir = SessionStore().session_dir("bad.md", tmp_path)
    bad_dir.mkdir(parents=True)
    (bad_dir / CONTEXT_FILE).write_text("{oops")
    no_path_dir = SessionStore().session_dir("nopath.md", tmp_path)
    no_path_dir.mkdir(parents=True)
    (no_path_dir / CONTEXT_FILE).write_text(json.dumps({"session_id": "x"}))

    manager = _manager()
    assert manager.load_contexts(tmp_path) == 0
    assert manager.load_contexts(tmp_path / "missing") == 0


def test_save_unknown_context_is_noop(tmp_path: Path):
    assert _manager().save_context("nope.md", tmp_path) is None


def test_update_settings_reaches_runners():
    manager = _manager()
    ctx = manager.get_context("a.md")
    new = RunnerSettings(model_alias="opus")
    manager.update_settings(new)
    assert ctx.runner.settings is new
