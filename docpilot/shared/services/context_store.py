"""Per-document conversation contexts for callers.

A caller (the CLI, an editor integration) keeps one DocumentContext per
document: its runner, visible history, captured output lines and tool
activity steps. The manager refuses to start a second Run for a document
whose Run is still active, which is the one-Run-per-document guarantee
the session store relies on.

Contexts are saved as ``context.json`` inside each document's session
directory and restored with ``load_contexts()``.
"""
from __future__ import annotations

import json
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from docpilot.engine.config import NotificationCallback, RunnerSettings, fire_notification
from docpilot.engine.errors import RunInProgressError
from docpilot.engine.interpreter import Notification, NotificationKind
from docpilot.engine.models import HistoryEntry, HistoryRole, RunRequest, RunResponse
from docpilot.engine.runner import DocumentRunner
from docpilot.shared.services.durable_write import atomic_write_json
from docpilot.shared.services.session_store import CONTEXT_FILE, SessionStore

logger = logging.getLogger(__name__)

RunnerFactory = Callable[[RunnerSettings], DocumentRunner]


@dataclass
class DocumentContext:
    document_path: str
    runner: DocumentRunner
    session_id: str | None = None
    history: list[HistoryEntry] = field(default_factory=list)
    output_lines: list[str] = field(default_factory=list)
    activity_steps: list[dict[str, Any]] = field(default_factory=list)
    current_request: RunRequest | None = None
    current_response: RunResponse | None = None
    is_running: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "document_path": self.document_path,
            "session_id": self.session_id,
            "history": [entry.to_dict() for entry in self.history],
            "output_lines": list(self.output_lines),
            "activity_steps": list(self.activity_steps),
            "saved_at": datetime.now(timezone.utc).isoformat(),
        }


class DocumentContextManager:
    """Tracks one DocumentContext per document path."""

    def __init__(
        self,
        settings: RunnerSettings,
        *,
        runner_factory: RunnerFactory | None = None,
    ) -> None:
        self._settings = settings
        self._runner_factory = runner_factory or DocumentRunner
        self._store = SessionStore(settings.session_namespace)
        self._contexts: dict[str, DocumentContext] = {}

    def _new_context(self, document_path: str) -> DocumentContext:
        return DocumentContext(
            document_path=document_path,
            runner=self._runner_factory(self._settings),
        )

    def get_context(self, document_path: str) -> DocumentContext:
        if document_path not in self._contexts:
            self._contexts[document_path] = self._new_context(document_path)
        return self._contexts[document_path]

    def has_context(self, document_path: str) -> bool:
        return document_path in self._contexts

    def all_contexts(self) -> dict[str, DocumentContext]:
        return dict(self._contexts)

    def update_settings(self, settings: RunnerSettings) -> None:
        self._settings = settings
        self._store = SessionStore(settings.session_namespace)
        for context in self._contexts.values():
            context.runner.update_settings(settings)

    def clear_history(self, document_path: str) -> None:
        context = self._contexts.get(document_path)
        if context is None:
            return
        context.history.clear()
        context.output_lines.clear()
        context.activity_steps.clear()

    # ── persistence ──────────────────────────────────────────

    def load_contexts(self, root_dir: str | Path) -> int:
        """Restore saved contexts under *root_dir*. Returns how many loaded.

        Unreadable context files are skipped.
        """
        sessions_root = self._store.sessions_root(root_dir)
        if not sessions_root.is_dir():
            return 0
        loaded = 0
        for context_file in sorted(sessions_root.glob(f"*/{CONTEXT_FILE}")):
            try:
                data = json.loads(context_file.read_text(encoding="utf-8"))
            except (OSError, ValueError) as exc:
                logger.warning("Skipping unreadable context %s: %s", context_file, exc)
                continue
            document_path = data.get("document_path") if isinstance(data, dict) else None
            if not isinstance(document_path, str) or not document_path:
                logger.warning("Skipping context %s without document_path", context_file)
                continue

            context = self._new_context(document_path)
            context.session_id = data.get("session_id") or None
            context.history = [
                entry for entry in (
                    HistoryEntry.from_dict(item)
                    for item in data.get("history") or []
                    if isinstance(item, dict)
                ) if entry is not None
            ]
            context.output_lines = [
                line for line in data.get("output_lines") or [] if isinstance(line, str)
            ]
            context.activity_steps = [
                step for step in data.get("activity_steps") or [] if isinstance(step, dict)
            ]
            self._contexts[document_path] = context
            loaded += 1
        logger.info("Loaded %d document contexts from %s", loaded, sessions_root)
        return loaded

    def save_context(self, document_path: str, root_dir: str | Path) -> Path | None:
        """Write one context. Raises PersistenceError on write failure."""
        context = self._contexts.get(document_path)
        if context is None:
            return None
        path = self._store.session_dir(document_path, root_dir) / CONTEXT_FILE
        atomic_write_json(path, context.to_dict())
        return path

    def save_all_contexts(self, root_dir: str | Path) -> None:
        for document_path in list(self._contexts):
            self.save_context(document_path, root_dir)

    # ── runs ─────────────────────────────────────────────────

    async def run(
        self,
        request: RunRequest,
        on_notification: NotificationCallback | None = None,
    ) -> RunResponse:
        """Run *request* on its document's runner.

        Raises RunInProgressError if that document already has an active
        Run. Runs for different documents may overlap.
        """
        context = self.get_context(request.document_path)
        if context.is_running:
            raise RunInProgressError(request.document_path)

        context.is_running = True
        context.current_request = request
        context.current_response = None
        context.history.append(
            HistoryEntry(role=HistoryRole.USER.value, content=request.user_prompt),
        )

        async def record(notification: Notification) -> None:
            if notification.kind == NotificationKind.ACTIVITY:
                context.activity_steps.append(
                    {"text": notification.text, **notification.metadata},
                )
            elif notification.kind == NotificationKind.SESSION:
                context.session_id = notification.metadata.get("session_id") or context.session_id
            elif notification.text and not notification.is_streaming:
                context.output_lines.append(notification.text)
            await fire_notification(on_notification, notification)

        try:
            response = await context.runner.run(request, record)
        finally:
            context.is_running = False

        context.current_response = response
        if response.session_id:
            context.session_id = response.session_id
        reply = response.assistant_message or response.error or ""
        if reply:
            context.history.append(
                HistoryEntry(role=HistoryRole.ASSISTANT.value, content=reply),
            )
        return response

    def cancel(self, document_path: str) -> bool:
        context = self._contexts.get(document_path)
        if context is None or not context.is_running:
            return False
        return context.runner.cancel()
