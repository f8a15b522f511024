"""DocumentRunner: one request in, one RunResponse out.

Flow of a Run:
    settings check -> session lookup -> prompt + args -> environment
    -> spawn -> write user record -> read stdout/stderr concurrently
    -> exit -> fold output -> persist history/token -> RunResponse

Notifications are pushed to the caller while the process runs. Every
path, including timeout, cancellation and spawn failure, returns exactly
one RunResponse; only persistence problems are reported as warnings
instead of failures.
"""
from __future__ import annotations

import asyncio
import codecs
import logging
import os
import time
from pathlib import Path

from docpilot.shared.services.session_store import SessionStore

from .cli_args import build_args
from .config import NotificationCallback, RunnerSettings, fire_notification
from .environment import (
    EnvironmentProvider,
    ShellEnvironmentProvider,
    detect_executable_path,
    resolve_executable,
)
from .errors import (
    ConfigurationError,
    PersistenceError,
    ProcessExitError,
    RunCancelledError,
    RunTimeoutError,
    SpawnError,
)
from .extractor import build_error_response, build_response, detect_permission_request
from .interpreter import EventInterpreter, Notification, NotificationKind, parse_output
from .models import RunRequest, RunResponse, SessionInfo
from .prompt_builder import build_prompt
from .stream import decode_stream
from .supervisor import ProcessHandle, ProcessSupervisor

logger = logging.getLogger(__name__)

UNCONFIGURED_PATH_ERROR = (
    "Claude Code path not configured. Set executable_path or DOCPILOT_CLAUDE_PATH."
)


class DocumentRunner:
    """Drives the claude CLI for one document at a time."""

    def __init__(
        self,
        settings: RunnerSettings,
        *,
        supervisor: ProcessSupervisor | None = None,
        environment: EnvironmentProvider | None = None,
        session_store: SessionStore | None = None,
    ) -> None:
        self._settings = settings
        self._supervisor = supervisor or ProcessSupervisor()
        self._environment = environment or ShellEnvironmentProvider()
        self._owns_store = session_store is None
        self._store = session_store or SessionStore(settings.session_namespace)

    @property
    def settings(self) -> RunnerSettings:
        return self._settings

    @property
    def session_store(self) -> SessionStore:
        return self._store

    def update_settings(self, settings: RunnerSettings) -> None:
        """Takes effect from the next Run."""
        self._settings = settings
        if self._owns_store:
            self._store = SessionStore(settings.session_namespace)

    def is_running(self) -> bool:
        return self._supervisor.is_running()

    def cancel(self) -> bool:
        """Kill the active process. The pending run() returns a failure."""
        cancelled = self._supervisor.cancel()
        if cancelled:
            logger.info("Run cancelled by user")
        return cancelled

    # ── run ──────────────────────────────────────────────────

    async def run(
        self,
        request: RunRequest,
        on_notification: NotificationCallback | None = None,
    ) -> RunResponse:
        started = time.monotonic()

        async def notify(notification: Notification) -> None:
            await fire_notification(on_notification, notification)

        try:
            return await self._execute(request, notify, started)
        except ConfigurationError as exc:
            logger.error("Run not started: %s", exc)
            await notify(Notification.warning(str(exc), error_kind=exc.kind))
            return build_error_response(exc, [])
        except asyncio.CancelledError:
            self._supervisor.terminate()
            raise
        except Exception as exc:
            logger.exception("Run failed for %s", request.document_path)
            return build_error_response(
                f"Failed to execute Claude Code: {exc}", [],
                error_kind=type(exc).__name__,
                duration_seconds=time.monotonic() - started,
            )

    def _resolve_command(self, env: dict[str, str]) -> str:
        path = self._settings.executable_path
        if not path and self._settings.auto_detect_path:
            path = detect_executable_path(env) or ""
            if path:
                logger.info("Detected claude executable at %s", path)
        if not path:
            raise ConfigurationError(UNCONFIGURED_PATH_ERROR)
        return resolve_executable(path, env)

    async def _open_session(
        self,
        request: RunRequest,
        notify,
    ) -> tuple[SessionInfo, bool]:
        """Return the session and whether it can be persisted."""
        try:
            session = self._store.get_session_info(
                request.document_path, request.root_dir,
            )
        except PersistenceError as exc:
            logger.warning("Session directory unavailable: %s", exc)
            await notify(Notification.warning(
                f"Session data will not be saved: {exc}", error_kind=exc.kind,
            ))
            fallback = self._store.session_dir(request.document_path, request.root_dir)
            return SessionInfo(session_dir=fallback), False

        if session.is_new:
            await notify(Notification.status("→ Starting new session"))
        else:
            await notify(Notification.status(
                f"✓ Resuming session: {session.session_id}",
                session_id=session.session_id,
            ))
        return session, True

    async def _execute(self, request: RunRequest, notify, started: float) -> RunResponse:
        settings = self._settings
        settings.validate()
        if not settings.executable_path and not settings.auto_detect_path:
            raise ConfigurationError(UNCONFIGURED_PATH_ERROR)

        env = self._environment.load()
        executable = self._resolve_command(env)

        session, can_persist = await self._open_session(request, notify)
        bypass = settings.permissionless_mode or request.bypass_permissions
        prompt = build_prompt(
            request,
            session.session_dir,
            custom_system_prompt=settings.custom_system_prompt,
            allow_workspace_access=settings.allow_workspace_access,
            bypass_permissions=bypass,
        )
        args = build_args(
            settings,
            session.session_id,
            request.root_dir,
            request.bypass_permissions,
            request.model_override,
        )

        if bypass:
            await notify(Notification.status("🔓 Permissionless mode enabled"))
        else:
            await notify(Notification.status(
                "🔒 Permission mode: interactive (Claude will ask for permission)"
            ))
        if settings.allow_workspace_access and request.root_dir:
            await notify(Notification.status(
                f"Workspace access enabled: {request.root_dir}"
            ))

        cwd = request.root_dir or os.getcwd()
        output: list[str] = []
        try:
            handle = await self._supervisor.start(executable, args, cwd, env)
        except SpawnError as exc:
            logger.error("%s", exc)
            await notify(Notification.warning(f"✗ {exc}", error_kind=exc.kind))
            return build_error_response(
                exc, output, duration_seconds=time.monotonic() - started,
            )
        await notify(Notification.status(
            f"Starting Claude Code (pid {handle.pid}) in {cwd}", pid=handle.pid,
        ))

        interpreter = EventInterpreter(session)
        stderr_parts: list[str] = []
        returncode = await self._supervise(
            handle, prompt, interpreter, output, stderr_parts, notify,
        )
        duration = time.monotonic() - started

        if handle.timed_out:
            exc = RunTimeoutError(settings.timeout_seconds)
            await notify(Notification.warning(f"✗ {exc}", error_kind=exc.kind))
            return build_error_response(
                exc, output, parsed=interpreter.parsed, duration_seconds=duration,
            )
        if handle.cancelled:
            exc = RunCancelledError()
            await notify(Notification.warning(f"⚠ {exc}", error_kind=exc.kind))
            return build_error_response(
                exc, output, parsed=interpreter.parsed, duration_seconds=duration,
            )
        if returncode != 0:
            exc = ProcessExitError(returncode, "".join(stderr_parts))
            logger.warning("%s", exc)
            await notify(Notification.warning(f"✗ {exc}", error_kind=exc.kind))
            return build_error_response(
                exc, output, parsed=interpreter.parsed, duration_seconds=duration,
            )

        parsed = parse_output(output)
        parsed.session_id = parsed.session_id or session.session_id
        is_permission_request = detect_permission_request(parsed.assistant_text)

        if can_persist:
            await self._persist(session, request, parsed.assistant_text, notify)

        response = build_response(
            parsed,
            output,
            is_permission_request=is_permission_request,
            duration_seconds=duration,
        )
        await notify(self._summary(response, duration))
        return response

    async def _supervise(
        self,
        handle: ProcessHandle,
        prompt: str,
        interpreter: EventInterpreter,
        output: list[str],
        stderr_parts: list[str],
        notify,
    ) -> int:
        """Feed the process, pump both streams and wait for exit.

        The deadline is armed before any input is written: a child that
        never reads stdin can block the write indefinitely.
        """
        self._supervisor.arm_deadline(handle, self._settings.timeout_seconds)
        tasks = [
            asyncio.create_task(self._supervisor.write_initial_input(handle, prompt)),
            asyncio.create_task(self._pump_stdout(handle, interpreter, output, notify)),
            asyncio.create_task(self._pump_stderr(handle, stderr_parts, notify)),
        ]
        try:
            await asyncio.gather(*tasks)
            return await self._supervisor.wait(handle)
        except BaseException:
            self._supervisor.terminate(handle)
            for task in tasks:
                task.cancel()
            raise

    async def _pump_stdout(
        self,
        handle: ProcessHandle,
        interpreter: EventInterpreter,
        output: list[str],
        notify,
    ) -> None:
        async for line, event in decode_stream(self._supervisor.stdout_chunks(handle)):
            output.append(line)
            for notification in interpreter.interpret(event):
                await notify(notification)

    async def _pump_stderr(
        self,
        handle: ProcessHandle,
        stderr_parts: list[str],
        notify,
    ) -> None:
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        async for chunk in self._supervisor.stderr_chunks(handle):
            text = decoder.decode(chunk)
            if not text:
                continue
            stderr_parts.append(text)
            await notify(Notification(kind=NotificationKind.STDERR, text=f"[stderr] {text}"))
        tail = decoder.decode(b"", final=True)
        if tail:
            stderr_parts.append(tail)

    async def _persist(
        self,
        session: SessionInfo,
        request: RunRequest,
        assistant_text: str,
        notify,
    ) -> None:
        try:
            self._store.append_history(
                Path(session.session_dir), request.user_prompt, assistant_text,
            )
            await notify(Notification.status("💾 Conversation history saved"))
            if session.session_id:
                self._store.save_session_token(session.session_dir, session.session_id)
                await notify(Notification.status(
                    f"💾 Session ID saved: {session.session_id}",
                    session_id=session.session_id,
                ))
        except PersistenceError as exc:
            logger.warning("Error saving session data: %s", exc)
            await notify(Notification.warning(
                f"⚠ Error saving session data: {exc}", error_kind=exc.kind,
            ))

    @staticmethod
    def _summary(response: RunResponse, duration: float) -> Notification:
        if not response.success:
            return Notification.warning(f"✗ {response.error}", error_kind=response.error_kind)
        if response.is_permission_request:
            return Notification.status("⚠️ Permission request detected - waiting for user approval")
        if response.modified_content:
            return Notification.status(f"✓ Claude Code completed successfully in {duration:.2f}s")
        return Notification.status(
            f"✓ Analysis completed (no file modifications) in {duration:.2f}s"
        )
