"""Lifecycle of the external claude process.

The supervisor owns at most one child at a time, exposed through a
``ProcessHandle``. It spawns with piped stdio in a new session, writes
the single stream-json user record, arms the wall-clock deadline and
force-kills on timeout or cancellation. Termination is idempotent so the
deadline, a user cancel and a normal exit can race safely.
"""
from __future__ import annotations

import asyncio
import json
import logging
import os
import signal
import time
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass, field

from .errors import SpawnError

logger = logging.getLogger(__name__)

READ_CHUNK_SIZE = 64 * 1024


@dataclass
class ProcessHandle:
    process: asyncio.subprocess.Process
    started_at: float = field(default_factory=time.monotonic)
    timed_out: bool = False
    cancelled: bool = False
    returncode: int | None = None
    # Kill the whole process group (tool subprocesses included).
    process_group: bool = True
    kill_sent: bool = False
    _deadline: asyncio.TimerHandle | None = field(default=None, repr=False)

    @property
    def pid(self) -> int | None:
        return getattr(self.process, "pid", None)

    @property
    def elapsed(self) -> float:
        return time.monotonic() - self.started_at

    def cancel_deadline(self) -> None:
        if self._deadline is not None:
            self._deadline.cancel()
            self._deadline = None


def encode_user_message(prompt: str) -> bytes:
    """Serialize the one user turn sent on stdin."""
    record = {"type": "user", "message": {"role": "user", "content": prompt}}
    return (json.dumps(record, ensure_ascii=False) + "\n").encode("utf-8")


class ProcessSupervisor:
    """Spawns, feeds, times out and kills the claude child process."""

    def __init__(
        self,
        *,
        process_group: bool = True,
        chunk_size: int = READ_CHUNK_SIZE,
    ) -> None:
        self._process_group = process_group and hasattr(os, "killpg")
        self._chunk_size = chunk_size
        self._handle: ProcessHandle | None = None

    @property
    def handle(self) -> ProcessHandle | None:
        return self._handle

    def is_running(self) -> bool:
        handle = self._handle
        return handle is not None and handle.process.returncode is None

    async def start(
        self,
        executable: str,
        args: list[str],
        cwd: str | None,
        env: dict[str, str] | None,
    ) -> ProcessHandle:
        if self.is_running():
            raise SpawnError(
                executable, f"process {self._handle.pid} is still running",
            )
        logger.debug("Spawning %s %s (cwd=%s)", executable, " ".join(args), cwd)
        try:
            # argv array, no shell
            proc = await asyncio.create_subprocess_exec(
                executable,
                *args,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=cwd,
                env=env,
                start_new_session=self._process_group,
            )
        except FileNotFoundError as exc:
            raise SpawnError(executable, "executable not found") from exc
        except PermissionError as exc:
            raise SpawnError(executable, "permission denied") from exc
        except OSError as exc:
            raise SpawnError(executable, str(exc)) from exc

        handle = ProcessHandle(process=proc, process_group=self._process_group)
        self._handle = handle
        logger.info("Started claude process (pid=%s)", handle.pid)
        return handle

    async def write_initial_input(self, handle: ProcessHandle, prompt: str) -> None:
        """Write the user record and close stdin.

        A child that dies before reading its input shows up as a broken
        pipe here; the exit path reports that failure, so it is only logged.
        """
        stdin = handle.process.stdin
        if stdin is None:
            return
        try:
            stdin.write(encode_user_message(prompt))
            await stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as exc:
            logger.warning(
                "Process %s closed stdin before the prompt was written: %s",
                handle.pid, exc,
            )
        finally:
            try:
                stdin.close()
            except (BrokenPipeError, ConnectionResetError):
                pass

    def terminate(self, handle: ProcessHandle | None = None) -> bool:
        """Force-kill the process. Returns True if a kill was sent."""
        handle = handle or self._handle
        if handle is None:
            return False
        handle.cancel_deadline()
        proc = handle.process
        if proc.returncode is not None or handle.kill_sent:
            return False
        try:
            if handle.process_group:
                os.killpg(proc.pid, signal.SIGKILL)
            else:
                proc.kill()
        except ProcessLookupError:
            return False
        except PermissionError:
            proc.kill()
        handle.kill_sent = True
        logger.info("Killed claude process (pid=%s)", handle.pid)
        return True

    def cancel(self, handle: ProcessHandle | None = None) -> bool:
        """User-requested termination; shares the kill path with timeouts."""
        handle = handle or self._handle
        if handle is None or handle.process.returncode is not None:
            return False
        handle.cancelled = True
        return self.terminate(handle)

    def arm_deadline(
        self,
        handle: ProcessHandle,
        seconds: float,
        on_expire: Callable[[ProcessHandle], None] | None = None,
    ) -> None:
        """Kill the process after *seconds*. Zero or less disables it."""
        handle.cancel_deadline()
        if not seconds or seconds <= 0:
            return

        def _expire() -> None:
            handle._deadline = None
            if handle.process.returncode is not None:
                return
            handle.timed_out = True
            logger.warning(
                "Deadline of %gs reached; terminating pid %s", seconds, handle.pid,
            )
            self.terminate(handle)
            if on_expire is not None:
                on_expire(handle)

        loop = asyncio.get_running_loop()
        handle._deadline = loop.call_later(seconds, _expire)

    async def wait(self, handle: ProcessHandle) -> int:
        """Wait for exit and release ownership of the handle."""
        try:
            returncode = await handle.process.wait()
        finally:
            handle.cancel_deadline()
            if self._handle is handle:
                self._handle = None
        handle.returncode = returncode
        logger.debug(
            "Process %s exited with %s after %.1fs",
            handle.pid, returncode, handle.elapsed,
        )
        return returncode

    async def _chunks(
        self, stream: asyncio.StreamReader | None,
    ) -> AsyncIterator[bytes]:
        if stream is None:
            return
        while True:
            chunk = await stream.read(self._chunk_size)
            if not chunk:
                return
            yield chunk

    def stdout_chunks(self, handle: ProcessHandle) -> AsyncIterator[bytes]:
        return self._chunks(handle.process.stdout)

    def stderr_chunks(self, handle: ProcessHandle) -> AsyncIterator[bytes]:
        return self._chunks(handle.process.stderr)
