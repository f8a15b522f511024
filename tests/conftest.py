"""Shared fakes for process-level tests. The real claude CLI is never run."""
from __future__ import annotations

import asyncio
import json

import pytest


class FakeStdin:
    def __init__(self, broken: bool = False) -> None:
        self.data = b""
        self.closed = False
        self._broken = broken

    def write(self, data: bytes) -> None:
        if self._broken:
            raise BrokenPipeError(32, "Broken pipe")
        self.data += data

    async def drain(self) -> None:
        return None

    def close(self) -> None:
        self.closed = True


class FakeProcess:
    """Stands in for asyncio.subprocess.Process.

    With ``hang=True`` the streams stay open and ``wait()`` blocks until
    ``kill()`` is called, like a CLI that never finishes.
    """

    def __init__(
        self,
        stdout_lines: list[str] | None = None,
        *,
        stderr: bytes = b"",
        returncode: int = 0,
        hang: bool = False,
        pid: int = 4242,
        broken_stdin: bool = False,
    ) -> None:
        self.pid = pid
        self.returncode: int | None = None
        self.killed = False
        self.stdin = FakeStdin(broken=broken_stdin)
        self.stdout = asyncio.StreamReader()
        self.stderr = asyncio.StreamReader()
        self._final = returncode
        self._hang = hang
        self._exited = asyncio.Event()

        for line in stdout_lines or []:
            self.stdout.feed_data(line.encode("utf-8") + b"\n")
        if stderr:
            self.stderr.feed_data(stderr)
        if not hang:
            self.stdout.feed_eof()
            self.stderr.feed_eof()
            self._exited.set()

    @property
    def sent_prompt(self) -> str:
        record = json.loads(self.stdin.data.decode("utf-8"))
        return record["message"]["content"]

    async def wait(self) -> int:
        await self._exited.wait()
        if self.returncode is None:
            self.returncode = self._final
        return self.returncode

    def kill(self) -> None:
        self.killed = True
        if self.returncode is None:
            self.returncode = -9
        if self._hang:
            self.stdout.feed_eof()
            self.stderr.feed_eof()
        self._exited.set()


@pytest.fixture
def make_process():
    def _make(*args, **kwargs) -> FakeProcess:
        return FakeProcess(*args, **kwargs)
    return _make


def stream_lines(text: str, *, session_id: str = "sess-1", usage=(100, 50)) -> list[str]:
    """A minimal successful claude stream-json transcript."""
    return [
        json.dumps({"type": "system", "subtype": "init", "session_id": session_id, "model": "sonnet"}),
        json.dumps({"type": "user", "message": {"role": "user", "content": "prompt"}}),
        json.dumps({
            "type": "stream_event",
            "event": {"type": "content_block_delta", "index": 0,
                      "delta": {"type": "text_delta", "text": text}},
        }),
        json.dumps({"type": "assistant", "message": {"content": [{"type": "text", "text": text}]}}),
        json.dumps({
            "type": "result", "subtype": "success", "session_id": session_id,
            "usage": {"input_tokens": usage[0], "output_tokens": usage[1]},
        }),
    ]


@pytest.fixture
def transcript():
    return stream_lines
