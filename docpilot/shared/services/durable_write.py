"""Crash-safe file replacement for session files.

Each write goes to a temp file in the target directory, is fsynced, then
renamed over the target. Readers see either the old file or the new one.
"""
from __future__ import annotations

import json
import os
import tempfile
from pathlib import Path
from typing import Any

from docpilot.engine.errors import PersistenceError


def _fsync_dir(dir_path: Path) -> None:
    """Best-effort directory fsync so the rename itself is durable."""
    try:
        flags = os.O_RDONLY
        if hasattr(os, "O_DIRECTORY"):
            flags |= os.O_DIRECTORY
        fd = os.open(str(dir_path), flags)
        try:
            os.fsync(fd)
        finally:
            os.close(fd)
    except OSError:
        # Not supported on every platform/filesystem.
        pass


def atomic_write_text(path: Path, content: str, *, encoding: str = "utf-8") -> None:
    """Atomically replace *path* with *content*.

    Raises PersistenceError when the directory or file cannot be written.
    """
    path = Path(path)
    tmp_path: Path | None = None
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(
            prefix=f".{path.name}.", suffix=".tmp", dir=str(path.parent),
        )
        tmp_path = Path(tmp_name)
        with os.fdopen(fd, "w", encoding=encoding) as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, path)
        _fsync_dir(path.parent)
    except OSError as exc:
        raise PersistenceError(str(path), exc.strerror or str(exc)) from exc
    except (TypeError, ValueError) as exc:
        raise PersistenceError(str(path), str(exc)) from exc
    finally:
        if tmp_path is not None and tmp_path.exists():
            try:
                tmp_path.unlink()
            except OSError:
                pass


def atomic_write_json(path: Path, data: Any) -> None:
    try:
        text = json.dumps(data, indent=2, ensure_ascii=False)
    except (TypeError, ValueError) as exc:
        raise PersistenceError(str(path), f"not serializable: {exc}") from exc
    atomic_write_text(path, text + "\n")
