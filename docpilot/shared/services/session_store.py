"""Per-document session directories.

Storage layout:
    <root>/<namespace>/<sha256(document path)>/
        session_id.txt              resumable token issued by the CLI
        conversation_history.json   last 20 turns, oldest first
        context.json                caller context (see context_store.py)

Directories are created on first use. Nothing here is locked; callers run
at most one Run per document at a time.
"""
from __future__ import annotations

import hashlib
import json
import logging
from pathlib import Path

from docpilot.engine.errors import PersistenceError
from docpilot.engine.models import (
    MAX_HISTORY_ENTRIES,
    HistoryEntry,
    HistoryRole,
    SessionInfo,
)
from docpilot.shared.services.durable_write import atomic_write_json, atomic_write_text

logger = logging.getLogger(__name__)

DEFAULT_NAMESPACE = ".docpilot/sessions"
SESSION_ID_FILE = "session_id.txt"
HISTORY_FILE = "conversation_history.json"
CONTEXT_FILE = "context.json"


def document_hash(document_id: str) -> str:
    """Stable directory name for a document identity."""
    return hashlib.sha256(document_id.encode("utf-8")).hexdigest()


class SessionStore:
    """Reads and writes session token and history files."""

    def __init__(self, namespace: str = DEFAULT_NAMESPACE) -> None:
        self.namespace = namespace

    def sessions_root(self, root_dir: str | Path | None = None) -> Path:
        base = Path(root_dir) if root_dir else Path.cwd()
        return base / self.namespace

    def session_dir(self, document_id: str, root_dir: str | Path | None = None) -> Path:
        return self.sessions_root(root_dir) / document_hash(document_id)

    def get_session_info(
        self,
        document_id: str,
        root_dir: str | Path | None = None,
    ) -> SessionInfo:
        """Resolve (and create) the session directory and read its token."""
        session_dir = self.session_dir(document_id, root_dir)
        try:
            session_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise PersistenceError(str(session_dir), exc.strerror or str(exc)) from exc

        token_file = session_dir / SESSION_ID_FILE
        session_id = None
        try:
            session_id = token_file.read_text(encoding="utf-8").strip() or None
        except FileNotFoundError:
            pass
        except OSError as exc:
            logger.warning("Could not read session token %s: %s", token_file, exc)

        logger.debug(
            "Session for %s: dir=%s token=%s", document_id, session_dir,
            session_id or "(new)",
        )
        return SessionInfo(
            session_dir=session_dir,
            session_id=session_id,
            is_new=session_id is None,
        )

    def save_session_token(self, session_dir: Path, token: str | None) -> None:
        if not token:
            logger.debug("No session token to save in %s", session_dir)
            return
        atomic_write_text(Path(session_dir) / SESSION_ID_FILE, token)

    def load_history(self, session_dir: Path) -> list[HistoryEntry]:
        """Read the history file. Missing or corrupt files read as empty."""
        history_file = Path(session_dir) / HISTORY_FILE
        try:
            raw = json.loads(history_file.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return []
        except (OSError, ValueError) as exc:
            logger.warning("Resetting unreadable history %s: %s", history_file, exc)
            return []
        if not isinstance(raw, list):
            logger.warning("Resetting history %s: expected a list", history_file)
            return []
        entries = []
        for item in raw:
            entry = HistoryEntry.from_dict(item) if isinstance(item, dict) else None
            if entry is not None:
                entries.append(entry)
        return entries

    def append_history(
        self,
        session_dir: Path,
        user_turn: str,
        assistant_turn: str,
    ) -> list[HistoryEntry]:
        """Append one exchange and keep the newest MAX_HISTORY_ENTRIES."""
        history = self.load_history(session_dir)
        history.append(HistoryEntry(role=HistoryRole.USER.value, content=user_turn))
        history.append(
            HistoryEntry(role=HistoryRole.ASSISTANT.value, content=assistant_turn),
        )
        history = history[-MAX_HISTORY_ENTRIES:]
        atomic_write_json(
            Path(session_dir) / HISTORY_FILE, [entry.to_dict() for entry in history],
        )
        return history

    def clear_session(self, session_dir: Path) -> None:
        """Forget the token, history and saved context for one document."""
        for name in (SESSION_ID_FILE, HISTORY_FILE, CONTEXT_FILE):
            path = Path(session_dir) / name
            try:
                path.unlink(missing_ok=True)
            except OSError as exc:
                raise PersistenceError(str(path), exc.strerror or str(exc)) from exc
        logger.info("Cleared session files in %s", session_dir)
