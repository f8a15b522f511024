"""Tests for docpilot.shared.services.session_store."""
from __future__ import annotations

import json
from pathlib import Path
from unittest.mock import patch

import pytest

from docpilot.engine.errors import PersistenceError
from docpilot.engine.models import MAX_HISTORY_ENTRIES
from docpilot.shared.services.session_store import (
    HISTORY_FILE,
    SESSION_ID_FILE,
    SessionStore,
    document_hash,
)


@pytest.fixture
def store() -> SessionStore:
    return SessionStore(".docpilot/sessions")


def test_session_dir_is_deterministic(store: SessionStore, tmp_path: Path):
    a = store.get_session_info("notes/a.md", tmp_path)
    again = store.get_session_info("notes/a.md", tmp_path)
    b = store.get_session_info("notes/b.md", tmp_path)

    assert a.session_dir == again.session_dir
    assert a.session_dir != b.session_dir
    assert a.session_dir == tmp_path / ".docpilot" / "sessions" / document_hash("notes/a.md")
    assert a.session_dir.is_dir()


def test_new_session_has_no_token(store: SessionStore, tmp_path: Path):
    info = store.get_session_info("doc.md", tmp_path)
    assert info.session_id is None
    assert info.is_new is True


def test_blank_token_file_is_a_new_session(store: SessionStore, tmp_path: Path):
    info = store.get_session_info("doc.md", tmp_path)
    (info.session_dir / SESSION_ID_FILE).write_text("  \n")
    again = store.get_session_info("doc.md", tmp_path)
    assert again.is_new is True
    assert again.session_id is None


def test_token_round_trip(store: SessionStore, tmp_path: Path):
    info = store.get_session_info("doc.md", tmp_path)
    store.save_session_token(info.session_dir, "sess-42")
    again = store.get_session_info("doc.md", tmp_path)
    assert again.session_id == "sess-42"
    assert again.is_new is False


def test_empty_token_never_overwrites(store: SessionStore, tmp_path: Path):
    info = store.get_session_info("doc.md", tmp_path)
    store.save_session_token(info.session_dir, "sess-1")
    store.save_session_token(info.session_dir, None)
    store.save_session_token(info.session_dir, "")
    assert (info.session_dir / SESSION_ID_FILE).read_text() == "sess-1"


def test_history_capped_at_twenty(store: SessionStore, tmp_path: Path):
    info = store.get_session_info("doc.md", tmp_path)
    for i in range(11):
        history = store.append_history(info.session_dir, f"q{i}", f"a{i}")

    assert len(history) == MAX_HISTORY_ENTRIES == 20
    # Oldest exchange evicted first.
    assert history[0].content == "q1"
    assert history[-1].content == "a10"
    on_disk = json.loads((info.session_dir / HISTORY_FILE).read_text())
    assert len(on_disk) == 20
    assert [e["role"] for e in on_disk[:2]] == ["user", "assistant"]


def test_corrupt_history_resets(store: SessionStore, tmp_path: Path):
    info = store.get_session_info("doc.md", tmp_path)
    (info.session_dir / HISTORY_FILE).write_text("{not json")
    assert store.load_history(info.session_dir) == []

    history = store.append_history(info.session_dir, "q", "a")
    assert [e.content for e in history] == ["q", "a"]


def test_non_list_history_resets(store: SessionStore, tmp_path: Path):
    info = store.get_session_info("doc.md", tmp_path)
    (info.session_dir / HISTORY_FILE).write_text('{"role": "user"}')
    assert store.load_history(info.session_dir) == []


def test_write_failure_raises_persistence_error(store: SessionStore, tmp_path: Path):
    info = store.get_session_info("doc.md", tmp_path)
    with patch("os.replace", side_effect=PermissionError(13, "Permission denied")):
        with pytest.raises(PersistenceError) as excinfo:
            store.append_history(info.session_dir, "q", "a")
    assert excinfo.value.reason == "Permission denied"
    # No temp files left behind.
    assert list(info.session_dir.glob("*.tmp")) == []


def test_clear_session(store: SessionStore, tmp_path: Path):
    info = store.get_session_info("doc.md", tmp_path)
    store.save_session_token(info.session_dir, "sess-1")
    store.append_history(info.session_dir, "q", "a")

    store.clear_session(info.session_dir)

    again = store.get_session_info("doc.md", tmp_path)
    assert again.is_new is True
    assert store.load_history(info.session_dir) == []


def test_non_text_token_raises_persistence_error(store: SessionStore, tmp_path: Path):
    info = store.get_session_info("doc.md", tmp_path)
    with pytest.raises(PersistenceError):
        store.save_session_token(info.session_dir, 123)
    assert list(info.session_dir.glob("*.tmp")) == []
    assert store.get_session_info("doc.md", tmp_path).is_new is True
