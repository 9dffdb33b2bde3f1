"""Tests for session metadata and memory file accounting."""

import pytest

from agent_bus.config import BusConfig
from agent_bus.errors import BusError
from agent_bus.session import SessionMeta, SessionStore

SESSION = "s"


def _make_store(tmp_path):
    return SessionStore(BusConfig(bus_root=tmp_path, memory_dir=tmp_path / "memory"))


def test_read_missing_meta(tmp_path):
    assert _make_store(tmp_path).read_meta(SESSION, "build") is None


def test_write_read_meta(tmp_path):
    store = _make_store(tmp_path)
    meta = SessionMeta(start_ts=10, compact_count=2, last_compact_ts=20)
    store.write_meta(SESSION, "build", meta)
    assert store.read_meta(SESSION, "build") == meta


def test_malformed_meta_raises(tmp_path):
    store = _make_store(tmp_path)
    path = store.config.session_meta_path(SESSION, "build")
    path.parent.mkdir(parents=True)
    path.write_text("[]")
    with pytest.raises(BusError):
        store.read_meta(SESSION, "build")


def test_init_meta_is_idempotent(tmp_path):
    store = _make_store(tmp_path)
    first = store.init_meta(SESSION, "build", now=100)
    second = store.init_meta(SESSION, "build", now=200)
    assert first == second == SessionMeta(start_ts=100)


def test_record_compaction(tmp_path):
    store = _make_store(tmp_path)
    store.init_meta(SESSION, "build", now=100)
    meta = store.record_compaction(SESSION, "build", "Fixed the linker flags.", now=500)

    assert meta.compact_count == 1
    assert meta.last_compact_ts == 500
    assert meta.start_ts == 100
    assert store.read_meta(SESSION, "build") == meta
    text = store.config.memory_path("build").read_text()
    assert "## Session Summary" in text
    assert "Fixed the linker flags." in text


def test_memory_bytes_includes_archives(tmp_path):
    store = _make_store(tmp_path)
    cfg = store.config
    assert store.memory_bytes("build") == 0

    cfg.memory_path("build").parent.mkdir(parents=True)
    cfg.memory_path("build").write_bytes(b"a" * 10)
    cfg.memory_archive_dir("build").mkdir()
    cfg.memory_archive_path("build", "2025-01-01").write_bytes(b"b" * 5)
    cfg.memory_archive_path("build", "2025-01-02").write_bytes(b"c" * 7)

    assert store.archive_bytes("build") == 12
    assert store.memory_bytes("build") == 22


def test_file_size_missing(tmp_path):
    assert SessionStore.file_size(tmp_path / "nope") == 0


def test_mistyped_meta_raises(tmp_path):
    store = _make_store(tmp_path)
    path = store.config.session_meta_path(SESSION, "build")
    path.parent.mkdir(parents=True)
    path.write_text('{"start_ts": 1, "compact_count": "2"}')
    with pytest.raises(BusError, match="compact_count must be int"):
        store.read_meta(SESSION, "build")
