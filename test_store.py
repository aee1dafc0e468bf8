#!/usr/bin/env python3
"""
Unit tests for the digest store backends.
"""

import hashlib
import logging
import os
import sqlite3
from pathlib import Path

import pytest

from common import StoreCorruptError, StoreUnavailableError
from store import (
    AppendLogStore,
    IncrementalStore,
    SqliteStore,
    TableFileStore,
    open_store,
)


logging.basicConfig(level=logging.WARNING)

STORE_FILES = {
    "sqlite": "hashes.db",
    "table": "hashes.txt",
    "log": "hashes.jsonl",
}


def _digest(content: bytes) -> str:
    return hashlib.sha256(content).hexdigest()


def _fetch_db_rows(db_path: Path) -> list:
    conn = sqlite3.connect(str(db_path))
    try:
        return conn.execute("SELECT path, hash FROM file_hashes ORDER BY path").fetchall()
    finally:
        conn.close()


@pytest.fixture(params=sorted(STORE_FILES))
def store(request, tmp_path: Path):
    return open_store(tmp_path / STORE_FILES[request.param], request.param)


def test_save_then_load_returns_same_mapping(store, tmp_path: Path):
    hashes = {
        str(tmp_path / "a.txt"): _digest(b"alpha"),
        str(tmp_path / "b.txt"): _digest(b"beta"),
        str(tmp_path / "odd: name.log"): _digest(b"gamma"),
    }
    store.save(hashes)
    assert store.load() == hashes


def test_load_missing_store_is_empty(store):
    assert store.load() == {}
    assert not store.path.exists()


def test_save_replaces_previous_state(store, tmp_path: Path):
    store.save({str(tmp_path / "old.txt"): _digest(b"old")})
    store.save({str(tmp_path / "new.txt"): _digest(b"new")})
    assert store.load() == {str(tmp_path / "new.txt"): _digest(b"new")}


def test_save_creates_parent_directory(tmp_path: Path):
    store = open_store(tmp_path / "nested" / "dir" / "hashes.txt", "table")
    store.save({"/x": _digest(b"x")})
    assert store.load() == {"/x": _digest(b"x")}


@pytest.mark.parametrize(
    "name",
    ["carriage\rreturn.log", "line\u2028sep.log", "next\x85line.log", "group\x1dsep.log"],
)
def test_round_trip_keeps_unusual_line_breaks_in_names(store, tmp_path: Path, name: str):
    hashes = {
        str(tmp_path / name): _digest(b"unusual"),
        str(tmp_path / "plain.log"): _digest(b"plain"),
    }
    store.save(hashes)
    assert store.load() == hashes


@pytest.mark.skipif(os.name != "posix", reason="raw filename bytes are POSIX-only")
def test_round_trip_keeps_undecodable_filename_bytes(store, tmp_path: Path):
    bad_name = os.fsdecode(os.fsencode(str(tmp_path)) + b"/bad\xffname.log")
    hashes = {bad_name: _digest(b"bad"), str(tmp_path / "good.log"): _digest(b"good")}

    store.save(hashes)
    assert store.load() == hashes

    if hasattr(store, "insert_one"):
        store.insert_one(bad_name, _digest(b"bad v2"))
        assert store.load()[bad_name] == _digest(b"bad v2")
        assert len(store.load()) == 2


def test_interrupted_save_removes_temp_file(tmp_path: Path, monkeypatch):
    store = AppendLogStore(tmp_path / "hashes.jsonl")
    original = {"/data/a.txt": _digest(b"a")}
    store.save(original)

    def interrupted_fsync(fd):
        raise RuntimeError("interrupted")

    monkeypatch.setattr(os, "fsync", interrupted_fsync)
    with pytest.raises(RuntimeError, match="interrupted"):
        store.save({"/data/b.txt": _digest(b"b")})
    monkeypatch.undo()

    assert store.load() == original
    assert sorted(p.name for p in tmp_path.iterdir()) == ["hashes.jsonl"]


def test_open_store_rejects_unknown_backend(tmp_path: Path):
    with pytest.raises(ValueError, match="Unknown store backend"):
        open_store(tmp_path / "hashes", "csv")


def test_incremental_capability():
    assert isinstance(SqliteStore(Path("a.db")), IncrementalStore)
    assert isinstance(AppendLogStore(Path("a.jsonl")), IncrementalStore)
    assert not isinstance(TableFileStore(Path("a.txt")), IncrementalStore)


def test_owns_store_file_and_temp_files(tmp_path: Path):
    store = TableFileStore(tmp_path / "hashes.txt")
    assert store.owns(tmp_path / "hashes.txt")
    assert store.owns(tmp_path / ".hashes.txt.abc123.tmp")
    assert not store.owns(tmp_path / "other.txt")
    assert not store.owns(tmp_path / "sub" / "hashes.txt")

    db = SqliteStore(tmp_path / "hashes.db")
    assert db.owns(tmp_path / "hashes.db-journal")
    assert db.owns(tmp_path / "hashes.db-wal")
    assert not db.owns(tmp_path / "hashes.db.bak")


# Flat table file

def test_table_file_format(tmp_path: Path):
    store = TableFileStore(tmp_path / "hashes.txt")
    store.save({"/data/b.txt": _digest(b"b"), "/data/a.txt": _digest(b"a")})
    lines = store.path.read_text(encoding="utf-8").splitlines()
    assert lines == [
        f"/data/a.txt: {_digest(b'a')}",
        f"/data/b.txt: {_digest(b'b')}",
    ]


def test_table_load_skips_malformed_lines(tmp_path: Path):
    path = tmp_path / "hashes.txt"
    good = _digest(b"good")
    path.write_text(
        "\n".join(
            [
                f"/data/good.txt: {good}",
                "no separator here",
                f": {good}",
                "/data/short.txt: abc123",
                f"/data/upper.txt: {good.upper()}",
                "",
            ]
        ),
        encoding="utf-8",
    )
    assert TableFileStore(path).load() == {"/data/good.txt": good}


def test_table_load_later_line_shadows_earlier(tmp_path: Path):
    path = tmp_path / "hashes.txt"
    path.write_text(
        f"/data/a.txt: {_digest(b'one')}\n/data/a.txt: {_digest(b'two')}\n",
        encoding="utf-8",
    )
    assert TableFileStore(path).load() == {"/data/a.txt": _digest(b"two")}


def test_table_load_skips_binary_garbage(tmp_path: Path):
    path = tmp_path / "hashes.txt"
    good = _digest(b"good")
    path.write_bytes(b"\xff\xfe\x00garbage\n" + f"/data/good.txt: {good}\r\n".encode("ascii"))
    assert TableFileStore(path).load() == {"/data/good.txt": good}


def test_table_refuses_newline_in_name(tmp_path: Path):
    store = TableFileStore(tmp_path / "hashes.txt")
    original = {"/data/a.txt": _digest(b"a")}
    store.save(original)

    with pytest.raises(StoreUnavailableError, match="newline"):
        store.save({"/data/two\nlines.txt": _digest(b"b")})

    assert store.load() == original
    assert sorted(p.name for p in tmp_path.iterdir()) == ["hashes.txt"]


def test_failed_save_keeps_previous_state(tmp_path: Path, monkeypatch):
    store = TableFileStore(tmp_path / "hashes.txt")
    original = {"/data/a.txt": _digest(b"a")}
    store.save(original)

    def broken_replace(src, dst):
        raise OSError("disk full")

    monkeypatch.setattr(os, "replace", broken_replace)
    with pytest.raises(StoreUnavailableError, match="disk full"):
        store.save({"/data/b.txt": _digest(b"b")})
    monkeypatch.undo()

    assert store.load() == original
    assert sorted(p.name for p in tmp_path.iterdir()) == ["hashes.txt"]


# Append log

def test_log_insert_one_shadows_earlier_records(tmp_path: Path):
    store = AppendLogStore(tmp_path / "hashes.jsonl")
    store.insert_one("/data/a.txt", _digest(b"one"))
    store.insert_one("/data/b.txt", _digest(b"b"))
    store.insert_one("/data/a.txt", _digest(b"two"))

    assert len(store.path.read_text(encoding="utf-8").splitlines()) == 3
    assert store.load() == {
        "/data/a.txt": _digest(b"two"),
        "/data/b.txt": _digest(b"b"),
    }


def test_log_save_compacts_to_one_record_per_path(tmp_path: Path):
    store = AppendLogStore(tmp_path / "hashes.jsonl")
    for content in (b"one", b"two", b"three"):
        store.insert_one("/data/a.txt", _digest(content))
    store.save(store.load())
    assert len(store.path.read_text(encoding="utf-8").splitlines()) == 1
    assert store.load() == {"/data/a.txt": _digest(b"three")}


def test_log_ignores_torn_last_record(tmp_path: Path):
    store = AppendLogStore(tmp_path / "hashes.jsonl")
    store.insert_one("/data/a.txt", _digest(b"a"))
    with store.path.open("a", encoding="utf-8") as handle:
        handle.write('{"path": "/data/b.txt", "ha')

    assert store.load() == {"/data/a.txt": _digest(b"a")}

    store.insert_one("/data/c.txt", _digest(b"c"))
    assert store.load() == {
        "/data/a.txt": _digest(b"a"),
        "/data/c.txt": _digest(b"c"),
    }


def test_log_rejects_corrupt_record_before_end(tmp_path: Path):
    path = tmp_path / "hashes.jsonl"
    path.write_text(
        "not json\n" + f'{{"path": "/data/a.txt", "hash": "{_digest(b"a")}"}}\n',
        encoding="utf-8",
    )
    with pytest.raises(StoreCorruptError, match="line 1"):
        AppendLogStore(path).load()


def test_log_rejects_invalid_terminated_last_record(tmp_path: Path):
    path = tmp_path / "hashes.jsonl"
    content = f'{{"path": "/a", "hash": "{_digest(b"a")}"}}\n{{"path": "/b"}}\n'
    path.write_text(content, encoding="utf-8")
    store = AppendLogStore(path)

    with pytest.raises(StoreCorruptError, match="line 2"):
        store.load()

    store.insert_one("/c", _digest(b"c"))
    with pytest.raises(StoreCorruptError, match="line 2"):
        store.load()


def test_log_records_are_ascii(tmp_path: Path):
    store = AppendLogStore(tmp_path / "hashes.jsonl")
    store.insert_one("/data/a\u2028b.log", _digest(b"a"))
    raw = store.path.read_bytes()
    assert raw.isascii()
    assert raw.count(b"\n") == 1
    assert store.load() == {"/data/a\u2028b.log": _digest(b"a")}


# SQLite

def test_sqlite_schema(tmp_path: Path):
    store = SqliteStore(tmp_path / "hashes.db")
    store.save({"/data/a.txt": _digest(b"a")})

    conn = sqlite3.connect(str(store.path))
    try:
        columns = conn.execute("PRAGMA table_info(file_hashes)").fetchall()
    finally:
        conn.close()
    by_name = {col[1]: col for col in columns}
    assert set(by_name) == {"path", "hash"}
    assert by_name["path"][5] == 1  # primary key
    assert by_name["hash"][3] == 1  # not null


def test_sqlite_insert_one_upserts_existing_path(tmp_path: Path):
    store = SqliteStore(tmp_path / "hashes.db")
    store.save({"/data/a.txt": _digest(b"one")})
    store.insert_one("/data/a.txt", _digest(b"two"))
    store.insert_one("/data/b.txt", _digest(b"b"))

    assert _fetch_db_rows(store.path) == [
        ("/data/a.txt", _digest(b"two")),
        ("/data/b.txt", _digest(b"b")),
    ]


def test_sqlite_failed_save_rolls_back(tmp_path: Path):
    store = SqliteStore(tmp_path / "hashes.db")
    original = {"/data/a.txt": _digest(b"a")}
    store.save(original)

    with pytest.raises(StoreUnavailableError) as excinfo:
        store.save({"/data/b.txt": _digest(b"b"), "/data/c.txt": None})
    assert not isinstance(excinfo.value, StoreCorruptError)

    assert store.load() == original


def test_sqlite_rejects_non_database_file(tmp_path: Path):
    path = tmp_path / "hashes.db"
    path.write_bytes(b"this is not a sqlite database, just some text" * 10)
    with pytest.raises(StoreCorruptError):
        SqliteStore(path).load()
