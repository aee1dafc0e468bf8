"""
Digest stores: durable path -> hash mappings behind one load/save interface.

Three interchangeable backends are provided:

  sqlite  single table file_hashes(path PRIMARY KEY, hash), upserted in one transaction
  table   UTF-8 text, one "<path>: <digest>" line per file, rewritten atomically
  log     JSON Lines, appended per insert and compacted on save

A store that does not exist yet loads as an empty mapping.
"""

import json
import logging
import os
import sqlite3
import tempfile
from pathlib import Path
from typing import Dict, Iterable, List, Mapping, Protocol, Union, runtime_checkable

from common import (
    DEFAULT_BACKEND,
    StoreCorruptError,
    StoreUnavailableError,
    is_digest,
)


TABLE_SEPARATOR = ": "


class DigestStore(Protocol):
    """Capability set shared by every backend."""

    backend: str
    path: Path

    def load(self) -> Dict[str, str]:
        ...

    def save(self, hashes: Mapping[str, str]) -> None:
        ...

    def owns(self, path: Path) -> bool:
        ...


@runtime_checkable
class IncrementalStore(Protocol):
    """Backends that can durably write one record without a full rewrite."""

    def insert_one(self, path: str, digest: str) -> None:
        ...


def _temp_prefix(path: Path) -> str:
    return f".{path.name}."


def _discard(temp_path: str) -> None:
    try:
        os.unlink(temp_path)
    except OSError as cleanup_err:
        logging.debug(f"Failed to clean up temp file {temp_path}: {cleanup_err}")


def _atomic_write_lines(path: Path, lines: Iterable[str]) -> None:
    """Write lines to a temp file next to path, then move it into place.

    Undecodable filename bytes (surrogate escapes) are written back as the
    original bytes.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, temp_path = tempfile.mkstemp(
        prefix=_temp_prefix(path),
        suffix=".tmp",
        dir=str(path.parent),
    )
    try:
        with os.fdopen(
            fd, "w", encoding="utf-8", errors="surrogateescape", newline="\n"
        ) as handle:
            for line in lines:
                handle.write(line)
                handle.write("\n")
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(temp_path, path)
    except (OSError, UnicodeError) as exc:
        _discard(temp_path)
        raise StoreUnavailableError(f"Could not write store {path}: {exc}") from exc
    except BaseException:
        _discard(temp_path)
        raise


def _read_lines(path: Path) -> List[str]:
    """Split the store on "\\n" only; other line breaks can be part of a filename."""
    try:
        with path.open("r", encoding="utf-8", errors="surrogateescape", newline="") as handle:
            return handle.read().split("\n")
    except FileNotFoundError:
        return []
    except OSError as exc:
        raise StoreUnavailableError(f"Could not read store {path}: {exc}") from exc


def _owns_sibling(store_path: Path, path: Path) -> bool:
    """True for the store file itself and any temp file a save may leave beside it."""
    if path.parent != store_path.parent:
        return False
    return path.name == store_path.name or path.name.startswith(_temp_prefix(store_path))


class TableFileStore:
    """Flat text table, fully rewritten on every save.

    Filenames containing "\\n" cannot be represented and are refused on save.
    """

    backend = "table"

    def __init__(self, path: Path) -> None:
        self.path = Path(os.path.abspath(path))

    def load(self) -> Dict[str, str]:
        hashes: Dict[str, str] = {}
        for line_no, line in enumerate(_read_lines(self.path), start=1):
            if not line.strip():
                continue
            path_str, sep, digest = line.rpartition(TABLE_SEPARATOR)
            # tolerate CRLF line endings from hand-edited tables
            digest = digest.rstrip("\r")
            if not sep or not path_str or not is_digest(digest):
                logging.warning(f"Skipping malformed line {line_no} in {self.path}")
                continue
            hashes[path_str] = digest
        return hashes

    def save(self, hashes: Mapping[str, str]) -> None:
        for path_str in hashes:
            if "\n" in path_str:
                raise StoreUnavailableError(
                    f"Cannot store {path_str!r} in table {self.path}: filename contains a newline"
                )
        _atomic_write_lines(
            self.path,
            (f"{path_str}{TABLE_SEPARATOR}{digest}" for path_str, digest in sorted(hashes.items())),
        )

    def owns(self, path: Path) -> bool:
        return _owns_sibling(self.path, path)


class AppendLogStore:
    """Append-only JSON Lines log; the last record for a path wins."""

    backend = "log"

    def __init__(self, path: Path) -> None:
        self.path = Path(os.path.abspath(path))

    @staticmethod
    def _encode(path_str: str, digest: str) -> str:
        # ASCII-only records: no raw line separators or surrogates reach the file
        return json.dumps({"path": path_str, "hash": digest}, ensure_ascii=True)

    def load(self) -> Dict[str, str]:
        lines = _read_lines(self.path)
        # only a final line with no terminating "\n" can be a torn append
        torn_index = len(lines) - 1 if lines and lines[-1] else None
        hashes: Dict[str, str] = {}
        for index, line in enumerate(lines):
            if not line.strip():
                continue
            try:
                record = json.loads(line)
                path_str = record["path"]
                digest = record["hash"]
                if not isinstance(path_str, str) or not path_str or not is_digest(digest):
                    raise ValueError("invalid record")
            except (ValueError, KeyError, TypeError) as exc:
                if index == torn_index:
                    logging.warning(f"Ignoring incomplete last record in {self.path}")
                    continue
                raise StoreCorruptError(
                    f"Corrupt record on line {index + 1} of {self.path}: {exc}"
                ) from exc
            hashes[path_str] = digest
        return hashes

    def save(self, hashes: Mapping[str, str]) -> None:
        _atomic_write_lines(
            self.path,
            (self._encode(path_str, digest) for path_str, digest in sorted(hashes.items())),
        )

    def _ends_cleanly(self) -> bool:
        try:
            with self.path.open("rb") as handle:
                handle.seek(0, os.SEEK_END)
                if handle.tell() == 0:
                    return True
                handle.seek(-1, os.SEEK_END)
                return handle.read(1) == b"\n"
        except FileNotFoundError:
            return True
        except OSError as exc:
            raise StoreUnavailableError(f"Could not read store {self.path}: {exc}") from exc

    def insert_one(self, path: str, digest: str) -> None:
        if not self._ends_cleanly():
            # drop the torn record before appending after it
            self.save(self.load())
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with self.path.open("a", encoding="utf-8", newline="\n") as handle:
                handle.write(self._encode(path, digest))
                handle.write("\n")
                handle.flush()
                os.fsync(handle.fileno())
        except OSError as exc:
            raise StoreUnavailableError(f"Could not append to store {self.path}: {exc}") from exc

    def owns(self, path: Path) -> bool:
        return _owns_sibling(self.path, path)


def _encode_key(path_str: str) -> Union[str, bytes]:
    try:
        path_str.encode("utf-8")
    except UnicodeEncodeError:
        return os.fsencode(path_str)
    return path_str


def _decode_key(key: Union[str, bytes]) -> str:
    if isinstance(key, bytes):
        return os.fsdecode(key)
    return key


class SqliteStore:
    """Single-table SQLite store; one row per path.

    Paths that are not valid UTF-8 are kept as their raw filename bytes (a BLOB
    key), so they round-trip without being mangled.
    """

    backend = "sqlite"

    def __init__(self, path: Path) -> None:
        self.path = Path(os.path.abspath(path))

    def _connect(self) -> sqlite3.Connection:
        """Open database connection and initialize schema."""
        existed = self.path.exists()
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            conn = sqlite3.connect(str(self.path))
        except (OSError, sqlite3.Error) as exc:
            raise StoreUnavailableError(f"Could not open store {self.path}: {exc}") from exc
        try:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS file_hashes (
                    path TEXT PRIMARY KEY NOT NULL,
                    hash TEXT NOT NULL
                )
                """
            )
        except sqlite3.Error as exc:
            conn.close()
            raise self._translate(exc, existed) from exc
        return conn

    def _translate(self, exc: sqlite3.Error, existed: bool = True) -> StoreUnavailableError:
        # not-a-database and corrupt-image errors are raised as the base class
        if existed and type(exc) is sqlite3.DatabaseError:
            return StoreCorruptError(f"Store {self.path} is not a valid database: {exc}")
        return StoreUnavailableError(f"Store {self.path} is unavailable: {exc}")

    def load(self) -> Dict[str, str]:
        if not self.path.exists():
            return {}
        conn = self._connect()
        try:
            rows = conn.execute("SELECT path, hash FROM file_hashes").fetchall()
        except sqlite3.Error as exc:
            raise self._translate(exc) from exc
        finally:
            conn.close()
        return {_decode_key(key): digest for key, digest in rows}

    def save(self, hashes: Mapping[str, str]) -> None:
        conn = self._connect()
        try:
            with conn:
                conn.execute("DELETE FROM file_hashes")
                conn.executemany(
                    """
                    INSERT INTO file_hashes (path, hash)
                    VALUES (?, ?)
                    ON CONFLICT(path) DO UPDATE SET hash = excluded.hash
                    """,
                    [
                        (_encode_key(path_str), digest)
                        for path_str, digest in sorted(hashes.items())
                    ],
                )
        except sqlite3.Error as exc:
            raise self._translate(exc) from exc
        except UnicodeError as exc:
            raise StoreUnavailableError(f"Cannot store path in {self.path}: {exc}") from exc
        finally:
            conn.close()

    def insert_one(self, path: str, digest: str) -> None:
        conn = self._connect()
        try:
            with conn:
                conn.execute(
                    """
                    INSERT INTO file_hashes (path, hash)
                    VALUES (?, ?)
                    ON CONFLICT(path) DO UPDATE SET hash = excluded.hash
                    """,
                    (_encode_key(path), digest),
                )
        except sqlite3.Error as exc:
            raise self._translate(exc) from exc
        except UnicodeError as exc:
            raise StoreUnavailableError(f"Cannot store path in {self.path}: {exc}") from exc
        finally:
            conn.close()

    def owns(self, path: Path) -> bool:
        if path.parent != self.path.parent:
            return False
        return path.name in (
            self.path.name,
            f"{self.path.name}-journal",
            f"{self.path.name}-wal",
            f"{self.path.name}-shm",
        )


BACKENDS = {
    SqliteStore.backend: SqliteStore,
    TableFileStore.backend: TableFileStore,
    AppendLogStore.backend: AppendLogStore,
}


def open_store(path: Path, backend: str = DEFAULT_BACKEND) -> DigestStore:
    """Construct the store for backend at path."""
    try:
        store_cls = BACKENDS[backend]
    except KeyError:
        raise ValueError(
            f"Unknown store backend {backend!r} (choose from {', '.join(sorted(BACKENDS))})"
        ) from None
    return store_cls(Path(path))
