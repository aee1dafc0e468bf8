"""
Shared code for integrity_check init, check and update: constants, types, errors, hashing, reporting.
"""

import hashlib
import json
import logging
import os
import sys
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Callable, Dict, List, Optional, Set


DEFAULT_DB_NAME = "hashes.db"
DEFAULT_BACKEND = "sqlite"
DEFAULT_HASH_ALGO = "sha256"
DEFAULT_CHUNK_SIZE = 8 * 1024 * 1024
DIGEST_LENGTH = 64

STATUS_UNCHANGED = "unchanged"
STATUS_MODIFIED = "modified"
STATUS_UNTRACKED = "untracked"


class IntegrityError(Exception):
    """Base class for errors reported by init, check and update."""


class TargetNotFoundError(IntegrityError):
    """The target path does not exist."""


class TargetReadError(IntegrityError):
    """Metadata, directory listing or file content could not be read."""


class InvalidTargetError(IntegrityError):
    """The target is neither a regular file nor a directory."""


class MissingDigestError(IntegrityError):
    """No stored digest exists for the requested path."""

    def __init__(self, path: str) -> None:
        super().__init__(f"No stored hash for {path}")
        self.path = path


class StoreUnavailableError(IntegrityError):
    """The digest store could not be read or written."""


class StoreCorruptError(StoreUnavailableError):
    """The digest store exists but cannot be parsed."""


class ReportWriteError(IntegrityError):
    """The JSON report could not be written."""


@dataclass
class CheckResult:
    """Outcome of comparing one file against the store."""
    path: str
    status: str
    expected_hash: Optional[str] = None
    actual_hash: Optional[str] = None


def setup_logging(log_file: Optional[Path] = None, verbose: bool = False) -> None:
    """Configure logging to file and console."""
    level = logging.DEBUG if verbose else logging.INFO
    handlers = [logging.StreamHandler(sys.stdout)]

    if log_file:
        # undecodable filenames arrive as surrogate escapes
        handlers.append(
            logging.FileHandler(log_file, mode="w", encoding="utf-8", errors="backslashreplace")
        )

    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(levelname)s - %(message)s',
        handlers=handlers
    )


def is_digest(value: str) -> bool:
    """Return True if value looks like a lowercase hex SHA-256 digest."""
    if len(value) != DIGEST_LENGTH:
        return False
    return all(c in "0123456789abcdef" for c in value)


def normalize_path(path: Path) -> Path:
    """Make path absolute without following symlinks."""
    return Path(os.path.abspath(path))


def compute_hash(file_path: Path, chunk_size: int = DEFAULT_CHUNK_SIZE) -> str:
    """Stream file_path through the configured hash and return it as lowercase hex."""
    hasher = hashlib.new(DEFAULT_HASH_ALGO)
    with file_path.open('rb') as handle:
        for chunk in iter(lambda: handle.read(chunk_size), b''):
            hasher.update(chunk)
    return hasher.hexdigest()


def hash_target_file(file_path: Path) -> str:
    """Hash one target file, turning OS failures into TargetReadError."""
    try:
        return compute_hash(file_path)
    except OSError as exc:
        raise TargetReadError(f"Could not hash {file_path}: {exc}") from exc


def resolve_target_files(
    target: Path,
    excluded_paths: Optional[Set[str]] = None,
    is_excluded: Optional[Callable[[Path], bool]] = None,
) -> List[Path]:
    """Return the files covered by target.

    A file target yields itself. A directory target yields its immediate
    regular-file children; nested directories are skipped, not descended into.
    """
    excluded = excluded_paths or set()
    target = normalize_path(target)
    try:
        is_dir = target.is_dir()
        is_file = target.is_file()
        exists = is_dir or is_file or os.path.lexists(target)
    except OSError as exc:
        raise TargetReadError(f"Could not read metadata of {target}: {exc}") from exc

    if not exists:
        raise TargetNotFoundError(f"Path does not exist: {target}")
    if is_file:
        return [target]
    if not is_dir:
        raise InvalidTargetError(f"Path is neither a file nor a directory: {target}")

    files: List[Path] = []
    try:
        with os.scandir(target) as entries:
            for entry in entries:
                entry_path = target / entry.name
                if str(entry_path) in excluded or (is_excluded and is_excluded(entry_path)):
                    logging.debug(f"Skipping excluded path {entry_path}")
                    continue
                if entry.is_dir():
                    logging.debug(f"Skipping nested directory {entry_path}")
                    continue
                if not entry.is_file():
                    logging.debug(f"Skipping non-regular entry {entry_path}")
                    continue
                files.append(entry_path)
    except OSError as exc:
        raise TargetReadError(f"Could not read directory {target}: {exc}") from exc
    return sorted(files)


def build_report(
    target: Path,
    store_path: Path,
    backend: str,
    stats: Dict[str, int],
    run_started: int,
    run_finished: int,
    mode: str,
    message: str,
    details: Optional[Dict[str, object]],
) -> Dict[str, object]:
    """Build JSON-compatible report."""
    report: Dict[str, object] = {
        "run_started": datetime.fromtimestamp(run_started).isoformat(),
        "run_finished": datetime.fromtimestamp(run_finished).isoformat(),
        "duration_seconds": run_finished - run_started,
        "target": str(target),
        "store": str(store_path),
        "backend": backend,
        "hash_algo": DEFAULT_HASH_ALGO,
        "mode": mode,
        "message": message,
        "stats": stats,
    }
    if details:
        report.update(details)
    return report


def write_report(report: Dict[str, object], report_path: Path) -> None:
    """Write report as JSON; paths with undecodable bytes are kept as escapes."""
    report_json = json.dumps(report, indent=2, sort_keys=True, ensure_ascii=True)
    try:
        report_path.parent.mkdir(parents=True, exist_ok=True)
        report_path.write_text(report_json, encoding="ascii")
    except OSError as exc:
        raise ReportWriteError(f"Could not write report {report_path}: {exc}") from exc
    logging.info(f"Report written to {report_path}")
