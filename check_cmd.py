"""
Check command: re-hash the target and compare to stored hashes.
"""

import logging
import time
from dataclasses import asdict
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Set

from common import (
    STATUS_MODIFIED,
    STATUS_UNCHANGED,
    STATUS_UNTRACKED,
    CheckResult,
    MissingDigestError,
    build_report,
    hash_target_file,
    normalize_path,
    resolve_target_files,
)
from store import DigestStore


def compare_hash(file_path: Path, hashes: Mapping[str, str]) -> CheckResult:
    """Compare the current hash of file_path with its stored hash.

    Raises MissingDigestError when the path has no stored hash.
    """
    path_str = str(file_path)
    expected = hashes.get(path_str)
    if expected is None:
        raise MissingDigestError(path_str)
    actual = hash_target_file(file_path)
    status = STATUS_UNCHANGED if actual == expected else STATUS_MODIFIED
    return CheckResult(path=path_str, status=status, expected_hash=expected, actual_hash=actual)


def _find_missing(
    directory: Path,
    hashes: Mapping[str, str],
    seen: Set[str],
    excluded_paths: Set[str],
    store: DigestStore,
) -> List[Dict[str, object]]:
    """Stored entries directly inside directory that are no longer on disk."""
    missing: List[Dict[str, object]] = []
    for path_str, digest in sorted(hashes.items()):
        if path_str in seen or path_str in excluded_paths:
            continue
        record_path = Path(path_str)
        if record_path.parent != directory or store.owns(record_path):
            continue
        if record_path.exists():
            # present but not a regular file, e.g. replaced by a directory
            continue
        missing.append({"path": path_str, "hash": digest})
    return missing


def check_target(
    target: Path,
    store: DigestStore,
    excluded_paths: Optional[Set[str]] = None,
) -> Dict[str, object]:
    """Compare every file covered by target with the store.

    Modified and untracked files are normal results, not errors; one file's
    status never stops evaluation of the others. The store is not written.
    """
    excluded = excluded_paths or set()
    run_started = int(time.time())
    target = normalize_path(target)

    hashes = store.load()
    files = resolve_target_files(target, excluded, store.owns)

    stats = {
        "checked": 0,
        "unchanged": 0,
        "modified": 0,
        "untracked": 0,
        "missing": 0,
    }
    results: List[CheckResult] = []
    for file_path in files:
        stats["checked"] += 1
        try:
            result = compare_hash(file_path, hashes)
        except MissingDigestError as exc:
            logging.debug(str(exc))
            result = CheckResult(
                path=exc.path,
                status=STATUS_UNTRACKED,
                actual_hash=hash_target_file(file_path),
            )
        stats[result.status] += 1
        results.append(result)

    missing: List[Dict[str, object]] = []
    if target.is_dir():
        missing = _find_missing(target, hashes, {r.path for r in results}, excluded, store)
        stats["missing"] = len(missing)

    logging.info(
        f"Check summary: checked={stats['checked']}, unchanged={stats['unchanged']}, "
        f"modified={stats['modified']}, untracked={stats['untracked']}, missing={stats['missing']}"
    )

    clean = not (stats["modified"] or stats["untracked"] or stats["missing"])
    return build_report(
        target=target,
        store_path=store.path,
        backend=store.backend,
        stats=stats,
        run_started=run_started,
        run_finished=int(time.time()),
        mode="check",
        message="All files unchanged" if clean else "Integrity differences found",
        details={
            "results": [asdict(r) for r in results],
            "missing": missing,
        },
    )
