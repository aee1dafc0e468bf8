"""
Update command: refresh stored hashes for the target, keeping all other entries.
"""

import logging
import time
from pathlib import Path
from typing import Dict, List, MutableMapping, Optional, Set

from common import (
    build_report,
    hash_target_file,
    normalize_path,
    resolve_target_files,
)
from store import DigestStore, IncrementalStore


def update_hash(file_path: Path, hashes: MutableMapping[str, str]) -> Optional[str]:
    """Re-hash file_path into hashes. Returns the hash it replaced, if any."""
    path_str = str(file_path)
    previous = hashes.get(path_str)
    hashes[path_str] = hash_target_file(file_path)
    return previous


def update_target(
    target: Path,
    store: DigestStore,
    excluded_paths: Optional[Set[str]] = None,
) -> Dict[str, object]:
    """Merge fresh hashes for every file covered by target into the store.

    All files are hashed before anything is written, so a failure leaves the
    store as it was.
    """
    run_started = int(time.time())
    target = normalize_path(target)

    hashes = store.load()
    files = resolve_target_files(target, excluded_paths, store.owns)

    stats = {"added": 0, "updated": 0, "unchanged": 0}
    added: List[Dict[str, object]] = []
    updated: List[Dict[str, object]] = []
    for file_path in files:
        previous = update_hash(file_path, hashes)
        path_str = str(file_path)
        digest = hashes[path_str]
        if previous is None:
            stats["added"] += 1
            added.append({"path": path_str, "hash": digest})
        elif previous != digest:
            stats["updated"] += 1
            updated.append({"path": path_str, "hash": digest, "previous_hash": previous})
        else:
            stats["unchanged"] += 1

    if len(files) == 1 and isinstance(store, IncrementalStore):
        path_str = str(files[0])
        store.insert_one(path_str, hashes[path_str])
    else:
        store.save(hashes)

    logging.info(
        f"Update summary: added={stats['added']}, updated={stats['updated']}, "
        f"unchanged={stats['unchanged']}, store total={len(hashes)}"
    )

    return build_report(
        target=target,
        store_path=store.path,
        backend=store.backend,
        stats=stats,
        run_started=run_started,
        run_finished=int(time.time()),
        mode="update",
        message="Hash updated successfully" if len(files) == 1 else "Hashes updated successfully",
        details={"added": added, "updated": updated},
    )
