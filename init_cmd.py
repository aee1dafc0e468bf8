"""
Init command: hash the target and replace the whole store with the result.
"""

import logging
import time
from pathlib import Path
from typing import Dict, List, Optional, Set

from common import (
    build_report,
    hash_target_file,
    normalize_path,
    resolve_target_files,
)
from store import DigestStore


def init_target(
    target: Path,
    store: DigestStore,
    excluded_paths: Optional[Set[str]] = None,
) -> Dict[str, object]:
    """Hash every file covered by target and store exactly those hashes.

    Entries already in the store are discarded. Any hashing failure aborts
    before the store is written.
    """
    run_started = int(time.time())
    target = normalize_path(target)

    staged: Dict[str, str] = {}
    for file_path in resolve_target_files(target, excluded_paths, store.owns):
        staged[str(file_path)] = hash_target_file(file_path)
        logging.debug(f"Hashed {file_path}")

    store.save(staged)

    stored: List[Dict[str, object]] = [
        {"path": path_str, "hash": digest} for path_str, digest in sorted(staged.items())
    ]
    stats = {"stored": len(stored)}
    logging.info(f"Init summary: {len(stored)} file(s) hashed and stored in {store.path}")

    return build_report(
        target=target,
        store_path=store.path,
        backend=store.backend,
        stats=stats,
        run_started=run_started,
        run_finished=int(time.time()),
        mode="init",
        message="Hashes stored successfully",
        details={"stored": stored},
    )
