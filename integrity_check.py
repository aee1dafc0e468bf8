#!/usr/bin/env python3
"""
Integrity check – detect tampering or drift in files.

Computes SHA-256 hashes for a file, or for every file directly inside a
directory, and stores them keyed by path. Later runs re-hash and compare.

Commands:
  init    Hash the target and replace the store with the result.
  check   Re-hash the target and compare to stored hashes.
  update  Re-hash the target and merge the new hashes into the store.

Directories are reconciled one level deep; nested directories are skipped.
Use --help for full options and examples.
"""

import argparse
import logging
import sys
from pathlib import Path
from typing import Dict, Optional, Set

from check_cmd import check_target
from common import (
    DEFAULT_BACKEND,
    DEFAULT_DB_NAME,
    STATUS_MODIFIED,
    STATUS_UNCHANGED,
    IntegrityError,
    normalize_path,
    setup_logging,
    write_report,
)
from init_cmd import init_target
from store import BACKENDS, open_store
from update_cmd import update_target


STATUS_MESSAGES = {
    STATUS_UNCHANGED: "is unchanged",
    STATUS_MODIFIED: "has been modified",
}


def log_check_results(report: Dict[str, object]) -> None:
    """Log one line per checked file."""
    for item in report.get("results", []):
        message = STATUS_MESSAGES.get(item["status"], "is not tracked")
        if item["status"] == STATUS_UNCHANGED:
            logging.info(f"File {item['path']} {message}")
        else:
            logging.warning(f"File {item['path']} {message}")
    for item in report.get("missing", []):
        logging.warning(f"File {item['path']} is missing")


def run_command(
    command: str,
    target: Path,
    db_path: Path,
    backend: str = DEFAULT_BACKEND,
    report_path: Optional[Path] = None,
    log_path: Optional[Path] = None,
) -> int:
    """Run one command and return the process exit code."""
    store = open_store(db_path, backend)
    excluded_paths: Set[str] = set()
    for path in (report_path, log_path):
        if path:
            excluded_paths.add(str(normalize_path(path)))

    try:
        if command == 'init':
            report = init_target(target, store, excluded_paths)
        elif command == 'check':
            report = check_target(target, store, excluded_paths)
        elif command == 'update':
            report = update_target(target, store, excluded_paths)
        else:
            logging.error(f"Unknown command: {command}")
            return 2
    except IntegrityError as exc:
        logging.error(str(exc))
        return 1

    if command == 'check':
        log_check_results(report)
    logging.info(str(report["message"]))

    if report_path:
        try:
            write_report(report, report_path)
        except IntegrityError as exc:
            logging.error(str(exc))
            return 1

    stats = report.get("stats", {})
    if command == 'check' and (
        stats.get("modified", 0) or stats.get("untracked", 0) or stats.get("missing", 0)
    ):
        return 1
    return 0


def main() -> None:
    """Main entry point for the script."""
    parser = argparse.ArgumentParser(
        description='Store file hashes (init, update) or compare against them (check).',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python integrity_check.py init /var/log/app
  python integrity_check.py check /var/log/app/app.log --db hashes.db
  python integrity_check.py update /var/log/app --backend table --db hashes.txt
  python integrity_check.py check /var/log/app --report check.json
        """,
    )
    subparsers = parser.add_subparsers(dest='command', required=True)

    command_help = {
        'init': 'Hash the target and replace all stored hashes',
        'check': 'Compare current hashes of the target to stored hashes',
        'update': 'Refresh stored hashes for the target',
    }
    for name, help_text in command_help.items():
        sub = subparsers.add_parser(name, help=help_text)
        sub.add_argument(
            'path',
            type=Path,
            help='File, or directory whose immediate files are used',
        )
        sub.add_argument(
            '--db',
            type=Path,
            default=Path(DEFAULT_DB_NAME),
            help=f'Path to the hash store (default: {DEFAULT_DB_NAME})',
        )
        sub.add_argument(
            '--backend',
            choices=sorted(BACKENDS),
            default=DEFAULT_BACKEND,
            help=f'Store format (default: {DEFAULT_BACKEND})',
        )
        sub.add_argument(
            '--report',
            type=Path,
            help='Write a JSON report to this path',
        )
        sub.add_argument(
            '--log',
            type=Path,
            help='Write log output to this file',
        )
        sub.add_argument(
            '--verbose',
            action='store_true',
            help='Enable verbose (debug) logging',
        )

    args = parser.parse_args()

    setup_logging(args.log, args.verbose)

    sys.exit(run_command(
        args.command,
        args.path,
        args.db,
        backend=args.backend,
        report_path=args.report,
        log_path=args.log,
    ))


if __name__ == "__main__":
    main()
