from __future__ import annotations

import argparse
import sys
from pathlib import Path

from dptrecovery.core.cli import EXIT_FAILURE, EXIT_OK, print_json, run_cli
from dptrecovery.core.logging import configure_logging
from dptrecovery.services.backup import find_latest_backup, list_backup_files
from dptrecovery.services.validation import ValidationResult, validate_backups


def _print_result(result: ValidationResult) -> None:
    status = "PASS" if result.success else "FAIL"
    print(f"{status} {result.backup_file} duration={result.duration_seconds}s")
    for check in result.checks:
        mark = "ok" if check.passed else "failed"
        print(f"  {check.name}: {mark} ({check.duration_ms}ms) {check.details}")
    if result.error:
        print(f"  error[{result.error_code}]: {result.error}")


def main() -> None:
    # Prove backups restore by replaying them into a throwaway database.
    parser = argparse.ArgumentParser(description="Validate database backups")
    parser.add_argument("file", nargs="?", default=None)
    parser.add_argument("--latest", action="store_true")
    parser.add_argument("--all", action="store_true")
    parser.add_argument("--backup-dir", default=None)
    parser.add_argument("--timeout", type=float, default=None, help="Restore timeout in seconds")
    parser.add_argument("--json", action="store_true")
    parser.add_argument("--verbose", action="store_true")
    args = parser.parse_args()
    if sum(1 for selected in (args.file, args.latest, args.all) if selected) != 1:
        parser.error("pass exactly one of: a backup file, --latest, --all")
    configure_logging(verbose=args.verbose)
    backup_dir = Path(args.backup_dir) if args.backup_dir else None

    if args.file:
        paths = [Path(args.file)]
    elif args.latest:
        latest = find_latest_backup(backup_dir)
        paths = [latest.path] if latest else []
    else:
        paths = [item.path for item in list_backup_files(backup_dir, include_encrypted=False)]
    if not paths:
        print("error=no backup files found")
        sys.exit(EXIT_FAILURE)

    async def _run() -> int:
        results = await validate_backups(paths, timeout_seconds=args.timeout)
        if args.json:
            print_json([result.to_dict() for result in results])
        else:
            for result in results:
                _print_result(result)
            passed = sum(1 for result in results if result.success)
            print(f"validated={len(results)} passed={passed} failed={len(results) - passed}")
        return EXIT_OK if all(result.success for result in results) else EXIT_FAILURE

    sys.exit(run_cli(_run))


if __name__ == "__main__":
    main()
