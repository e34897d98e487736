from __future__ import annotations

import argparse
import sys
from pathlib import Path

from dptrecovery.core.cli import EXIT_FAILURE, EXIT_OK, print_json
from dptrecovery.core.logging import configure_logging
from dptrecovery.services.lock import LOCK_OPERATIONS, BackupLock


def _status(lock_dir: Path | None) -> int:
    # Report every operation lock so operators can spot stuck jobs.
    report = {}
    for operation in sorted(LOCK_OPERATIONS):
        lock = BackupLock(operation, lock_dir=lock_dir)
        holder = lock.current_holder()
        report[operation] = {
            "path": str(lock.path),
            "held": holder is not None,
            "stale": lock.is_stale(holder) if holder is not None else False,
            "holder": holder.to_dict() if holder is not None else None,
        }
    print_json(report)
    return EXIT_OK


def _clear(operations: list[str], lock_dir: Path | None, force: bool) -> int:
    exit_code = EXIT_OK
    for operation in operations:
        lock = BackupLock(operation, lock_dir=lock_dir)
        if lock.clear(force=force):
            print(f"cleared={operation}")
        elif lock.current_holder() is not None:
            print(f"held_by_live_process={operation}")
            exit_code = EXIT_FAILURE
        else:
            print(f"not_locked={operation}")
    return exit_code


def main() -> None:
    # Inspect or clear operation lock files.
    parser = argparse.ArgumentParser(description="Inspect and clear backup operation locks")
    parser.add_argument("--lock-dir", default=None)
    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("status")
    clear = sub.add_parser("clear")
    clear.add_argument("--operation", choices=sorted(LOCK_OPERATIONS), default=None)
    clear.add_argument("--force", action="store_true", help="Also remove locks held by live processes")
    args = parser.parse_args()
    configure_logging()

    lock_dir = Path(args.lock_dir) if args.lock_dir else None
    if args.command == "status":
        sys.exit(_status(lock_dir))
    operations = [args.operation] if args.operation else sorted(LOCK_OPERATIONS)
    sys.exit(_clear(operations, lock_dir, args.force))


if __name__ == "__main__":
    main()
