from __future__ import annotations

import argparse
import sys
from pathlib import Path

from dptrecovery.core.cli import EXIT_LOCK_BUSY, EXIT_OK, run_cli
from dptrecovery.core.logging import configure_logging
from dptrecovery.services.backup import BackupOptions, create_backup


def main() -> None:
    # Parse CLI flags for a timestamped pg_dump backup.
    parser = argparse.ArgumentParser(description="Create a timestamped database backup")
    parser.add_argument("--output", default=None, help="Backup directory (defaults to BACKUP_DIR)")
    scope = parser.add_mutually_exclusive_group()
    scope.add_argument("--schema-only", action="store_true")
    scope.add_argument("--data-only", action="store_true")
    parser.add_argument("--tables", default="", help="Comma-separated table names")
    parser.add_argument("--compress", action=argparse.BooleanOptionalAction, default=None)
    parser.add_argument("--verbose", action="store_true")
    args = parser.parse_args()
    configure_logging(verbose=args.verbose)

    options = BackupOptions(
        output_dir=Path(args.output) if args.output else None,
        schema_only=args.schema_only,
        data_only=args.data_only,
        tables=tuple(item.strip() for item in args.tables.split(",") if item.strip()),
        compress=args.compress,
    )

    async def _run() -> int:
        created = await create_backup(options)
        print(f"backup_path={created.path}")
        print(f"size_bytes={created.size_bytes}")
        print(f"sha256={created.sha256}")
        print(f"duration_seconds={created.duration_seconds}")
        return EXIT_OK

    sys.exit(run_cli(_run, busy_exit_code=EXIT_LOCK_BUSY))


if __name__ == "__main__":
    main()
