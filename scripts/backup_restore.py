from __future__ import annotations

import argparse
import sys
from pathlib import Path

from dptrecovery.core.cli import EXIT_FAILURE, EXIT_OK, print_json, run_cli
from dptrecovery.core.logging import configure_logging
from dptrecovery.services.restore import RestoreOptions, restore_database


def main() -> None:
    # Restore a dump into a named database; dry run unless --execute is given.
    parser = argparse.ArgumentParser(
        description="Restore a database backup (dry run by default)",
        epilog="Destructive example: --input=backup.sql --drop-existing --force --execute",
    )
    parser.add_argument("--input", required=True)
    parser.add_argument("--database", default=None, help="Target database (defaults to DATABASE_URL's)")
    parser.add_argument("--drop-existing", action="store_true")
    parser.add_argument("--create-if-missing", action="store_true")
    parser.add_argument("--dry-run", action="store_true")
    parser.add_argument("--execute", action="store_true", help="Actually perform the restore")
    parser.add_argument("--allow-production", action="store_true")
    parser.add_argument("--force", action="store_true")
    parser.add_argument("--non-interactive", action="store_true")
    parser.add_argument("--timeout", type=float, default=None, help="Restore timeout in seconds")
    parser.add_argument("--verbose", action="store_true")
    args = parser.parse_args()
    configure_logging(verbose=args.verbose)

    options = RestoreOptions(
        input=Path(args.input),
        database=args.database,
        drop_existing=args.drop_existing,
        create_if_missing=args.create_if_missing,
        verbose=args.verbose,
        dry_run=args.dry_run,
        allow_production=args.allow_production,
        force=args.force,
        non_interactive=args.non_interactive,
        execute=args.execute,
        timeout_seconds=args.timeout,
    )

    async def _run() -> int:
        result = await restore_database(options)
        print_json(result.to_dict())
        if result.dry_run and result.success:
            print("dry_run=true (add --execute to perform the restore)")
        return EXIT_OK if result.success else EXIT_FAILURE

    sys.exit(run_cli(_run))


if __name__ == "__main__":
    main()
