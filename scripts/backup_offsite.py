from __future__ import annotations

import argparse
import sys
from pathlib import Path

from dptrecovery.core.cli import EXIT_FAILURE, EXIT_LOCK_BUSY, EXIT_OK, print_json, run_cli
from dptrecovery.core.logging import configure_logging
from dptrecovery.services.offsite import run_offsite_sync


def main() -> None:
    # Encrypt and upload backups to object storage.
    parser = argparse.ArgumentParser(description="Encrypt and upload backups offsite")
    parser.add_argument("files", nargs="*", default=[])
    parser.add_argument("--all", action="store_true", help="Sync every plain dump in the backup dir")
    parser.add_argument("--backup-dir", default=None)
    parser.add_argument("--json", action="store_true")
    parser.add_argument("--verbose", action="store_true")
    args = parser.parse_args()
    if bool(args.files) == args.all:
        parser.error("pass backup files or --all")
    configure_logging(verbose=args.verbose)

    paths = None if args.all else [Path(item) for item in args.files]
    backup_dir = Path(args.backup_dir) if args.backup_dir else None

    async def _run() -> int:
        results = await run_offsite_sync(paths, directory=backup_dir)
        if args.json:
            print_json([result.to_dict() for result in results])
        else:
            for result in results:
                status = "ok" if result.success else "failed"
                print(
                    f"{status} {result.local_file} key={result.remote_key} "
                    f"attempts={result.attempts} verified={str(result.verified).lower()}"
                )
                if result.error:
                    print(f"  error={result.error}")
            succeeded = sum(1 for result in results if result.success)
            print(f"synced={succeeded} failed={len(results) - succeeded}")
        return EXIT_OK if all(result.success for result in results) else EXIT_FAILURE

    sys.exit(run_cli(_run, busy_exit_code=EXIT_LOCK_BUSY))


if __name__ == "__main__":
    main()
