from __future__ import annotations

import argparse
import sys
from pathlib import Path

from dptrecovery.core.cli import EXIT_FAILURE, EXIT_OK, print_json, run_cli
from dptrecovery.core.logging import configure_logging
from dptrecovery.services.backup import list_backup_files
from dptrecovery.services.retention import StorageStats, calculate_stats, format_size, rotate_backups


def _print_stats(label: str, stats: StorageStats) -> None:
    print(f"{label}_backups={stats.backup_count}")
    print(f"{label}_size={format_size(stats.total_size_bytes)}")
    print(f"{label}_usage_percent={stats.usage_percent}")
    print(f"{label}_detailed={stats.detailed_count}")
    print(f"{label}_daily={stats.daily_count}")
    print(f"{label}_oldest={stats.oldest_backup or 'n/a'}")
    print(f"{label}_newest={stats.newest_backup or 'n/a'}")


def main() -> None:
    # Apply tiered retention to the local backup directory.
    parser = argparse.ArgumentParser(description="Rotate local backups (48h detailed + 30d daily, capped)")
    parser.add_argument("--backup-dir", default=None)
    parser.add_argument("--dry-run", action="store_true", help="Report the plan without deleting")
    parser.add_argument("--stats", action="store_true", help="Only print storage statistics")
    parser.add_argument("--force", action="store_true", help="Allow deleting more than the safety threshold")
    parser.add_argument("--json", action="store_true")
    parser.add_argument("--verbose", action="store_true")
    args = parser.parse_args()
    configure_logging(verbose=args.verbose)
    backup_dir = Path(args.backup_dir) if args.backup_dir else None

    if args.stats:
        stats = calculate_stats(list_backup_files(backup_dir))
        if args.json:
            print_json(stats.to_dict())
        else:
            _print_stats("current", stats)
        sys.exit(EXIT_OK)

    async def _run() -> int:
        run = rotate_backups(backup_dir, dry_run=args.dry_run, force=args.force)
        if args.json:
            print_json(
                {
                    "dry_run": run.report.dry_run,
                    "before": run.before.to_dict(),
                    "after": run.after.to_dict(),
                    "requested": [str(path) for path in run.report.requested],
                    "deleted": [str(path) for path in run.report.deleted],
                    "failed": [{"path": str(path), "error": error} for path, error in run.report.failed],
                    "warnings": run.decision.warnings,
                    "cap_exceeded": run.decision.cap_exceeded,
                }
            )
        else:
            _print_stats("before", run.before)
            print(f"dry_run={str(run.report.dry_run).lower()}")
            print(f"requested_deletions={run.report.requested_count}")
            print(f"deleted={run.report.deleted_count}")
            print(f"failed={len(run.report.failed)}")
            print(f"freed={format_size(run.report.freed_bytes)}")
            for warning in run.decision.warnings:
                print(f"warning={warning}")
            _print_stats("after", run.after)
        if run.report.failed or run.over_cap:
            return EXIT_FAILURE
        return EXIT_OK

    sys.exit(run_cli(_run))


if __name__ == "__main__":
    main()
