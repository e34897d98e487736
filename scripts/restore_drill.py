from __future__ import annotations

import argparse
import sys
from pathlib import Path

from dptrecovery.core.cli import EXIT_FAILURE, EXIT_OK, print_json, run_cli
from dptrecovery.core.logging import configure_logging
from dptrecovery.services.drill import DrillOptions, DrillResult, run_drill, write_report


def _print_summary(result: DrillResult) -> None:
    print(f"backup_file={result.backup_file}")
    print(f"test_database={result.test_database}")
    print(f"restore_seconds={result.restore_seconds:.2f}")
    print(f"total_seconds={result.total_seconds:.2f}")
    print(f"rto_target_seconds={result.target_rto_seconds:g}")
    print(f"rto_status={'passed' if result.passed_rto else 'failed'}")
    print(f"status={'success' if result.success else 'failed'}")
    for warning in result.warnings:
        print(f"warning={warning}")
    for error in result.errors:
        print(f"error={error}")
    if result.kept_database:
        print(f"kept_database={result.test_database}")


def main() -> None:
    # Timed restore drill against the RTO target.
    parser = argparse.ArgumentParser(description="Run a disaster-recovery restore drill")
    parser.add_argument("--input", default=None, help="Backup file (defaults to the latest)")
    parser.add_argument("--database", default=None, help="Drill database name (random by default)")
    parser.add_argument("--backup-dir", default=None)
    parser.add_argument("--no-cleanup", action="store_true", help="Keep the drill database")
    parser.add_argument("--report", default=None, help="Write a JSON report to this path")
    parser.add_argument("--rto-target", type=float, default=None, help="RTO target in seconds")
    parser.add_argument("--json", action="store_true")
    parser.add_argument("--verbose", action="store_true")
    args = parser.parse_args()
    configure_logging(verbose=args.verbose)

    options = DrillOptions(
        input=Path(args.input) if args.input else None,
        database=args.database,
        keep_database=args.no_cleanup,
        verbose=args.verbose,
        backup_dir=Path(args.backup_dir) if args.backup_dir else None,
        rto_target_seconds=args.rto_target,
    )

    async def _run() -> int:
        result = await run_drill(options)
        if args.report:
            write_report(result, Path(args.report))
        if args.json:
            print_json(result.to_dict())
        else:
            _print_summary(result)
        return EXIT_OK if result.success and result.passed_rto else EXIT_FAILURE

    sys.exit(run_cli(_run))


if __name__ == "__main__":
    main()
