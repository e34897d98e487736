from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
import json
import logging
from pathlib import Path
import time
from typing import Any, Callable

from dptrecovery.core.config import get_settings
from dptrecovery.core.errors import ConfigurationError, RecoveryError
from dptrecovery.services.backup import check_backup_file, find_latest_backup
from dptrecovery.services.commands import PostgresClient, quote_identifier
from dptrecovery.services.encryption import materialize_backup
from dptrecovery.services.lock import BackupLock
from dptrecovery.services.validation import restore_with_timeout
from dptrecovery.services.verification import (
    RESTORE_SUMMARY_TABLES,
    CheckResult,
    collect_row_counts,
    ephemeral_database,
    ephemeral_database_name,
    run_integrity_checks,
    run_standard_checks,
)


logger = logging.getLogger(__name__)


def evaluate_rto(total_seconds: float, target_seconds: float) -> bool:
    # Inclusive bound: finishing exactly on target passes.
    return total_seconds <= target_seconds


@dataclass(frozen=True)
class DrillOptions:
    input: Path | None = None
    database: str | None = None
    keep_database: bool = False
    verbose: bool = False
    backup_dir: Path | None = None
    timeout_seconds: float | None = None
    rto_target_seconds: float | None = None


@dataclass
class DrillResult:
    timestamp: str
    success: bool = False
    backup_file: str = ""
    test_database: str = ""
    restore_seconds: float = 0.0
    total_seconds: float = 0.0
    target_rto_seconds: float = 0.0
    passed_rto: bool = False
    checks: list[CheckResult] = field(default_factory=list)
    row_counts: dict[str, int] = field(default_factory=dict)
    orphaned_units: int = 0
    orphaned_leases: int = 0
    duplicate_usernames: int = 0
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    kept_database: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "success": self.success,
            "backup_file": self.backup_file,
            "test_database": self.test_database,
            "restore_seconds": self.restore_seconds,
            "total_seconds": self.total_seconds,
            "target_rto_seconds": self.target_rto_seconds,
            "passed_rto": self.passed_rto,
            "checks": [check.to_dict() for check in self.checks],
            "row_counts": dict(self.row_counts),
            "integrity": {
                "orphaned_units": self.orphaned_units,
                "orphaned_leases": self.orphaned_leases,
                "duplicate_usernames": self.duplicate_usernames,
            },
            "errors": list(self.errors),
            "warnings": list(self.warnings),
            "kept_database": self.kept_database,
        }


def write_report(result: DrillResult, path: Path) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(result.to_dict(), indent=2, sort_keys=True) + "\n", encoding="utf-8")
    logger.info("drill_report_written path=%s", path)
    return path


async def run_drill(
    options: DrillOptions | None = None,
    *,
    client: PostgresClient | None = None,
    lock_dir: Path | None = None,
    secret: str | None = None,
    clock: Callable[[], float] = time.monotonic,
) -> DrillResult:
    """Timed restore-and-verify exercise against a throwaway database."""
    options = options or DrillOptions()
    settings = get_settings()
    client = client or PostgresClient()
    started = clock()
    target = (
        options.rto_target_seconds if options.rto_target_seconds is not None else settings.rto_target_seconds
    )
    result = DrillResult(
        timestamp=datetime.now(timezone.utc).isoformat(),
        target_rto_seconds=target,
    )

    backup_path = options.input
    if backup_path is None:
        latest = find_latest_backup(options.backup_dir)
        if latest is None:
            result.errors.append("No backup file found")
            return result
        backup_path = latest.path
        logger.info("drill_using_latest path=%s", backup_path)
    result.backup_file = str(backup_path)

    file_check = check_backup_file(backup_path)
    if not file_check.ok:
        result.errors.append(file_check.error or "Backup file rejected")
        return result

    try:
        if options.database:
            quote_identifier(options.database)
            if options.database == client.default_database:
                raise ConfigurationError("Drill database must not be the application database")
            result.test_database = options.database
        else:
            result.test_database = ephemeral_database_name(settings.drill_database_prefix)
    except RecoveryError as exc:
        result.errors.append(str(exc))
        return result

    # Drills compete with validation for the same restore capacity.
    lock = BackupLock("validation", lock_dir=lock_dir)
    if not lock.acquire():
        result.errors.append("Cannot acquire validation lock; another validation or drill is running")
        return result

    timeout = options.timeout_seconds if options.timeout_seconds is not None else settings.validation_timeout_seconds
    try:
        if options.database:
            # A named drill database may be left over from a --no-cleanup run.
            await client.drop_database(result.test_database)
        with materialize_backup(backup_path, secret) as dump_path:
            async with ephemeral_database(client, result.test_database, keep=options.keep_database):
                result.kept_database = options.keep_database
                restore_started = clock()
                await restore_with_timeout(
                    client, dump_path, result.test_database, timeout, verbose=options.verbose
                )
                result.restore_seconds = round(clock() - restore_started, 3)

                standard, _ = await run_standard_checks(client, result.test_database)
                integrity = await run_integrity_checks(client, result.test_database)
                result.checks = standard + integrity.checks
                result.row_counts = await collect_row_counts(client, result.test_database, RESTORE_SUMMARY_TABLES)
                result.orphaned_units = integrity.orphaned_units
                result.orphaned_leases = integrity.orphaned_leases
                result.duplicate_usernames = integrity.duplicate_usernames
                result.warnings.extend(integrity.warnings)
                result.errors.extend(integrity.errors)
                result.errors.extend(
                    f"{check.name} failed: {check.details}" for check in standard if not check.passed
                )
    except RecoveryError as exc:
        result.errors.append(str(exc))
        logger.error("drill_failed database=%s code=%s error=%s", result.test_database, exc.code, exc)
    finally:
        lock.release()
        result.total_seconds = round(clock() - started, 6)
        result.passed_rto = evaluate_rto(result.total_seconds, target)

    result.success = not result.errors
    logger.info(
        "drill_finished success=%s passed_rto=%s total_s=%s restore_s=%s target_s=%s",
        result.success,
        result.passed_rto,
        result.total_seconds,
        result.restore_seconds,
        target,
    )
    return result
