"""Guarded restore of a dump into a named database.

Nothing is mutated unless ``execute`` is set. Before any mutation the
production guard, the replica probe and the drop/force rule are enforced;
each violation raises its own ``SafetyGateError`` subclass, which the
orchestrator reports with a stable error code.
"""

from __future__ import annotations

from dataclasses import dataclass, field
import logging
from pathlib import Path
import time
from typing import Any, Callable

from dptrecovery.core.config import get_settings
from dptrecovery.core.errors import (
    ConfirmationDeclinedError,
    DropRequiresForceError,
    LockUnavailableError,
    ProductionRestoreError,
    RecoveryError,
    ReplicaTargetError,
)
from dptrecovery.services.backup import check_backup_file, describe_backups, list_backup_files
from dptrecovery.services.commands import PostgresClient, quote_identifier
from dptrecovery.services.encryption import materialize_backup
from dptrecovery.services.lock import hold_lock
from dptrecovery.services.validation import restore_with_timeout
from dptrecovery.services.verification import (
    RESTORE_SUMMARY_TABLES,
    check_row_counts,
    collect_row_counts,
)


logger = logging.getLogger(__name__)


Confirm = Callable[[str], bool]


@dataclass(frozen=True)
class RestoreOptions:
    input: Path
    database: str | None = None
    drop_existing: bool = False
    create_if_missing: bool = False
    verbose: bool = False
    dry_run: bool = False
    allow_production: bool = False
    force: bool = False
    non_interactive: bool = False
    execute: bool = False
    timeout_seconds: float | None = None

    @property
    def is_dry_run(self) -> bool:
        # Mutation needs an explicit execute; an explicit dry run always wins.
        return self.dry_run or not self.execute


@dataclass
class RestoreResult:
    success: bool
    dry_run: bool
    input: str
    database: str
    file_exists: bool = False
    file_size_bytes: int = 0
    restore_seconds: float = 0.0
    row_counts: dict[str, int] = field(default_factory=dict)
    planned_steps: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    error: str | None = None
    error_code: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "dry_run": self.dry_run,
            "input": self.input,
            "database": self.database,
            "file_exists": self.file_exists,
            "file_size_bytes": self.file_size_bytes,
            "restore_seconds": self.restore_seconds,
            "row_counts": dict(self.row_counts),
            "planned_steps": list(self.planned_steps),
            "warnings": list(self.warnings),
            "error": self.error,
            "error_code": self.error_code,
        }


def prompt_confirmation(message: str) -> bool:
    # Only an explicit typed "yes" counts; closed stdin declines.
    try:
        answer = input(f"{message}\nType \"yes\" to proceed: ")
    except EOFError:
        return False
    return answer.strip().lower() == "yes"


def check_production_guard(options: RestoreOptions, app_env: str) -> None:
    if app_env.lower() == "production" and not options.allow_production:
        raise ProductionRestoreError(
            "Restore to production detected; this replaces production data. "
            "Re-run with --allow-production to proceed."
        )


def check_drop_flags(options: RestoreOptions) -> None:
    if options.drop_existing and not options.force:
        raise DropRequiresForceError(
            "Dropping the existing database requires --force; all existing data will be lost."
        )


async def check_replica(client: PostgresClient, database: str) -> None:
    if await client.is_replica(database):
        raise ReplicaTargetError(
            f"Target database {database} is a read replica; restore must target the primary."
        )


def plan_steps(options: RestoreOptions, database: str, *, production: bool) -> list[str]:
    steps = ["acquire restore lock", "check replica status"]
    if options.drop_existing or production:
        if not options.non_interactive:
            steps.append("ask for typed confirmation")
    if options.drop_existing:
        steps.append(f"terminate connections to {database}")
        steps.append(f"drop database {database}")
        steps.append(f"create database {database}")
    elif options.create_if_missing:
        steps.append(f"create database {database} if missing")
    steps.append(f"restore {options.input.name} into {database}")
    steps.append("verify row counts")
    return steps


async def restore_database(
    options: RestoreOptions,
    *,
    client: PostgresClient | None = None,
    lock_dir: Path | None = None,
    confirm: Confirm | None = None,
    secret: str | None = None,
) -> RestoreResult:
    settings = get_settings()
    client = client or PostgresClient()
    database = options.database or client.default_database
    production = settings.app_env.lower() == "production"
    result = RestoreResult(
        success=False,
        dry_run=options.is_dry_run,
        input=str(options.input),
        database=database,
    )
    logger.info(
        "restore_requested input=%s database=%s dry_run=%s environment=%s",
        options.input,
        database,
        result.dry_run,
        settings.app_env,
    )

    try:
        quote_identifier(database)
    except RecoveryError as exc:
        result.error = str(exc)
        result.error_code = exc.code
        return result

    file_check = check_backup_file(options.input)
    result.file_exists = file_check.exists
    result.file_size_bytes = file_check.size_bytes
    if not file_check.ok:
        result.error = file_check.error
        result.error_code = file_check.error_code
        available = list_backup_files(options.input.parent if options.input.parent.is_dir() else None)
        if available:
            result.warnings.append("Available backups: " + "; ".join(describe_backups(available)))
        return result

    result.planned_steps = plan_steps(options, database, production=production)
    if result.dry_run:
        # Report gates that would refuse the run, without touching the database or the lock.
        for gate in (lambda: check_production_guard(options, settings.app_env), lambda: check_drop_flags(options)):
            try:
                gate()
            except RecoveryError as exc:
                result.warnings.append(f"Would be refused ({exc.code}): {exc}")
        result.success = True
        logger.info("restore_dry_run_complete input=%s database=%s", options.input, database)
        return result

    started = time.monotonic()
    try:
        with hold_lock("restore", lock_dir=lock_dir):
            check_production_guard(options, settings.app_env)
            if production:
                result.warnings.append("Production environment: data will be permanently replaced")
            check_drop_flags(options)
            exists = await client.database_exists(database)
            # A missing target is probed through the maintenance database on the same server.
            await check_replica(client, database if exists else settings.maintenance_database)

            if (options.drop_existing or production) and not options.non_interactive:
                confirm = confirm or prompt_confirmation
                action = "DROP and recreate" if options.drop_existing else "overwrite"
                if not confirm(f"About to {action} database {database} from {options.input.name}."):
                    raise ConfirmationDeclinedError("Restore cancelled: confirmation not given")

            if options.drop_existing:
                terminated = await client.terminate_connections(database)
                logger.info("restore_connections_terminated database=%s count=%s", database, terminated)
                await client.drop_database(database)
                await client.create_database(database)
            elif options.create_if_missing and not exists:
                await client.create_database(database)

            timeout = options.timeout_seconds
            if timeout is None:
                timeout = settings.restore_timeout_seconds
            with materialize_backup(options.input, secret) as dump_path:
                result.restore_seconds = round(
                    await restore_with_timeout(client, dump_path, database, timeout, verbose=options.verbose),
                    3,
                )

            row_check, _ = await check_row_counts(client, database)
            result.row_counts = await collect_row_counts(client, database, RESTORE_SUMMARY_TABLES)
            if row_check.passed:
                result.success = True
            else:
                result.error = f"Row count verification failed: {row_check.details}"
                result.error_code = "VERIFICATION_FAILED"
    except LockUnavailableError as exc:
        result.error = str(exc)
        result.error_code = exc.code
    except RecoveryError as exc:
        result.error = str(exc)
        result.error_code = exc.code
        logger.error("restore_failed database=%s code=%s error=%s", database, exc.code, exc)

    logger.info(
        "restore_finished database=%s success=%s restore_s=%s total_s=%.3f",
        database,
        result.success,
        result.restore_seconds,
        time.monotonic() - started,
    )
    return result
