from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
import logging
from pathlib import Path
import time
from typing import Any, Sequence

from dptrecovery.core.config import get_settings
from dptrecovery.core.errors import RecoveryError, RestoreTimeoutError
from dptrecovery.services.backup import check_backup_file
from dptrecovery.services.commands import PostgresClient
from dptrecovery.services.encryption import materialize_backup
from dptrecovery.services.lock import BackupLock
from dptrecovery.services.verification import (
    CheckResult,
    ephemeral_database,
    ephemeral_database_name,
    run_standard_checks,
)


logger = logging.getLogger(__name__)


@dataclass
class ValidationResult:
    success: bool
    backup_file: str
    database: str | None = None
    duration_seconds: float = 0.0
    checks: list[CheckResult] = field(default_factory=list)
    error: str | None = None
    error_code: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "backup_file": self.backup_file,
            "database": self.database,
            "duration_seconds": self.duration_seconds,
            "checks": [check.to_dict() for check in self.checks],
            "error": self.error,
            "error_code": self.error_code,
        }


async def restore_with_timeout(
    client: PostgresClient,
    dump_path: Path,
    database: str,
    timeout_seconds: float | None,
    *,
    verbose: bool = False,
) -> float:
    """Restore ``dump_path`` racing a timeout; returns elapsed seconds.

    On timeout the restore task is cancelled, which kills the client process.
    """
    started = time.monotonic()
    try:
        if timeout_seconds:
            await asyncio.wait_for(client.restore(dump_path, database, verbose=verbose), timeout=timeout_seconds)
        else:
            await client.restore(dump_path, database, verbose=verbose)
    except asyncio.TimeoutError as exc:
        raise RestoreTimeoutError(
            f"Restore into {database} did not finish within {timeout_seconds:g}s"
        ) from exc
    return time.monotonic() - started


async def validate_backup(
    path: Path,
    *,
    client: PostgresClient | None = None,
    lock_dir: Path | None = None,
    timeout_seconds: float | None = None,
    secret: str | None = None,
) -> ValidationResult:
    """Prove ``path`` restores cleanly into a throwaway database and passes the check battery."""
    settings = get_settings()
    started = time.monotonic()
    result = ValidationResult(success=False, backup_file=str(path))

    file_check = check_backup_file(path)
    if not file_check.ok:
        result.error = file_check.error
        result.error_code = file_check.error_code
        logger.error("validation_file_rejected path=%s code=%s", path, file_check.error_code)
        return result

    lock = BackupLock("validation", lock_dir=lock_dir)
    if not lock.acquire():
        holder = lock.current_holder()
        result.error = (
            "Another validation is already in progress"
            + (f" (PID {holder.pid})" if holder else "")
        )
        result.error_code = "LOCK_BUSY"
        return result

    client = client or PostgresClient()
    timeout = timeout_seconds if timeout_seconds is not None else settings.validation_timeout_seconds
    try:
        result.database = ephemeral_database_name(settings.validation_database_prefix)
        logger.info("validation_started path=%s database=%s", path, result.database)
        with materialize_backup(path, secret) as dump_path:
            async with ephemeral_database(client, result.database):
                await restore_with_timeout(client, dump_path, result.database, timeout)
                result.checks, _ = await run_standard_checks(client, result.database)
        result.success = all(check.passed for check in result.checks)
        if not result.success:
            failed = [check.name for check in result.checks if not check.passed]
            result.error = f"Checks failed: {', '.join(failed)}"
            result.error_code = "CHECKS_FAILED"
    except RecoveryError as exc:
        result.error = str(exc)
        result.error_code = exc.code
        logger.error("validation_failed path=%s code=%s error=%s", path, exc.code, exc)
    finally:
        lock.release()
        result.duration_seconds = round(time.monotonic() - started, 3)
    logger.info(
        "validation_finished path=%s success=%s duration_s=%s",
        path,
        result.success,
        result.duration_seconds,
    )
    return result


async def validate_backups(paths: Sequence[Path], **kwargs: Any) -> list[ValidationResult]:
    # Validate one at a time; each run takes and releases the validation lock.
    results = []
    for path in paths:
        results.append(await validate_backup(path, **kwargs))
    return results
