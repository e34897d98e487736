from __future__ import annotations

from contextlib import asynccontextmanager
from dataclasses import asdict, dataclass, field
import logging
import secrets
import time
from typing import Any, AsyncIterator, Literal, Sequence

from dptrecovery.core.errors import CommandError, RecoveryError
from dptrecovery.services.commands import PostgresClient, quote_identifier


logger = logging.getLogger(__name__)


Severity = Literal["error", "warning"]


@dataclass
class CheckResult:
    # One named verification step, reported independently of the others.
    name: str
    passed: bool
    details: str
    duration_ms: int
    severity: Severity = "error"

    @property
    def blocking(self) -> bool:
        return not self.passed and self.severity == "error"

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class TableExpectation:
    name: str
    min_rows: int


# Core tables of a restorable snapshot; accounts and campuses must never be empty.
CORE_TABLE_EXPECTATIONS: tuple[TableExpectation, ...] = (
    TableExpectation("users", 1),
    TableExpectation("campuses", 1),
    TableExpectation("blocks", 0),
    TableExpectation("units", 0),
    TableExpectation("companies", 0),
    TableExpectation("leases", 0),
)
CRITICAL_TABLES: tuple[str, ...] = ("users", "campuses", "companies")
# Tables summarized after a named restore; missing ones report zero.
RESTORE_SUMMARY_TABLES: tuple[str, ...] = (
    "users",
    "campuses",
    "blocks",
    "units",
    "companies",
    "leases",
    "sectors",
    "audit_logs",
)

ORPHANED_UNITS_SQL = (
    "SELECT COUNT(*) FROM units u LEFT JOIN blocks b ON u.block_id = b.id "
    "WHERE b.id IS NULL AND u.deleted_at IS NULL AND u.block_id IS NOT NULL;"
)
ORPHANED_LEASES_SQL = (
    "SELECT COUNT(*) FROM leases l LEFT JOIN companies c ON l.company_id = c.id "
    "WHERE c.id IS NULL AND l.deleted_at IS NULL AND l.company_id IS NOT NULL;"
)
DUPLICATE_USERNAMES_SQL = (
    "SELECT COUNT(*) FROM (SELECT username FROM users GROUP BY username HAVING COUNT(*) > 1) dup;"
)


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


def active_rows_sql(table: str) -> str:
    return f"SELECT COUNT(*) FROM {quote_identifier(table)} WHERE deleted_at IS NULL;"


def ephemeral_database_name(prefix: str) -> str:
    # Random suffix keeps concurrent and successive runs from colliding.
    name = f"{prefix}{secrets.token_hex(4)}"
    quote_identifier(name)
    return name


async def collect_row_counts(
    client: PostgresClient, database: str, tables: Sequence[str]
) -> dict[str, int]:
    counts: dict[str, int] = {}
    for table in tables:
        try:
            counts[table] = await client.scalar_int(database, active_rows_sql(table))
        except CommandError as exc:
            logger.debug("row_count_unavailable database=%s table=%s error=%s", database, table, exc)
            counts[table] = 0
    return counts


async def check_row_counts(
    client: PostgresClient,
    database: str,
    expectations: Sequence[TableExpectation] = CORE_TABLE_EXPECTATIONS,
) -> tuple[CheckResult, dict[str, int]]:
    started = time.monotonic()
    counts: dict[str, int] = {}
    details: list[str] = []
    passed = True
    for expectation in expectations:
        try:
            count = await client.scalar_int(database, active_rows_sql(expectation.name))
        except CommandError:
            passed = False
            details.append(f"{expectation.name}: failed to query")
            continue
        counts[expectation.name] = count
        if count >= expectation.min_rows:
            details.append(f"{expectation.name}: {count} rows")
        else:
            passed = False
            details.append(f"{expectation.name}: {count} rows (expected >= {expectation.min_rows})")
    return (
        CheckResult("row_counts", passed, ", ".join(details), _elapsed_ms(started)),
        counts,
    )


async def check_foreign_keys(client: PostgresClient, database: str) -> CheckResult:
    started = time.monotonic()
    try:
        count = await client.scalar_int(
            database,
            "SELECT COUNT(*) FROM information_schema.table_constraints "
            "WHERE constraint_type = 'FOREIGN KEY';",
        )
    except CommandError as exc:
        return CheckResult("foreign_keys", False, f"failed to query foreign keys: {exc}", _elapsed_ms(started))
    if count > 0:
        return CheckResult("foreign_keys", True, f"{count} foreign key constraints found", _elapsed_ms(started))
    return CheckResult("foreign_keys", False, "no foreign key constraints found", _elapsed_ms(started))


async def check_table_structure(
    client: PostgresClient, database: str, tables: Sequence[str] = CRITICAL_TABLES
) -> CheckResult:
    started = time.monotonic()
    details: list[str] = []
    passed = True
    for table in tables:
        quote_identifier(table)
        try:
            columns = await client.scalar_int(
                database,
                f"SELECT COUNT(*) FROM information_schema.columns WHERE table_name = '{table}';",
            )
        except CommandError:
            passed = False
            details.append(f"{table}: failed to query")
            continue
        if columns > 0:
            details.append(f"{table}: {columns} columns")
        else:
            passed = False
            details.append(f"{table}: missing")
    return CheckResult("table_structure", passed, ", ".join(details), _elapsed_ms(started))


async def check_liveness(client: PostgresClient, database: str) -> CheckResult:
    started = time.monotonic()
    try:
        value = await client.scalar(database, "SELECT 1;")
    except CommandError as exc:
        return CheckResult("test_query", False, f"failed to execute test query: {exc}", _elapsed_ms(started))
    if value == "1":
        return CheckResult("test_query", True, "test query succeeded", _elapsed_ms(started))
    return CheckResult("test_query", False, f"unexpected test query result: {value!r}", _elapsed_ms(started))


async def run_standard_checks(
    client: PostgresClient, database: str
) -> tuple[list[CheckResult], dict[str, int]]:
    """Row counts, foreign keys, critical columns and liveness, in that order."""
    row_check, counts = await check_row_counts(client, database)
    checks = [
        row_check,
        await check_foreign_keys(client, database),
        await check_table_structure(client, database),
        await check_liveness(client, database),
    ]
    for check in checks:
        logger.info(
            "check_finished database=%s name=%s passed=%s duration_ms=%s details=%s",
            database,
            check.name,
            check.passed,
            check.duration_ms,
            check.details,
        )
    return checks, counts


@dataclass
class IntegrityReport:
    orphaned_units: int = 0
    orphaned_leases: int = 0
    duplicate_usernames: int = 0
    checks: list[CheckResult] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)


async def _count_check(
    client: PostgresClient, database: str, name: str, sql: str, severity: Severity
) -> tuple[CheckResult, int]:
    started = time.monotonic()
    try:
        count = await client.scalar_int(database, sql)
    except CommandError as exc:
        return CheckResult(name, False, f"failed to query: {exc}", _elapsed_ms(started), severity), 0
    return (
        CheckResult(name, count == 0, f"{count} found", _elapsed_ms(started), severity),
        count,
    )


async def run_integrity_checks(client: PostgresClient, database: str) -> IntegrityReport:
    # Orphans are tolerated with a warning; duplicate accounts break logins and are fatal.
    report = IntegrityReport()
    check, report.orphaned_units = await _count_check(
        client, database, "orphaned_units", ORPHANED_UNITS_SQL, "warning"
    )
    report.checks.append(check)
    if report.orphaned_units:
        report.warnings.append(f"{report.orphaned_units} orphaned units found")
    elif not check.passed:
        report.warnings.append(f"orphaned_units: {check.details}")

    check, report.orphaned_leases = await _count_check(
        client, database, "orphaned_leases", ORPHANED_LEASES_SQL, "warning"
    )
    report.checks.append(check)
    if report.orphaned_leases:
        report.warnings.append(f"{report.orphaned_leases} orphaned leases found")
    elif not check.passed:
        report.warnings.append(f"orphaned_leases: {check.details}")

    check, report.duplicate_usernames = await _count_check(
        client, database, "duplicate_usernames", DUPLICATE_USERNAMES_SQL, "error"
    )
    report.checks.append(check)
    if report.duplicate_usernames:
        report.errors.append(f"{report.duplicate_usernames} duplicate usernames found")
    elif not check.passed:
        report.errors.append(f"duplicate_usernames: {check.details}")
    return report


@asynccontextmanager
async def ephemeral_database(client: PostgresClient, name: str, *, keep: bool = False) -> AsyncIterator[str]:
    """Create ``name`` and drop it on exit, including on errors and cancellation."""
    created = False
    try:
        await client.create_database(name)
        created = True
        yield name
    finally:
        if created and keep:
            logger.info("ephemeral_database_kept name=%s", name)
        elif created:
            try:
                # An abandoned restore may still hold a backend on the database.
                await client.terminate_connections(name)
                await client.drop_database(name)
            except (RecoveryError, OSError) as exc:
                logger.warning("ephemeral_database_drop_failed name=%s error=%s", name, exc)
