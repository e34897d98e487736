from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timezone
import gzip
import logging
import os
from pathlib import Path
import re
import shutil
import time
from typing import TYPE_CHECKING, Sequence
import zlib

from dptrecovery.core.config import get_settings
from dptrecovery.core.errors import ConfigurationError
from dptrecovery.services.commands import PostgresClient
from dptrecovery.services.encryption import is_encrypted, sha256_file
from dptrecovery.services.lock import hold_lock

if TYPE_CHECKING:
    from dptrecovery.services.retention import RetentionPolicy


logger = logging.getLogger(__name__)


# Dump filenames embed their creation time: <prefix>-YYYY-MM-DD_HH-MM-SS.sql[.gz][.enc]
TIMESTAMP_RE = re.compile(r"(\d{4})-(\d{2})-(\d{2})_(\d{2})-(\d{2})-(\d{2})")
TIMESTAMP_FORMAT = "%Y-%m-%d_%H-%M-%S"
BACKUP_SUFFIXES = (".sql", ".sql.gz", ".sql.enc", ".sql.gz.enc")
# Leading bytes of a plain-format dump always contain one of these markers.
SQL_HEADER_MARKERS = (b"--", b"CREATE", b"BEGIN")
SQL_HEADER_BYTES = 100


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def is_backup_name(name: str) -> bool:
    return not name.startswith(".") and name.endswith(BACKUP_SUFFIXES)


def parse_timestamp(name: str) -> datetime | None:
    # Filename stamps are written in local time by create_backup.
    match = TIMESTAMP_RE.search(name)
    if match is None:
        return None
    try:
        return datetime.strptime(match.group(0), TIMESTAMP_FORMAT)
    except ValueError:
        return None


@dataclass(frozen=True)
class BackupFile:
    # Snapshot of one dump on disk; identity is the path.
    path: Path
    size_bytes: int
    modified_at: datetime

    @classmethod
    def from_path(cls, path: Path) -> BackupFile:
        stat = path.stat()
        return cls(
            path=path,
            size_bytes=stat.st_size,
            modified_at=datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc),
        )

    @property
    def name(self) -> str:
        return self.path.name

    @property
    def encrypted(self) -> bool:
        return is_encrypted(self.path)

    @property
    def hour(self) -> int:
        """Creation hour from the filename stamp, falling back to the local mtime hour."""
        stamp = parse_timestamp(self.name)
        if stamp is not None:
            return stamp.hour
        return self.modified_at.astimezone().hour

    def age_hours(self, now: datetime) -> float:
        return (now - self.modified_at).total_seconds() / 3600.0

    def age_days(self, now: datetime) -> float:
        return self.age_hours(now) / 24.0

    def is_detailed(self, now: datetime, policy: RetentionPolicy) -> bool:
        return self.age_hours(now) <= policy.detailed_hours

    def is_daily(self, now: datetime, policy: RetentionPolicy) -> bool:
        return self.hour == policy.daily_hour and self.age_days(now) <= policy.daily_days


def default_backup_dir() -> Path:
    return Path(get_settings().backup_dir)


def list_backup_files(
    directory: Path | None = None, *, include_encrypted: bool = True
) -> list[BackupFile]:
    """Backups in ``directory``, oldest first."""
    directory = directory or default_backup_dir()
    if not directory.is_dir():
        logger.info("backup_dir_missing path=%s", directory)
        return []
    files: list[BackupFile] = []
    for entry in directory.iterdir():
        if not entry.is_file() or not is_backup_name(entry.name):
            continue
        if not include_encrypted and is_encrypted(entry):
            continue
        try:
            files.append(BackupFile.from_path(entry))
        except FileNotFoundError:
            # Removed between listing and stat by a concurrent job.
            continue
    files.sort(key=lambda item: (item.modified_at, item.name))
    return files


def find_latest_backup(
    directory: Path | None = None, *, include_encrypted: bool = False
) -> BackupFile | None:
    files = list_backup_files(directory, include_encrypted=include_encrypted)
    return files[-1] if files else None


@dataclass(frozen=True)
class BackupFileCheck:
    path: Path
    exists: bool
    size_bytes: int
    error: str | None = None
    error_code: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


def _read_header(path: Path) -> bytes:
    if path.name.endswith(".gz"):
        with gzip.open(path, "rb") as handle:
            return handle.read(SQL_HEADER_BYTES)
    with path.open("rb") as handle:
        return handle.read(SQL_HEADER_BYTES)


def check_backup_file(path: Path, *, sniff_header: bool = True) -> BackupFileCheck:
    """Cheap pre-flight: exists, regular file, non-empty and looks like a SQL dump."""
    if not path.exists():
        return BackupFileCheck(path, False, 0, f"Backup file not found: {path}", "BACKUP_FILE_MISSING")
    if not path.is_file():
        return BackupFileCheck(path, True, 0, f"Backup path is not a file: {path}", "BACKUP_FILE_INVALID")
    size = path.stat().st_size
    if size == 0:
        return BackupFileCheck(path, True, 0, f"Backup file is empty: {path}", "BACKUP_FILE_EMPTY")
    if sniff_header and not is_encrypted(path):
        try:
            header = _read_header(path)
        except (OSError, EOFError, zlib.error) as exc:
            return BackupFileCheck(path, True, size, f"Backup file is unreadable: {exc}", "BACKUP_FILE_INVALID")
        if not any(marker in header for marker in SQL_HEADER_MARKERS):
            return BackupFileCheck(
                path, True, size, f"Backup file does not look like a SQL dump: {path}", "BACKUP_FILE_INVALID"
            )
    return BackupFileCheck(path, True, size)


def backup_filename(now: datetime | None = None, *, prefix: str | None = None, compress: bool = False) -> str:
    stamp = (now or datetime.now()).strftime(TIMESTAMP_FORMAT)
    extension = ".sql.gz" if compress else ".sql"
    return f"{prefix or get_settings().backup_file_prefix}-{stamp}{extension}"


@dataclass(frozen=True)
class BackupOptions:
    output_dir: Path | None = None
    schema_only: bool = False
    data_only: bool = False
    tables: tuple[str, ...] = ()
    compress: bool | None = None


@dataclass(frozen=True)
class BackupCreated:
    path: Path
    size_bytes: int
    sha256: str
    duration_seconds: float


def _gzip_file(source: Path, destination: Path) -> None:
    with source.open("rb") as input_handle, gzip.open(destination, "wb") as output_handle:
        shutil.copyfileobj(input_handle, output_handle)


async def create_backup(
    options: BackupOptions | None = None,
    *,
    client: PostgresClient | None = None,
    lock_dir: Path | None = None,
    now: datetime | None = None,
) -> BackupCreated:
    """Dump the application database into a timestamped file under the backup lock."""
    options = options or BackupOptions()
    if options.schema_only and options.data_only:
        raise ConfigurationError("schema-only and data-only backups are mutually exclusive")
    settings = get_settings()
    client = client or PostgresClient()
    compress = settings.backup_compress if options.compress is None else options.compress
    output_dir = options.output_dir or default_backup_dir()
    output_dir.mkdir(parents=True, exist_ok=True)
    target = output_dir / backup_filename(now, compress=compress)
    plain = target.with_name(target.name[:-3]) if compress else target
    # Dump into a dot-file so listings never pick up a half-written backup.
    partial = output_dir / f".{plain.name}.partial"

    started = time.monotonic()
    with hold_lock("backup", lock_dir=lock_dir):
        logger.info("backup_started database=%s path=%s", client.default_database, target)
        try:
            await client.dump(
                partial,
                schema_only=options.schema_only,
                data_only=options.data_only,
                tables=options.tables,
            )
            if compress:
                compressed = output_dir / f".{target.name}.partial"
                try:
                    await asyncio.to_thread(_gzip_file, partial, compressed)
                    os.replace(compressed, target)
                finally:
                    compressed.unlink(missing_ok=True)
            else:
                os.replace(partial, target)
        finally:
            partial.unlink(missing_ok=True)

    created = BackupCreated(
        path=target,
        size_bytes=target.stat().st_size,
        sha256=sha256_file(target),
        duration_seconds=round(time.monotonic() - started, 3),
    )
    logger.info(
        "backup_completed path=%s size_bytes=%s duration_s=%s",
        created.path,
        created.size_bytes,
        created.duration_seconds,
    )
    return created


def describe_backups(files: Sequence[BackupFile], now: datetime | None = None) -> list[str]:
    # One line per backup for CLI suggestions, newest first.
    now = now or _utc_now()
    return [
        f"{item.name} ({item.size_bytes / (1024 * 1024):.2f} MB, {item.age_hours(now):.1f}h old)"
        for item in sorted(files, key=lambda entry: entry.modified_at, reverse=True)
    ]
