from __future__ import annotations

from datetime import datetime
import gzip
import os
from pathlib import Path

import pytest

from dptrecovery.core.errors import ConfigurationError, LockUnavailableError
from dptrecovery.services import backup as backup_service
from dptrecovery.services.lock import hold_lock
from dptrecovery.tests.utils.fakes import SQL_DUMP, FakePostgres


def _touch(path: Path, content: bytes, mtime: float) -> Path:
    path.write_bytes(content)
    os.utime(path, (mtime, mtime))
    return path


def test_check_backup_file_reports_missing_and_empty(tmp_path: Path) -> None:
    # Fail pre-flight deterministically before any database is touched.
    missing = backup_service.check_backup_file(tmp_path / "nope.sql")
    assert missing.ok is False
    assert missing.error_code == "BACKUP_FILE_MISSING"

    empty = tmp_path / "empty.sql"
    empty.write_bytes(b"")
    result = backup_service.check_backup_file(empty)
    assert result.error_code == "BACKUP_FILE_EMPTY"
    assert result.exists is True

    directory = backup_service.check_backup_file(tmp_path)
    assert directory.error_code == "BACKUP_FILE_INVALID"


def test_check_backup_file_sniffs_sql_header(tmp_path: Path) -> None:
    plain = tmp_path / "good.sql"
    plain.write_bytes(SQL_DUMP)
    assert backup_service.check_backup_file(plain).ok

    compressed = tmp_path / "good.sql.gz"
    compressed.write_bytes(gzip.compress(SQL_DUMP))
    assert backup_service.check_backup_file(compressed).ok

    garbage = tmp_path / "bad.sql"
    garbage.write_bytes(b"\x00\x01binary junk that is not sql")
    assert backup_service.check_backup_file(garbage).error_code == "BACKUP_FILE_INVALID"

    broken_gzip = tmp_path / "bad.sql.gz"
    broken_gzip.write_bytes(b"not gzip at all")
    assert backup_service.check_backup_file(broken_gzip).error_code == "BACKUP_FILE_INVALID"

    # Ciphertext has no header to sniff.
    encrypted = tmp_path / "good.sql.enc"
    encrypted.write_bytes(os.urandom(64))
    assert backup_service.check_backup_file(encrypted).ok


def test_listing_ignores_hidden_partials_and_sidecars(backup_dir: Path) -> None:
    _touch(backup_dir / "dpt-local-backup-2026-02-10_00-00-00.sql", SQL_DUMP, 1_000)
    _touch(backup_dir / "dpt-local-backup-2026-02-11_00-00-00.sql.gz", SQL_DUMP, 2_000)
    _touch(backup_dir / "dpt-local-backup-2026-02-12_00-00-00.sql.enc", SQL_DUMP, 3_000)
    _touch(backup_dir / "dpt-local-backup-2026-02-12_00-00-00.sql.enc.sha256", b"abc", 3_000)
    _touch(backup_dir / ".dpt-local-backup-2026-02-13_00-00-00.sql.partial", SQL_DUMP, 4_000)
    _touch(backup_dir / ".hidden.sql", SQL_DUMP, 5_000)
    _touch(backup_dir / "notes.txt", b"hello", 6_000)

    names = [item.name for item in backup_service.list_backup_files(backup_dir)]
    assert names == [
        "dpt-local-backup-2026-02-10_00-00-00.sql",
        "dpt-local-backup-2026-02-11_00-00-00.sql.gz",
        "dpt-local-backup-2026-02-12_00-00-00.sql.enc",
    ]
    plain_only = backup_service.list_backup_files(backup_dir, include_encrypted=False)
    assert len(plain_only) == 2


def test_find_latest_prefers_newest_plain_dump(backup_dir: Path) -> None:
    _touch(backup_dir / "dpt-local-backup-2026-02-10_00-00-00.sql", SQL_DUMP, 1_000)
    _touch(backup_dir / "dpt-local-backup-2026-02-11_00-00-00.sql.gz", SQL_DUMP, 2_000)
    _touch(backup_dir / "dpt-local-backup-2026-02-12_00-00-00.sql.enc", SQL_DUMP, 3_000)
    latest = backup_service.find_latest_backup(backup_dir)
    assert latest is not None
    assert latest.name == "dpt-local-backup-2026-02-11_00-00-00.sql.gz"
    assert backup_service.find_latest_backup(backup_dir / "missing") is None


def test_backup_filename_and_timestamp_parsing() -> None:
    stamp = datetime(2026, 2, 10, 3, 4, 5)
    name = backup_service.backup_filename(stamp)
    assert name == "dpt-local-backup-2026-02-10_03-04-05.sql"
    assert backup_service.backup_filename(stamp, prefix="x", compress=True) == "x-2026-02-10_03-04-05.sql.gz"
    assert backup_service.parse_timestamp(name) == stamp
    assert backup_service.parse_timestamp("manual.sql") is None
    assert backup_service.parse_timestamp("dpt-2026-13-40_00-00-00.sql") is None


@pytest.mark.asyncio
async def test_create_backup_writes_dump_atomically(backup_dir: Path, lock_dir: Path) -> None:
    client = FakePostgres()
    created = await backup_service.create_backup(
        backup_service.BackupOptions(output_dir=backup_dir),
        client=client,
        lock_dir=lock_dir,
        now=datetime(2026, 2, 10, 0, 0, 0),
    )
    assert created.path == backup_dir / "dpt-local-backup-2026-02-10_00-00-00.sql"
    assert created.path.read_bytes() == SQL_DUMP
    assert created.size_bytes == len(SQL_DUMP)
    assert len(created.sha256) == 64
    assert sorted(entry.name for entry in backup_dir.iterdir()) == [created.path.name]
    # The dump is written to a hidden partial file first.
    assert Path(client.names("dump")[0]).name.startswith(".")


@pytest.mark.asyncio
async def test_create_backup_compresses(backup_dir: Path, lock_dir: Path) -> None:
    created = await backup_service.create_backup(
        backup_service.BackupOptions(output_dir=backup_dir, compress=True),
        client=FakePostgres(),
        lock_dir=lock_dir,
        now=datetime(2026, 2, 10, 0, 0, 0),
    )
    assert created.path.name.endswith(".sql.gz")
    assert gzip.decompress(created.path.read_bytes()) == SQL_DUMP
    assert [entry.name for entry in backup_dir.iterdir()] == [created.path.name]


@pytest.mark.asyncio
async def test_create_backup_refuses_when_lock_busy(backup_dir: Path, lock_dir: Path) -> None:
    client = FakePostgres()
    with hold_lock("backup", lock_dir=lock_dir):
        with pytest.raises(LockUnavailableError):
            await backup_service.create_backup(
                backup_service.BackupOptions(output_dir=backup_dir), client=client, lock_dir=lock_dir
            )
    assert client.calls == []


@pytest.mark.asyncio
async def test_create_backup_rejects_conflicting_modes(lock_dir: Path) -> None:
    with pytest.raises(ConfigurationError):
        await backup_service.create_backup(
            backup_service.BackupOptions(schema_only=True, data_only=True),
            client=FakePostgres(),
            lock_dir=lock_dir,
        )


def test_corrupt_deflate_stream_is_reported_invalid(tmp_path: Path) -> None:
    # Valid gzip header followed by an undecodable block.
    corrupt = tmp_path / "dpt-local-backup-2026-02-10_00-00-00.sql.gz"
    corrupt.write_bytes(bytes.fromhex("1f8b0800000000000003") + b"\xff" * 64)
    result = backup_service.check_backup_file(corrupt)
    assert result.ok is False
    assert result.error_code == "BACKUP_FILE_INVALID"
    assert result.size_bytes == 74
