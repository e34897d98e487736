from __future__ import annotations

from datetime import datetime, timedelta, timezone
import os
from pathlib import Path

import pytest

from dptrecovery.core.errors import ForceRequiredError
from dptrecovery.services.backup import BackupFile
from dptrecovery.services.lock import lock_path
from dptrecovery.services.retention import (
    RetentionPolicy,
    apply_retention,
    calculate_stats,
    format_size,
    plan_retention,
    rotate_backups,
)


NOW = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)


def _backup(name: str, age: timedelta, size: int = 100, directory: Path = Path("/backups")) -> BackupFile:
    return BackupFile(path=directory / name, size_bytes=size, modified_at=NOW - age)


def test_detailed_window_is_inclusive() -> None:
    edge = _backup("dpt-local-backup-2026-03-08_05-00-00.sql", timedelta(hours=48))
    past = _backup("dpt-local-backup-2026-03-08_04-59-59.sql", timedelta(hours=48, seconds=1))
    decision = plan_retention([edge, past], NOW, RetentionPolicy())
    assert decision.keep == [edge]
    assert decision.delete == [past]
    assert decision.reasons[past.path] == "not the daily snapshot"


def test_daily_snapshots_survive_until_window_ends() -> None:
    daily = _backup("dpt-local-backup-2026-03-05_00-00-00.sql", timedelta(days=5))
    expired = _backup("dpt-local-backup-2026-02-07_00-00-00.sql", timedelta(days=31))
    decision = plan_retention([daily, expired], NOW, RetentionPolicy())
    assert decision.keep == [daily]
    assert decision.delete == [expired]
    assert decision.reasons[expired.path] == "older than daily retention window"


def test_keep_and_delete_partition_the_input() -> None:
    files = [
        _backup(f"dpt-local-backup-2026-03-0{day}_{hour:02d}-00-00.sql", timedelta(days=10 - day, hours=hour))
        for day in range(1, 10)
        for hour in (0, 6, 12)
    ]
    decision = plan_retention(files, NOW, RetentionPolicy())
    kept = {item.path for item in decision.keep}
    deleted = {item.path for item in decision.delete}
    assert kept.isdisjoint(deleted)
    assert kept | deleted == {item.path for item in files}
    for item in decision.keep:
        assert item.age_hours(NOW) <= 48 or item.hour == 0


def test_cap_prunes_oldest_daily_first() -> None:
    detailed = [
        _backup("dpt-local-backup-2026-03-10_11-00-00.sql", timedelta(hours=1)),
        _backup("dpt-local-backup-2026-03-10_10-00-00.sql", timedelta(hours=2)),
    ]
    older_daily = _backup("dpt-local-backup-2026-03-05_00-00-00.sql", timedelta(days=5))
    newer_daily = _backup("dpt-local-backup-2026-03-07_00-00-00.sql", timedelta(days=3))
    policy = RetentionPolicy(storage_cap_bytes=300)
    decision = plan_retention([*detailed, older_daily, newer_daily], NOW, policy)
    assert decision.delete == [older_daily]
    assert decision.reasons[older_daily.path] == "storage cap"
    assert decision.keep_size_bytes == 300
    assert decision.cap_exceeded is False
    assert decision.warnings


def test_cap_never_prunes_detailed_window() -> None:
    detailed = [
        _backup("dpt-local-backup-2026-03-10_11-00-00.sql", timedelta(hours=1)),
        _backup("dpt-local-backup-2026-03-10_10-00-00.sql", timedelta(hours=2)),
    ]
    daily = _backup("dpt-local-backup-2026-03-07_00-00-00.sql", timedelta(days=3))
    decision = plan_retention([*detailed, daily], NOW, RetentionPolicy(storage_cap_bytes=150))
    assert set(item.path for item in decision.keep) == {item.path for item in detailed}
    assert decision.delete == [daily]
    assert decision.cap_exceeded is True
    assert len(decision.warnings) == 2


def test_hour_falls_back_to_local_mtime() -> None:
    local_midnight = datetime(2026, 3, 5, 0, 0).astimezone()
    item = BackupFile(path=Path("/backups/manual.sql"), size_bytes=1, modified_at=local_midnight)
    assert item.hour == 0
    assert item.is_daily(NOW, RetentionPolicy())


def test_apply_requires_force_over_threshold(tmp_path) -> None:
    files = []
    for index in range(11):
        path = tmp_path / f"dpt-local-backup-2026-01-{index + 1:02d}_05-00-00.sql"
        path.write_text("--\n", encoding="utf-8")
        files.append(BackupFile(path=path, size_bytes=3, modified_at=NOW - timedelta(days=60)))
    decision = plan_retention(files, NOW, RetentionPolicy())
    assert len(decision.delete) == 11
    with pytest.raises(ForceRequiredError):
        apply_retention(decision, policy=RetentionPolicy())
    assert all(item.path.exists() for item in files)
    report = apply_retention(decision, force=True, policy=RetentionPolicy())
    assert report.deleted_count == 11
    assert report.freed_bytes == 33
    assert not any(item.path.exists() for item in files)


def test_dry_run_deletes_nothing(tmp_path) -> None:
    path = tmp_path / "dpt-local-backup-2026-01-01_05-00-00.sql"
    path.write_text("--\n", encoding="utf-8")
    decision = plan_retention(
        [BackupFile(path=path, size_bytes=3, modified_at=NOW - timedelta(days=60))], NOW, RetentionPolicy()
    )
    report = apply_retention(decision, dry_run=True, policy=RetentionPolicy())
    assert report.requested == [path]
    assert report.deleted == []
    assert path.exists()


def test_failed_delete_does_not_stop_batch(tmp_path) -> None:
    stuck = tmp_path / "dpt-local-backup-2026-01-01_05-00-00.sql"
    stuck.mkdir()
    removable = tmp_path / "dpt-local-backup-2026-01-02_05-00-00.sql"
    removable.write_text("--\n", encoding="utf-8")
    vanished = tmp_path / "dpt-local-backup-2026-01-03_05-00-00.sql"
    files = [
        BackupFile(path=stuck, size_bytes=0, modified_at=NOW - timedelta(days=60)),
        BackupFile(path=removable, size_bytes=3, modified_at=NOW - timedelta(days=59)),
        BackupFile(path=vanished, size_bytes=5, modified_at=NOW - timedelta(days=58)),
    ]
    report = apply_retention(plan_retention(files, NOW, RetentionPolicy()), policy=RetentionPolicy())
    assert [path for path, _ in report.failed] == [stuck]
    assert report.deleted == [removable, vanished]
    assert report.freed_bytes == 3
    assert not removable.exists()


def _write_aged(directory: Path, name: str, age: timedelta, now: datetime, size: int = 10) -> Path:
    path = directory / name
    path.write_bytes(b"-" * size)
    stamp = (now - age).timestamp()
    os.utime(path, (stamp, stamp))
    return path


def test_rotate_backups_end_to_end(backup_dir, lock_dir) -> None:
    now = datetime.now(timezone.utc)
    recent = _write_aged(backup_dir, "dpt-local-backup-2026-03-10_09-00-00.sql", timedelta(hours=1), now)
    daily = _write_aged(backup_dir, "dpt-local-backup-2026-03-01_00-00-00.sql.gz", timedelta(days=9), now)
    stale = _write_aged(backup_dir, "dpt-local-backup-2026-03-01_05-00-00.sql", timedelta(days=9), now)
    expired = _write_aged(backup_dir, "dpt-local-backup-2026-01-01_00-00-00.sql.enc", timedelta(days=40), now)
    sidecar = backup_dir / (expired.name + ".sha256")
    sidecar.write_text("abc  " + expired.name + "\n", encoding="utf-8")

    preview = rotate_backups(backup_dir, now=now, policy=RetentionPolicy(), dry_run=True, lock_dir=lock_dir)
    assert set(preview.report.requested) == {stale, expired}
    assert stale.exists() and expired.exists()

    run = rotate_backups(backup_dir, now=now, policy=RetentionPolicy(), lock_dir=lock_dir)
    assert run.before.backup_count == 4
    assert run.after.backup_count == 2
    assert recent.exists() and daily.exists()
    assert not stale.exists() and not expired.exists()
    assert not sidecar.exists()
    assert run.over_cap is False
    assert not lock_path("rotation", lock_dir).exists()


def test_stats_and_size_formatting() -> None:
    files = [
        _backup("dpt-local-backup-2026-03-10_11-00-00.sql", timedelta(hours=1), size=2048),
        _backup("dpt-local-backup-2026-03-05_00-00-00.sql", timedelta(days=5), size=1024),
    ]
    stats = calculate_stats(files, NOW, RetentionPolicy(storage_cap_bytes=4096))
    assert stats.backup_count == 2
    assert stats.detailed_count == 1
    assert stats.daily_count == 1
    assert stats.oldest_backup == "dpt-local-backup-2026-03-05_00-00-00.sql"
    assert stats.usage_percent == 75.0
    assert format_size(512) == "512B"
    assert format_size(1536) == "1.50KB"
