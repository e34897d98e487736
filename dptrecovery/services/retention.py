"""Tiered retention for local backups under a hard storage cap.

Every file in the detailed window (48h by default) is kept. Older files
survive only as the daily snapshot (filename hour == daily hour) for up to
30 days. When the keep-set is still over the cap, the oldest files outside
the detailed window are pruned first; files inside it are never pruned.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
import logging
from pathlib import Path
from typing import Any, Sequence

from dptrecovery.core.config import get_settings
from dptrecovery.core.errors import ForceRequiredError
from dptrecovery.services.backup import BackupFile, list_backup_files
from dptrecovery.services.encryption import checksum_path_for
from dptrecovery.services.lock import hold_lock


logger = logging.getLogger(__name__)


GIB = 1024 * 1024 * 1024
MIB = 1024 * 1024


@dataclass(frozen=True)
class RetentionPolicy:
    detailed_hours: float = 48
    daily_days: float = 30
    daily_hour: int = 0
    storage_cap_bytes: int = 8 * GIB
    force_threshold: int = 10

    @classmethod
    def from_settings(cls) -> RetentionPolicy:
        settings = get_settings()
        return cls(
            detailed_hours=settings.retention_detailed_hours,
            daily_days=settings.retention_daily_days,
            daily_hour=settings.retention_daily_hour,
            storage_cap_bytes=settings.backup_storage_cap_bytes,
            force_threshold=settings.rotation_force_threshold,
        )


@dataclass
class RetentionDecision:
    keep: list[BackupFile] = field(default_factory=list)
    delete: list[BackupFile] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    reasons: dict[Path, str] = field(default_factory=dict)
    cap_exceeded: bool = False
    keep_size_bytes: int = 0

    @property
    def delete_paths(self) -> list[Path]:
        return [item.path for item in self.delete]


def format_size(size_bytes: float) -> str:
    if size_bytes < 1024:
        return f"{int(size_bytes)}B"
    if size_bytes < MIB:
        return f"{size_bytes / 1024:.2f}KB"
    if size_bytes < GIB:
        return f"{size_bytes / MIB:.2f}MB"
    return f"{size_bytes / GIB:.2f}GB"


def plan_retention(
    files: Sequence[BackupFile],
    now: datetime | None = None,
    policy: RetentionPolicy | None = None,
) -> RetentionDecision:
    """Pure keep/delete decision for ``files`` at ``now``; nothing is touched on disk."""
    now = now or datetime.now(timezone.utc)
    policy = policy or RetentionPolicy.from_settings()
    decision = RetentionDecision()
    ordered = sorted(files, key=lambda item: (item.modified_at, item.name))

    for item in ordered:
        if item.is_detailed(now, policy):
            decision.keep.append(item)
        elif item.is_daily(now, policy):
            decision.keep.append(item)
        else:
            decision.delete.append(item)
            if item.age_days(now) > policy.daily_days:
                decision.reasons[item.path] = "older than daily retention window"
            else:
                decision.reasons[item.path] = "not the daily snapshot"

    keep_size = sum(item.size_bytes for item in decision.keep)
    cap = policy.storage_cap_bytes
    if keep_size > cap:
        decision.warnings.append(
            f"Storage cap ({format_size(cap)}) exceeded after retention policy "
            f"(current {format_size(keep_size)}); pruning oldest daily backups"
        )
        # decision.keep is already oldest-first.
        for item in list(decision.keep):
            if keep_size <= cap:
                break
            if item.is_detailed(now, policy):
                continue
            decision.keep.remove(item)
            decision.delete.append(item)
            decision.reasons[item.path] = "storage cap"
            keep_size -= item.size_bytes
        if keep_size > cap:
            decision.cap_exceeded = True
            decision.warnings.append(
                f"Unable to get under {format_size(cap)} cap without touching the "
                f"{policy.detailed_hours:g}h window; final size {format_size(keep_size)}"
            )
    decision.keep_size_bytes = keep_size
    decision.delete.sort(key=lambda item: (item.modified_at, item.name))
    for warning in decision.warnings:
        logger.warning("retention_warning %s", warning)
    return decision


@dataclass(frozen=True)
class StorageStats:
    backup_count: int
    total_size_bytes: int
    detailed_count: int
    daily_count: int
    oldest_backup: str | None
    newest_backup: str | None
    storage_cap_bytes: int

    @property
    def usage_percent(self) -> float:
        if self.storage_cap_bytes <= 0:
            return 0.0
        return round(self.total_size_bytes / self.storage_cap_bytes * 100, 1)

    @property
    def over_cap(self) -> bool:
        return self.total_size_bytes > self.storage_cap_bytes

    def to_dict(self) -> dict[str, Any]:
        return {
            "backup_count": self.backup_count,
            "total_size_bytes": self.total_size_bytes,
            "detailed_count": self.detailed_count,
            "daily_count": self.daily_count,
            "oldest_backup": self.oldest_backup,
            "newest_backup": self.newest_backup,
            "storage_cap_bytes": self.storage_cap_bytes,
            "usage_percent": self.usage_percent,
        }


def calculate_stats(
    files: Sequence[BackupFile],
    now: datetime | None = None,
    policy: RetentionPolicy | None = None,
) -> StorageStats:
    now = now or datetime.now(timezone.utc)
    policy = policy or RetentionPolicy.from_settings()
    ordered = sorted(files, key=lambda item: (item.modified_at, item.name))
    return StorageStats(
        backup_count=len(ordered),
        total_size_bytes=sum(item.size_bytes for item in ordered),
        detailed_count=sum(1 for item in ordered if item.is_detailed(now, policy)),
        daily_count=sum(1 for item in ordered if item.is_daily(now, policy)),
        oldest_backup=ordered[0].name if ordered else None,
        newest_backup=ordered[-1].name if ordered else None,
        storage_cap_bytes=policy.storage_cap_bytes,
    )


@dataclass
class RotationReport:
    dry_run: bool
    requested: list[Path] = field(default_factory=list)
    deleted: list[Path] = field(default_factory=list)
    failed: list[tuple[Path, str]] = field(default_factory=list)
    freed_bytes: int = 0

    @property
    def requested_count(self) -> int:
        return len(self.requested)

    @property
    def deleted_count(self) -> int:
        return len(self.deleted)


def apply_retention(
    decision: RetentionDecision,
    *,
    dry_run: bool = False,
    force: bool = False,
    policy: RetentionPolicy | None = None,
) -> RotationReport:
    """Delete the planned files; one failed unlink never stops the rest of the batch."""
    policy = policy or RetentionPolicy.from_settings()
    report = RotationReport(dry_run=dry_run, requested=decision.delete_paths)
    if dry_run:
        for item in decision.delete:
            logger.info(
                "rotation_would_delete name=%s size=%s reason=%s",
                item.name,
                format_size(item.size_bytes),
                decision.reasons.get(item.path, "retention"),
            )
        return report
    if len(decision.delete) > policy.force_threshold and not force:
        raise ForceRequiredError(
            f"Refusing to delete {len(decision.delete)} backups (threshold {policy.force_threshold}); "
            "re-run with --force to confirm"
        )
    for item in decision.delete:
        try:
            item.path.unlink()
        except FileNotFoundError:
            # Already gone; the goal state holds.
            report.deleted.append(item.path)
            continue
        except OSError as exc:
            logger.error("rotation_delete_failed name=%s error=%s", item.name, exc)
            report.failed.append((item.path, str(exc)))
            continue
        report.deleted.append(item.path)
        report.freed_bytes += item.size_bytes
        logger.info("rotation_deleted name=%s size=%s", item.name, format_size(item.size_bytes))
        if item.encrypted:
            checksum_path_for(item.path).unlink(missing_ok=True)
    return report


@dataclass
class RotationRun:
    before: StorageStats
    after: StorageStats
    decision: RetentionDecision
    report: RotationReport

    @property
    def over_cap(self) -> bool:
        return self.after.over_cap


def rotate_backups(
    directory: Path | None = None,
    *,
    now: datetime | None = None,
    policy: RetentionPolicy | None = None,
    dry_run: bool = False,
    force: bool = False,
    lock_dir: Path | None = None,
) -> RotationRun:
    """Plan and apply retention for the backup directory under the rotation lock."""
    now = now or datetime.now(timezone.utc)
    policy = policy or RetentionPolicy.from_settings()
    with hold_lock("rotation", lock_dir=lock_dir):
        files = list_backup_files(directory)
        before = calculate_stats(files, now, policy)
        decision = plan_retention(files, now, policy)
        report = apply_retention(decision, dry_run=dry_run, force=force, policy=policy)
        if dry_run:
            remaining = decision.keep
        else:
            removed = set(report.deleted)
            remaining = [item for item in files if item.path not in removed]
        after = calculate_stats(remaining, now, policy)
    logger.info(
        "rotation_finished dry_run=%s requested=%s deleted=%s failed=%s before_bytes=%s after_bytes=%s",
        dry_run,
        report.requested_count,
        report.deleted_count,
        len(report.failed),
        before.total_size_bytes,
        after.total_size_bytes,
    )
    return RotationRun(before=before, after=after, decision=decision, report=report)
