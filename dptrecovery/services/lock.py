"""File-based mutual exclusion for backup-affecting operations.

Each operation class (backup, restore, validation, offsite-sync, rotation) owns
one lock file holding a small JSON record. A record whose owning process is
gone, or whose heartbeat has expired when heartbeats are enabled, is stale and
may be reclaimed by the next caller.
"""

from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
import fcntl
import json
import logging
import os
from pathlib import Path
import secrets
import tempfile
from typing import Any, Callable, Iterator, Literal

from dptrecovery.core.config import get_settings
from dptrecovery.core.errors import LockUnavailableError


logger = logging.getLogger(__name__)


LockOperation = Literal["backup", "restore", "validation", "offsite-sync", "rotation"]
LOCK_OPERATIONS: frozenset[str] = frozenset({"backup", "restore", "validation", "offsite-sync", "rotation"})
LOCK_FILE_PREFIX = "dpt-"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _parse_time(value: Any) -> datetime | None:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass(frozen=True)
class LockRecord:
    # Mirror the on-disk lock payload so status tooling can report holders.
    pid: int
    start_time: datetime
    operation: str
    token: str | None = None
    heartbeat_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "pid": self.pid,
            "startTime": self.start_time.isoformat(),
            "operation": self.operation,
            "token": self.token,
            "heartbeatAt": self.heartbeat_at.isoformat() if self.heartbeat_at else None,
        }

    @classmethod
    def from_text(cls, content: str) -> LockRecord:
        # Accept legacy lock files that only contain a bare PID.
        try:
            payload = json.loads(content)
        except ValueError:
            payload = None
        if not isinstance(payload, dict):
            try:
                pid = int(content.strip())
            except ValueError:
                pid = 0
            return cls(pid=pid, start_time=_utc_now(), operation="unknown")
        try:
            pid = int(payload.get("pid") or 0)
        except (TypeError, ValueError):
            pid = 0
        return cls(
            pid=pid,
            start_time=_parse_time(payload.get("startTime")) or _utc_now(),
            operation=str(payload.get("operation") or "unknown"),
            token=payload.get("token"),
            heartbeat_at=_parse_time(payload.get("heartbeatAt")),
        )


def default_lock_dir() -> Path:
    settings = get_settings()
    return Path(settings.lock_dir or tempfile.gettempdir())


def lock_path(operation: str, lock_dir: Path | None = None) -> Path:
    return (lock_dir or default_lock_dir()) / f"{LOCK_FILE_PREFIX}{operation}.lock"


def is_process_alive(pid: int) -> bool:
    """Probe a PID with signal 0; permission errors mean the process exists."""
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    except OSError:
        return False
    return True


class BackupLock:
    def __init__(
        self,
        operation: str = "backup",
        *,
        lock_dir: Path | None = None,
        pid: int | None = None,
        heartbeat_ttl_seconds: int | None = None,
        alive_probe: Callable[[int], bool] | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        if operation not in LOCK_OPERATIONS:
            raise ValueError(f"unknown lock operation: {operation}")
        self._operation = operation
        self._path = lock_path(operation, lock_dir)
        self._pid = pid if pid is not None else os.getpid()
        ttl = heartbeat_ttl_seconds
        if ttl is None:
            ttl = get_settings().lock_heartbeat_ttl_seconds
        self._heartbeat_ttl = max(int(ttl), 0)
        self._alive = alive_probe or is_process_alive
        self._clock = clock or _utc_now
        self._token: str | None = None
        self._acquired = False

    @property
    def operation(self) -> str:
        return self._operation

    @property
    def path(self) -> Path:
        return self._path

    @property
    def acquired(self) -> bool:
        return self._acquired

    @contextmanager
    def _guard(self) -> Iterator[None]:
        # Serialize check-and-reclaim across processes; flock is dropped if the holder dies.
        self._path.parent.mkdir(parents=True, exist_ok=True)
        guard_path = self._path.with_name(self._path.name + ".guard")
        fd = os.open(guard_path, os.O_RDWR | os.O_CREAT, 0o644)
        try:
            fcntl.flock(fd, fcntl.LOCK_EX)
            yield
        finally:
            fcntl.flock(fd, fcntl.LOCK_UN)
            os.close(fd)

    def _write_record(self, record: LockRecord) -> None:
        # Write-then-rename so concurrent readers never see a partial record.
        fd, tmp_name = tempfile.mkstemp(dir=self._path.parent, prefix=".dpt-lock-", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(record.to_dict(), handle, indent=2)
                handle.flush()
                os.fsync(handle.fileno())
            os.chmod(tmp_name, 0o644)
            os.replace(tmp_name, self._path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    def _read_record(self) -> LockRecord | None:
        try:
            content = self._path.read_bytes()
        except FileNotFoundError:
            return None
        # Undecodable records parse as pid 0 and are reclaimed as stale.
        return LockRecord.from_text(content.decode("utf-8", errors="replace"))

    def is_stale(self, record: LockRecord) -> bool:
        if not self._alive(record.pid):
            return True
        if self._heartbeat_ttl > 0:
            last_seen = record.heartbeat_at or record.start_time
            age = (self._clock() - last_seen).total_seconds()
            if age > self._heartbeat_ttl:
                return True
        return False

    def acquire(self) -> bool:
        """Try to take the lock; False means another live process holds it."""
        try:
            with self._guard():
                holder = self._read_record()
                if holder is not None:
                    if not self.is_stale(holder):
                        logger.warning(
                            "lock_busy operation=%s holder_pid=%s started=%s holder_operation=%s",
                            self._operation,
                            holder.pid,
                            holder.start_time.isoformat(),
                            holder.operation,
                        )
                        return False
                    logger.info(
                        "lock_stale_removed operation=%s holder_pid=%s", self._operation, holder.pid
                    )
                    self._path.unlink(missing_ok=True)
                now = self._clock()
                token = secrets.token_hex(16)
                self._write_record(
                    LockRecord(
                        pid=self._pid,
                        start_time=now,
                        operation=self._operation,
                        token=token,
                        heartbeat_at=now,
                    )
                )
        except OSError as exc:
            # Ambiguous filesystem state never counts as acquired.
            logger.error("lock_acquire_failed operation=%s", self._operation, exc_info=exc)
            return False
        self._token = token
        self._acquired = True
        logger.info("lock_acquired operation=%s pid=%s", self._operation, self._pid)
        return True

    def _owns(self, record: LockRecord) -> bool:
        return self._acquired and record.pid == self._pid and record.token == self._token

    def release(self) -> None:
        """Delete the lock file if this instance holds it; never raises."""
        try:
            with self._guard():
                holder = self._read_record()
                if holder is None:
                    if self._acquired:
                        logger.warning("lock_release_missing operation=%s", self._operation)
                    return
                if self._owns(holder):
                    self._path.unlink(missing_ok=True)
                    logger.info("lock_released operation=%s pid=%s", self._operation, self._pid)
                else:
                    logger.warning(
                        "lock_release_not_owner operation=%s owner_pid=%s caller_pid=%s",
                        self._operation,
                        holder.pid,
                        self._pid,
                    )
        except OSError as exc:
            logger.error("lock_release_failed operation=%s", self._operation, exc_info=exc)
        finally:
            self._acquired = False
            self._token = None

    def heartbeat(self) -> bool:
        # Refresh the heartbeat so long operations are not reclaimed under a TTL.
        if not self._acquired:
            return False
        try:
            with self._guard():
                holder = self._read_record()
                if holder is None or not self._owns(holder):
                    logger.warning("lock_heartbeat_lost operation=%s", self._operation)
                    return False
                self._write_record(
                    LockRecord(
                        pid=holder.pid,
                        start_time=holder.start_time,
                        operation=holder.operation,
                        token=holder.token,
                        heartbeat_at=self._clock(),
                    )
                )
        except OSError as exc:
            logger.error("lock_heartbeat_failed operation=%s", self._operation, exc_info=exc)
            return False
        return True

    def current_holder(self) -> LockRecord | None:
        try:
            return self._read_record()
        except OSError:
            return None

    def clear(self, *, force: bool = False) -> bool:
        """Remove a stale lock (or any lock with force); returns True if removed."""
        with self._guard():
            holder = self._read_record()
            if holder is None:
                return False
            if not force and not self.is_stale(holder):
                return False
            self._path.unlink(missing_ok=True)
        logger.warning(
            "lock_cleared operation=%s holder_pid=%s forced=%s", self._operation, holder.pid, force
        )
        return True


@contextmanager
def hold_lock(operation: str, **kwargs: Any) -> Iterator[BackupLock]:
    # Run a block under the operation lock and always release it afterwards.
    lock = BackupLock(operation, **kwargs)
    if not lock.acquire():
        holder = lock.current_holder()
        raise LockUnavailableError(operation, holder.pid if holder else None)
    try:
        yield lock
    finally:
        lock.release()
