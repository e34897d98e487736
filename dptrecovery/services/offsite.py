from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
import logging
from pathlib import Path
import time
from typing import Any, Sequence

from dptrecovery.core.config import get_settings
from dptrecovery.core.errors import RecoveryError
from dptrecovery.services.backup import list_backup_files
from dptrecovery.services.commands import CommandRunner, ObjectStorageClient
from dptrecovery.services.encryption import (
    EncryptionEnvelope,
    encrypt_file,
    inspect_encrypted_file,
    is_encrypted,
    validate_secret,
)
from dptrecovery.services.lock import hold_lock
from dptrecovery.services.resilience import RetryPolicy, Sleep, offsite_retry_policy, retry_async


logger = logging.getLogger(__name__)


MIB = 1024 * 1024


@dataclass(frozen=True)
class UploadMetadata:
    # Attached to the remote object so a restore can be set up from the bucket alone.
    original_filename: str
    encryption_algorithm: str
    salt_hex: str
    iv_hex: str
    checksum_sha256: str
    upload_timestamp: str
    unencrypted_size_mb: float
    encrypted_size_mb: float

    @classmethod
    def from_envelope(
        cls, envelope: EncryptionEnvelope, original_filename: str, now: datetime | None = None
    ) -> UploadMetadata:
        return cls(
            original_filename=original_filename,
            encryption_algorithm=envelope.algorithm,
            salt_hex=envelope.salt_hex,
            iv_hex=envelope.iv_hex,
            checksum_sha256=envelope.checksum_sha256,
            upload_timestamp=(now or datetime.now(timezone.utc)).isoformat(),
            unencrypted_size_mb=round(envelope.original_size / MIB, 2),
            encrypted_size_mb=round(envelope.encrypted_size / MIB, 2),
        )

    def to_metadata(self) -> dict[str, str]:
        return {
            "originalFilename": self.original_filename,
            "encryptionAlgorithm": self.encryption_algorithm,
            "saltHex": self.salt_hex,
            "ivHex": self.iv_hex,
            "checksumSHA256": self.checksum_sha256,
            "uploadTimestamp": self.upload_timestamp,
            "unencryptedSizeMB": f"{self.unencrypted_size_mb:.2f}",
            "encryptedSizeMB": f"{self.encrypted_size_mb:.2f}",
        }


@dataclass
class UploadResult:
    local_file: str
    success: bool = False
    encrypted_path: str | None = None
    remote_key: str | None = None
    attempts: int = 0
    verified: bool = False
    version_id: str | None = None
    error: str | None = None
    warnings: list[str] = field(default_factory=list)
    duration_seconds: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "local_file": self.local_file,
            "success": self.success,
            "encrypted_path": self.encrypted_path,
            "remote_key": self.remote_key,
            "attempts": self.attempts,
            "verified": self.verified,
            "version_id": self.version_id,
            "error": self.error,
            "warnings": list(self.warnings),
            "duration_seconds": self.duration_seconds,
        }


def remote_key_for(encrypted_path: Path, prefix: str) -> str:
    # Deterministic: the same artifact always lands on the same key.
    if prefix and not prefix.endswith("/"):
        prefix = f"{prefix}/"
    return f"{prefix}{encrypted_path.name}"


class OffsiteSync:
    """Encrypt local dumps and upload them with bounded retries."""

    def __init__(
        self,
        storage: ObjectStorageClient | None = None,
        *,
        runner: CommandRunner | None = None,
        secret: str | None = None,
        prefix: str | None = None,
        policy: RetryPolicy | None = None,
        sleep: Sleep | None = None,
    ) -> None:
        settings = get_settings()
        # Configuration problems surface here, before any file is touched.
        self._storage = storage or ObjectStorageClient.from_settings(runner)
        self._secret = validate_secret(secret if secret is not None else settings.backup_encryption_key)
        self._prefix = settings.s3_prefix if prefix is None else prefix
        self._policy = policy or offsite_retry_policy()
        self._sleep = sleep

    def _prepare(self, path: Path) -> tuple[EncryptionEnvelope, str]:
        if is_encrypted(path):
            original = path.name[: -len(".enc")]
            return inspect_encrypted_file(path, source=path.with_name(original)), original
        return encrypt_file(path, self._secret, reuse_existing=True), path.name

    async def sync(self, path: Path) -> UploadResult:
        started = time.monotonic()
        result = UploadResult(local_file=str(path))
        logger.info("offsite_sync_started path=%s", path)
        if not path.is_file():
            result.error = f"File not found: {path}"
            logger.error("offsite_sync_failed path=%s error=file_not_found", path)
            return result
        try:
            envelope, original_name = await asyncio.to_thread(self._prepare, path)
        except (RecoveryError, OSError) as exc:
            result.error = str(exc)
            result.duration_seconds = round(time.monotonic() - started, 3)
            logger.error("offsite_sync_failed path=%s error=%s", path, exc)
            return result

        encrypted = Path(envelope.encrypted_path)
        result.encrypted_path = str(encrypted)
        key = remote_key_for(encrypted, self._prefix)
        result.remote_key = key
        metadata = UploadMetadata.from_envelope(envelope, original_name).to_metadata()

        def _on_retry(attempt: int, exc: Exception, delay: float) -> None:
            result.warnings.append(f"attempt {attempt} failed: {exc}; retrying in {delay:g}s")

        outcome = await retry_async(
            lambda: self._storage.upload(encrypted, key, metadata),
            policy=self._policy,
            sleep=self._sleep,
            on_retry=_on_retry,
        )
        result.attempts = outcome.attempts
        if not outcome.ok:
            result.error = str(outcome.error)
            result.duration_seconds = round(time.monotonic() - started, 3)
            logger.error(
                "offsite_upload_failed path=%s key=%s attempts=%s error=%s",
                encrypted,
                result.remote_key,
                outcome.attempts,
                outcome.error,
            )
            return result

        result.success = True
        head = await self._storage.head_object(key)
        if head is None:
            result.warnings.append("upload could not be confirmed with head-object")
            logger.warning("offsite_upload_unverified key=%s", result.remote_key)
        else:
            result.verified = True
            result.version_id = head.get("VersionId")
        result.duration_seconds = round(time.monotonic() - started, 3)
        logger.info(
            "offsite_sync_complete key=%s attempts=%s verified=%s duration_s=%s",
            result.remote_key,
            result.attempts,
            result.verified,
            result.duration_seconds,
        )
        return result

    async def sync_all(self, paths: Sequence[Path] | None = None, *, directory: Path | None = None) -> list[UploadResult]:
        """Sync every plain dump (or ``paths``); a failed file never stops the batch."""
        if paths is None:
            paths = [item.path for item in list_backup_files(directory, include_encrypted=False)]
        results = []
        for path in paths:
            results.append(await self.sync(path))
        succeeded = sum(1 for item in results if item.success)
        logger.info("offsite_batch_finished total=%s succeeded=%s failed=%s", len(results), succeeded, len(results) - succeeded)
        return results


async def run_offsite_sync(
    paths: Sequence[Path] | None = None,
    *,
    sync: OffsiteSync | None = None,
    directory: Path | None = None,
    lock_dir: Path | None = None,
) -> list[UploadResult]:
    # One offsite run at a time per host.
    sync = sync or OffsiteSync()
    with hold_lock("offsite-sync", lock_dir=lock_dir):
        return await sync.sync_all(paths, directory=directory)
