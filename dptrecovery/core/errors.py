from __future__ import annotations


class RecoveryError(Exception):
    """Base error for dptrecovery."""

    code = "RECOVERY_ERROR"


class ConfigurationError(RecoveryError):
    """Missing or invalid configuration; never retried."""

    code = "CONFIGURATION_ERROR"


class WeakSecretError(ConfigurationError):
    """Encryption secret is too short to derive a key from."""

    code = "WEAK_SECRET"


class InvalidDatabaseNameError(ConfigurationError):
    """Database name is not a plain SQL identifier."""

    code = "INVALID_DATABASE_NAME"


class LockUnavailableError(RecoveryError):
    """Operation lock is held by a live process."""

    code = "LOCK_BUSY"

    def __init__(self, operation: str, holder_pid: int | None = None) -> None:
        self.operation = operation
        self.holder_pid = holder_pid
        detail = f" (held by PID {holder_pid})" if holder_pid else ""
        super().__init__(
            f"Cannot acquire lock for {operation}{detail}. "
            f"Another {operation} operation is already in progress."
        )


class SafetyGateError(RecoveryError):
    """A destructive operation was refused by a safety gate."""

    code = "SAFETY_GATE"


class ProductionRestoreError(SafetyGateError):
    """Restore into production without the explicit production override."""

    code = "PRODUCTION_GUARD"


class ReplicaTargetError(SafetyGateError):
    """Restore target is a read replica."""

    code = "REPLICA_GUARD"


class DropRequiresForceError(SafetyGateError):
    """Dropping the target database was requested without --force."""

    code = "DROP_REQUIRES_FORCE"


class ConfirmationDeclinedError(SafetyGateError):
    """Interactive confirmation was not given."""

    code = "CONFIRMATION_DECLINED"


class ForceRequiredError(SafetyGateError):
    """Batch deletion exceeds the safety threshold without --force."""

    code = "FORCE_REQUIRED"


class IntegrityError(RecoveryError):
    """Backup artifact failed an integrity check."""

    code = "INTEGRITY_ERROR"


class ChecksumMismatchError(IntegrityError):
    """Encrypted artifact checksum does not match the recorded value."""

    code = "CHECKSUM_MISMATCH"


class DecryptionError(IntegrityError):
    """Encrypted artifact could not be decrypted with the given secret."""

    code = "DECRYPTION_FAILED"


class CommandError(RecoveryError):
    """External client command exited with a failure status."""

    code = "COMMAND_FAILED"

    def __init__(self, message: str, *, exit_code: int | None = None, stderr: str = "") -> None:
        self.exit_code = exit_code
        self.stderr = stderr
        super().__init__(message)


class UploadError(CommandError):
    """Object storage upload failed."""

    code = "UPLOAD_FAILED"


class RestoreTimeoutError(RecoveryError):
    """Restore did not finish within its time box."""

    code = "RESTORE_TIMEOUT"
