from __future__ import annotations

from functools import lru_cache
from pydantic_settings import BaseSettings, SettingsConfigDict


# Keep the RTO target centralized so drills and reports agree on the threshold.
DEFAULT_RTO_TARGET_SECONDS = 900


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    app_name: str = "dptrecovery"
    log_level: str = "INFO"
    # Runtime environment of the target application; "production" arms the restore guard.
    app_env: str = "development"

    database_url: str = "postgresql://app@localhost:5432/appdb"
    # Database used for CREATE/DROP DATABASE statements so targets can be dropped safely.
    maintenance_database: str = "postgres"
    # Client binaries are configurable for non-standard installs.
    psql_path: str = "psql"
    pg_dump_path: str = "pg_dump"
    aws_cli_path: str = "aws"

    # Local directory holding timestamped dump files.
    backup_dir: str = "./backups"
    # Filename prefix for dumps produced by create_backup.
    backup_file_prefix: str = "dpt-local-backup"
    # Compress new dumps with gzip when enabled.
    backup_compress: bool = False

    # Directory for per-operation lock files; empty means the system temp dir.
    lock_dir: str = ""
    # Treat lock records without a heartbeat within this window as stale (0 disables).
    lock_heartbeat_ttl_seconds: int = 0

    # Retention: keep everything in the detailed window, then one daily snapshot.
    retention_detailed_hours: int = 48
    retention_daily_days: int = 30
    retention_daily_hour: int = 0
    # Hard cap for local backup storage (8 GiB).
    backup_storage_cap_bytes: int = 8 * 1024 * 1024 * 1024
    # Batch deletions above this size require --force.
    rotation_force_threshold: int = 10

    # Passphrase used for PBKDF2 key derivation; never defaulted.
    backup_encryption_key: str | None = None
    # aes-256-gcm (authenticated) or aes-256-cbc (legacy artifacts).
    backup_encryption_algorithm: str = "aes-256-gcm"
    backup_encryption_iterations: int = 100_000

    # Object storage target for offsite copies.
    s3_endpoint: str = "https://s3.amazonaws.com"
    s3_bucket_name: str | None = None
    s3_region: str = "us-east-1"
    s3_prefix: str = "dpt-local-backups/"
    aws_access_key_id: str | None = None
    aws_secret_access_key: str | None = None
    # Bounded exponential backoff for uploads.
    offsite_max_attempts: int = 3
    offsite_base_delay_seconds: float = 5.0
    offsite_max_delay_seconds: float = 45.0

    # Abandon ephemeral restores that exceed this window.
    validation_timeout_seconds: float = 600.0
    validation_database_prefix: str = "dpt_validate_"
    drill_database_prefix: str = "dpt_drill_"
    rto_target_seconds: float = DEFAULT_RTO_TARGET_SECONDS
    # Optional bound for named restores; unset means wait for completion.
    restore_timeout_seconds: float | None = None


@lru_cache
def get_settings() -> Settings:
    return Settings()
