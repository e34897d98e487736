from __future__ import annotations

import pytest

from dptrecovery.core.config import get_settings


_ISOLATED_ENV = (
    "APP_ENV",
    "DATABASE_URL",
    "BACKUP_ENCRYPTION_KEY",
    "BACKUP_ENCRYPTION_ALGORITHM",
    "S3_BUCKET_NAME",
    "S3_PREFIX",
    "AWS_ACCESS_KEY_ID",
    "AWS_SECRET_ACCESS_KEY",
    "LOCK_HEARTBEAT_TTL_SECONDS",
    "RTO_TARGET_SECONDS",
)


@pytest.fixture(autouse=True)
def isolated_settings(monkeypatch, tmp_path):
    # Give every test its own lock and backup dirs and a fresh settings cache.
    for name in _ISOLATED_ENV:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("LOCK_DIR", str(tmp_path / "locks"))
    monkeypatch.setenv("BACKUP_DIR", str(tmp_path / "backups"))
    # Keep key derivation fast; production uses the 100k default.
    monkeypatch.setenv("BACKUP_ENCRYPTION_ITERATIONS", "1000")
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def lock_dir(tmp_path):
    return tmp_path / "locks"


@pytest.fixture
def backup_dir(tmp_path):
    path = tmp_path / "backups"
    path.mkdir()
    return path
