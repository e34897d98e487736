from __future__ import annotations

import asyncio

from dptrecovery.core.cli import EXIT_FAILURE, EXIT_LOCK_BUSY, EXIT_OK, run_cli
from dptrecovery.core.errors import ConfigurationError, LockUnavailableError


def test_run_cli_maps_outcomes_to_exit_codes(capsys) -> None:
    async def ok() -> int:
        return EXIT_OK

    async def busy() -> int:
        raise LockUnavailableError("backup", 4242)

    async def misconfigured() -> int:
        raise ConfigurationError("DATABASE_URL is invalid")

    async def crashes() -> int:
        raise RuntimeError("boom")

    async def cancelled() -> int:
        raise asyncio.CancelledError()

    assert run_cli(ok) == EXIT_OK
    assert run_cli(busy) == EXIT_FAILURE
    assert run_cli(busy, busy_exit_code=EXIT_LOCK_BUSY) == EXIT_LOCK_BUSY
    assert run_cli(misconfigured) == EXIT_FAILURE
    assert run_cli(crashes) == EXIT_FAILURE
    assert run_cli(cancelled) == EXIT_FAILURE
    output = capsys.readouterr().out
    assert "error=Cannot acquire lock for backup (held by PID 4242)" in output
    assert "error=DATABASE_URL is invalid" in output
