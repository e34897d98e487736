from __future__ import annotations

import asyncio
import json
import logging
import signal
from typing import Any, Awaitable, Callable

from dptrecovery.core.errors import LockUnavailableError, RecoveryError


logger = logging.getLogger(__name__)


EXIT_OK = 0
EXIT_FAILURE = 1
# Backup and offsite wrappers distinguish "someone else is running" from failure.
EXIT_LOCK_BUSY = 2


def print_json(payload: Any) -> None:
    print(json.dumps(payload, indent=2, sort_keys=True, default=str))


async def _with_sigterm(main: Callable[[], Awaitable[int]]) -> int:
    # SIGTERM cancels the main task so finally blocks drop databases and release locks.
    loop = asyncio.get_running_loop()
    task = asyncio.current_task()
    if task is not None:
        try:
            loop.add_signal_handler(signal.SIGTERM, task.cancel)
        except (NotImplementedError, RuntimeError):
            logger.debug("sigterm_handler_unavailable")
    return await main()


def run_cli(main: Callable[[], Awaitable[int]], *, busy_exit_code: int = EXIT_FAILURE) -> int:
    """Run an async CLI body and translate failures into exit codes."""
    try:
        return asyncio.run(_with_sigterm(main))
    except LockUnavailableError as exc:
        logger.error("cli_lock_busy operation=%s holder_pid=%s", exc.operation, exc.holder_pid)
        print(f"error={exc}")
        return busy_exit_code
    except RecoveryError as exc:
        logger.error("cli_failed code=%s error=%s", exc.code, exc)
        print(f"error={exc}")
        return EXIT_FAILURE
    except (asyncio.CancelledError, KeyboardInterrupt):
        logger.error("cli_interrupted")
        return EXIT_FAILURE
    except Exception as exc:  # noqa: BLE001 - unexpected failures exit 1 with the traceback logged
        logger.exception("cli_unexpected_error", exc_info=exc)
        return EXIT_FAILURE
