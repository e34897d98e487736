from __future__ import annotations

import logging

from dptrecovery.core.config import get_settings


LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


def configure_logging(*, verbose: bool = False) -> None:
    # Route all DR job output through stdlib logging so cron captures one stream.
    settings = get_settings()
    level = logging.DEBUG if verbose else getattr(logging, settings.log_level.upper(), logging.INFO)
    logging.basicConfig(level=level, format=LOG_FORMAT, force=True)
