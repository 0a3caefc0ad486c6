"""Logging setup for the pipecheck logger hierarchy."""

from __future__ import annotations

import logging

from pipecheck.core.config import AppSettings

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def configure_logging(settings: AppSettings | None = None, *, stream: bool = False) -> logging.Logger:
    """Apply ``AppSettings.log_level`` to the ``pipecheck`` logger.

    Records propagate to the root logger, so pytest's log capture shows them.
    Pass ``stream=True`` outside pytest to also print them to stderr.
    """
    if settings is None:
        settings = AppSettings()

    logger = logging.getLogger("pipecheck")
    logger.setLevel(settings.log_level.upper())
    if stream and not logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        logger.addHandler(handler)
    return logger
