"""Logging setup for the asset store CLI and embedding apps."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

from config.settings import AppConfig

LOGGER_NAME = "portrait_store"
LOG_FILE_NAME = "portrait_store.log"
# Downloads and image verification are noisy at DEBUG.
QUIET_LOGGERS = ("urllib3", "PIL")


def setup_logging(config: AppConfig, level: Optional[int] = None) -> logging.Logger:
    """Send records to ``<log_dir>/portrait_store.log`` and stderr.

    ``level`` overrides ``config.log_level``. Third-party loggers in
    ``QUIET_LOGGERS`` are held at WARNING or above.
    """
    if level is None:
        level = logging.getLevelName(config.log_level.upper())
    log_dir = Path(config.log_dir)
    log_dir.mkdir(parents=True, exist_ok=True)
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        handlers=[
            logging.FileHandler(log_dir / LOG_FILE_NAME, encoding="utf-8"),
            logging.StreamHandler(),
        ],
    )
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))

    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(level)
    return logger
