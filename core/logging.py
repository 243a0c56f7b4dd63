"""
Logging configuration for the API, the scheduler and the sync CLI
"""

import logging
import sys
from typing import Optional
from core.config import settings

# Driver and scheduler loggers that flood INFO with per-query lines
NOISY_LOGGERS = (
    "sqlalchemy.engine",
    "sqlalchemy.pool",
    "aiosqlite",
    "paramiko",
    "paramiko.transport",
    "apscheduler",
    "apscheduler.executors.default",
)


def setup_logging(level: Optional[str] = None):
    """
    Configure application logging.

    ``level`` overrides LOG_LEVEL, so a one-off sync run can be verbose
    without touching the service settings.
    """
    level_name = (level or settings.LOG_LEVEL).upper()
    log_level = getattr(logging, level_name, logging.INFO)

    logging.basicConfig(
        level=log_level,
        format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        handlers=[
            logging.StreamHandler(sys.stdout)
        ],
        force=True
    )

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(log_level, logging.WARNING))

    logger = logging.getLogger(__name__)
    logger.info(f"Logging configured at {level_name} level")
