"""
Logging setup for the finsync service.

Attaches a console handler (and optionally a rotating file handler) to the
``finsync`` logger tree. Modules log through ``logging.getLogger(__name__)``.
"""

import logging
import logging.handlers
import sys
from pathlib import Path
from typing import Optional

from finsync.config import get_settings

NOISY_LOGGERS = [
    "httpx",
    "httpcore",
    "sqlalchemy.engine",
    "sqlalchemy.pool",
    "uvicorn.access",
]


def setup_logging(
    level: Optional[str] = None,
    log_file: Optional[str] = None,
    max_file_size: int = 10 * 1024 * 1024,
    backup_count: int = 5,
) -> logging.Logger:
    """
    Configure the ``finsync`` logger.

    Args:
        level: Log level name (default: settings.log_level)
        log_file: Optional log file path; console only when omitted
        max_file_size: Rotate the log file after this many bytes
        backup_count: Number of rotated files to keep

    Returns:
        The configured application logger
    """
    settings = get_settings()
    level = level or settings.log_level
    log_file = log_file or settings.log_file
    app_level = getattr(logging, level.upper(), logging.INFO)

    app_logger = logging.getLogger("finsync")
    app_logger.setLevel(app_level)
    app_logger.handlers.clear()

    formatter = logging.Formatter(
        fmt="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S"
    )

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    app_logger.addHandler(console_handler)

    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.handlers.RotatingFileHandler(
            log_file,
            maxBytes=max_file_size,
            backupCount=backup_count
        )
        file_handler.setFormatter(formatter)
        app_logger.addHandler(file_handler)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    app_logger.propagate = False
    return app_logger
