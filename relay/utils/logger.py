"""Logging configuration using loguru.

- Console: colored output at the configured level
- logs/app.log: main log, rotates at 50 MB, keeps 30 days
- logs/errors.log: errors only, rotates at 10 MB, keeps 90 days
"""

import sys
from pathlib import Path

from loguru import logger

from relay.config import settings


def setup_logger():
    """Configure the shared loguru logger and return it."""
    Path("logs").mkdir(exist_ok=True)

    logger.remove()

    log_format = (
        "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | "
        "<level>{level: <8}</level> | "
        "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> | "
        "<level>{message}</level>"
    )

    logger.add(
        sys.stdout,
        format=log_format,
        level=settings.log_level,
        colorize=True,
    )

    logger.add(
        "logs/app.log",
        format=log_format,
        level="INFO",
        rotation="50 MB",
        retention="30 days",
        compression="zip",
        enqueue=True,
        backtrace=True,
        diagnose=False,  # tracebacks may carry user phone numbers
    )

    logger.add(
        "logs/errors.log",
        format=log_format,
        level="ERROR",
        rotation="10 MB",
        retention="90 days",
        compression="zip",
        enqueue=True,
        backtrace=True,
        diagnose=False,
    )

    return logger


# Initialize logger
log = setup_logger()
