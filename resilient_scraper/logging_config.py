"""Logging configuration using loguru"""

import sys
from pathlib import Path
from typing import Optional

from loguru import logger


def setup_logging(verbose: bool = False, log_file: Optional[Path] = None) -> None:
    """
    Configure loguru for the scraper services.

    Args:
        verbose: Enable debug-level logging (per-attempt classification details)
        log_file: Optional file path for log output
    """
    logger.remove()

    log_level = "DEBUG" if verbose else "INFO"
    logger.add(
        sys.stdout,
        format="<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | <level>{level: <8}</level> | <cyan>{name}</cyan> | <level>{message}</level>",
        level=log_level,
        colorize=True,
    )

    if log_file:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        logger.add(
            log_file,
            format="{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | {name}:{function}:{line} | {message}",
            level="DEBUG",
            rotation="100 MB",
            retention="30 days",
            compression="zip",
            enqueue=True,  # Health checks and sweeps log from background tasks
        )
        logger.info(f"Logging to file: {log_file}")
