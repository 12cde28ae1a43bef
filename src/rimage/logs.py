"""Loguru setup for console and file sinks."""

import sys
from datetime import UTC, datetime
from pathlib import Path
from typing import Literal

from loguru import logger

LogLevel = Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL", "OFF"]


def setup_logging(
    file_log_level: LogLevel = "DEBUG",
    console_log_level: LogLevel = "INFO",
    log_folder: Path = Path("logs"),
) -> None:
    """
    Configure Loguru for both console and file logging.

    Args:
        file_log_level: Log level for file (use 'OFF' to disable)
        console_log_level: Log level for console (use 'OFF' to disable)
        log_folder: Directory where log files are stored

    """
    logger.remove()

    if file_log_level != "OFF":
        log_folder.mkdir(parents=True, exist_ok=True)
        log_file = log_folder / datetime.now(tz=UTC).strftime("%Y%m%d%H%M%S-rimage.log")
        logger.add(
            log_file,
            level=file_log_level,
            format=(
                "{time:YYYY-MM-DD HH:mm:ss.SSS} | "
                "{level: <8} | "
                "{thread.name:<16} | "
                "{name:<16}:{function:<22}:{line:>4} | "
                "{message:<32} | "
                "{extra}"
            ),
            rotation="500 MB",
            retention="10 days",
            compression="zip",
        )

    if console_log_level != "OFF":
        logger.add(
            sys.stderr,
            level=console_log_level,
            colorize=True,
            format=(
                "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | "
                "<level>{level: <7}</level> | "
                "<level>{message:<32.40}</level> | "
                "<yellow>{extra}</yellow>"
            ),
        )
