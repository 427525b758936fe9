"""
Logging Setup
-------------
One loguru configuration for the CLI and the tests:

  - stderr: coloured, short timestamps
  - file (optional): rotating, compressed, queued so asyncio tasks never block on disk
  - stdlib loggers (httpx, httpcore, openai) are routed into loguru and
    held at ``library_level`` so request chatter does not drown the reader logs
"""
from __future__ import annotations

import logging
import sys
from pathlib import Path
from typing import Optional

from loguru import logger

CONSOLE_FORMAT = (
    "<green>{time:HH:mm:ss}</green> | "
    "<level>{level: <7}</level> | "
    "<cyan>{name}</cyan> - <level>{message}</level>"
)
FILE_FORMAT = "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | {name}:{function}:{line} - {message}"

LIBRARY_LOGGERS = ("httpx", "httpcore", "openai")


class _InterceptHandler(logging.Handler):
    """Forward stdlib log records to loguru, keeping the caller's location."""

    def emit(self, record: logging.LogRecord) -> None:
        try:
            level: str | int = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        frame, depth = logging.currentframe(), 2
        while frame is not None and frame.f_code.co_filename == logging.__file__:
            frame = frame.f_back
            depth += 1
        logger.opt(depth=depth, exception=record.exc_info).log(level, record.getMessage())


def setup_logger(
    log_level: str = "INFO",
    log_file: Optional[str] = "logs/lexis.log",
    library_level: str = "WARNING",
) -> None:
    logger.remove()
    logger.add(sys.stderr, level=log_level, format=CONSOLE_FORMAT, colorize=True)

    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        logger.add(
            log_file,
            level=log_level,
            format=FILE_FORMAT,
            rotation="5 MB",
            retention=3,
            compression="zip",
            enqueue=True,
        )

    logging.basicConfig(handlers=[_InterceptHandler()], level=0, force=True)
    for name in LIBRARY_LOGGERS:
        logging.getLogger(name).setLevel(library_level)

    logger.debug(f"[Logger] level={log_level} file={log_file or '-'} libraries={library_level}")
