# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_executor

import logging
import sys
from pathlib import Path

from loguru import logger

__all__ = ["InterceptHandler", "configure_logging", "intercept_stdlib_logging", "logger"]

CONSOLE_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | <level>{level: <8}</level> | "
    "<cyan>{extra[request_id]}</cyan> | <cyan>{name}</cyan>:<cyan>{function}</cyan> - <level>{message}</level>"
)


def configure_logging(log_dir: Path | str = "logs", level: str = "INFO") -> None:
    """Replace loguru's default sink with console and JSON file sinks.

    Writes every record to ``combined.log`` and errors to ``error.log`` inside
    ``log_dir``, which is created if needed.
    """
    log_path = Path(log_dir)
    log_path.mkdir(parents=True, exist_ok=True)

    logger.remove()
    logger.configure(extra={"request_id": "-"})
    logger.add(sys.stderr, level=level, format=CONSOLE_FORMAT)
    logger.add(
        log_path / "combined.log",
        level=level,
        serialize=True,
        rotation="10 MB",
        retention=5,
    )
    logger.add(
        log_path / "error.log",
        level="ERROR",
        serialize=True,
        rotation="10 MB",
        retention=5,
    )


class InterceptHandler(logging.Handler):
    """Route records from stdlib ``logging`` (uvicorn, asyncio) into loguru."""

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


def intercept_stdlib_logging(*names: str) -> None:
    """Send the named stdlib loggers (and the root logger) through loguru."""
    logging.basicConfig(handlers=[InterceptHandler()], level=0, force=True)
    for name in names:
        std_logger = logging.getLogger(name)
        std_logger.handlers = [InterceptHandler()]
        std_logger.propagate = False
