"""Loguru sinks for the API server, the queue workers and the CLI."""
from __future__ import annotations

import sys
from pathlib import Path
from typing import Optional

from loguru import logger

_FORMAT = "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | {name}:{function}:{line} - {message}"
_COLOUR_FORMAT = (
    "<dim>{time:HH:mm:ss.SSS}</dim> <level>{level: <8}</level> "
    "<cyan>{name}:{function}</cyan> {message}"
)


def setup_logger(
    log_level: str = "INFO",
    log_file: Optional[str] = "logs/ragsync.log",
    serialize: bool = False,
) -> None:
    """
    Replace loguru's default handler with a coloured stderr sink (stdout is
    left to CLI output) and, when ``log_file`` is set, a rotating file sink.
    ``serialize`` writes the file as JSON lines.
    """
    handlers: list[dict] = [
        {"sink": sys.stderr, "level": log_level, "format": _COLOUR_FORMAT, "colorize": True},
    ]
    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        handlers.append(
            {
                "sink": log_file,
                "level": log_level,
                "format": _FORMAT,
                "rotation": "20 MB",
                "retention": 10,
                "compression": "gz",
                # writes go through a queue so the event loop never waits on disk
                "enqueue": True,
                "serialize": serialize,
            }
        )
    logger.configure(handlers=handlers)
    logger.debug(f"[Logger] level={log_level} file={log_file or '-'}")
