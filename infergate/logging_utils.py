"""Structured logging configuration built on top of loguru."""

from __future__ import annotations

import sys
from pathlib import Path
from typing import Optional

from loguru import logger

RETRIEVAL_COMPONENT = "retrieval"


def configure_logging(
    log_dir: Path | str | None = None,
    level: str = "INFO",
    *,
    retrieval_log_path: Path | str | None = None,
) -> None:
    """Configure Loguru sinks for console and optional file output."""

    logger.remove()
    logger.configure(extra={"component": "app"})

    log_format = (
        "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
        "<level>{level: <8}</level> | "
        "pid={process} | "
        "<cyan>{extra[component]}</cyan> | "
        "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - "
        "<level>{message}</level>"
    )

    logger.add(
        sys.stderr,
        format=log_format,
        colorize=True,
        level=level,
    )

    if log_dir is not None:
        path = Path(log_dir)
        path.mkdir(parents=True, exist_ok=True)
        logger.add(
            path / "infergate.log",
            rotation="1 day",
            retention="14 days",
            compression="gz",
            level=level,
            backtrace=False,
            diagnose=False,
            format=log_format,
        )

    if retrieval_log_path is not None:
        # Retrieval plans are kept apart as JSONL so they can be replayed offline.
        path = Path(retrieval_log_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        logger.add(
            path,
            level="INFO",
            serialize=True,
            rotation="20 MB",
            retention=10,
            filter=lambda record: record["extra"].get("component") == RETRIEVAL_COMPONENT,
        )


def get_logger(name: Optional[str] = None):
    """Return a child logger with contextualized name."""

    if name:
        return logger.bind(component=name)
    return logger
