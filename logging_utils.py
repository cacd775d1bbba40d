"""Logging setup helpers for the render pipeline."""
from __future__ import annotations

import logging
from logging import Logger
from pathlib import Path
from typing import Optional

# CLI verbosity names accepted alongside the stdlib level names.
LEVEL_ALIASES = {
    "error": "ERROR",
    "warn": "WARNING",
    "warning": "WARNING",
    "info": "INFO",
    "verbose": "DEBUG",
    "debug": "DEBUG",
}


def resolve_level(level: str) -> int:
    name = LEVEL_ALIASES.get(str(level).lower(), str(level).upper())
    return getattr(logging, name, logging.INFO)


def configure_logging(level: str, log_file: Optional[Path] = None) -> Logger:
    """Configure root logger with a console handler and an optional file handler."""
    numeric = resolve_level(level)
    logger = logging.getLogger()
    logger.setLevel(numeric)

    # Clear existing handlers to avoid duplicate logs during repeated runs
    for handler in list(logger.handlers):
        logger.removeHandler(handler)

    formatter = logging.Formatter(
        "%(asctime)s | %(levelname)s | %(name)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)
    console_handler.setLevel(numeric)
    logger.addHandler(console_handler)

    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setFormatter(formatter)
        file_handler.setLevel(numeric)
        logger.addHandler(file_handler)

    logger.debug("Logging configured", extra={"level": level, "file": str(log_file)})
    return logger


def get_logger(name: Optional[str] = None) -> Logger:
    """Return a module-level logger."""
    return logging.getLogger(name)
