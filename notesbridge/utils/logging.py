"""Logging setup shared by the CLI and the backends.

Records can carry two extra attributes that :class:`SeverityOverrideFilter`
understands:

``log_category``
    A coarse source tag such as ``"osascript"``. ``general.log_overrides``
    maps categories to the level their records are re-stamped with.
``force_level``
    A level name that wins over any category override.
"""
from __future__ import annotations

import logging
import logging.handlers
from pathlib import Path
from typing import Mapping

from rich.console import Console
from rich.logging import RichHandler

from notesbridge.core.config import LOG_LEVELS, AppConfig

FILE_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"

# Libraries that chatter at DEBUG
QUIET_LOGGERS = ("aiosqlite", "markdown_it", "asyncio")


def _parse_level(value: str | int) -> tuple[int, str]:
    if isinstance(value, int):
        return value, logging.getLevelName(value)
    name = str(value).strip().upper()
    if name not in LOG_LEVELS:
        raise ValueError(f"Unsupported log level: {value}")
    return logging.getLevelName(name), name


def log_file_path(config: AppConfig) -> Path:
    return config.general.data_dir / "logs" / config.general.log_file_name


class SeverityOverrideFilter(logging.Filter):
    """Re-stamp record levels from ``force_level`` or the record's category."""

    def __init__(self, category_levels: Mapping[str, str]):
        super().__init__()
        self.category_levels = {name: _parse_level(level) for name, level in category_levels.items()}

    def filter(self, record: logging.LogRecord) -> bool:
        forced = getattr(record, "force_level", None)
        if forced:
            record.levelno, record.levelname = _parse_level(forced)
        else:
            override = self.category_levels.get(getattr(record, "log_category", None))
            if override:
                record.levelno, record.levelname = override
        return True


def build_console_handler(level_name: str) -> logging.Handler:
    # stderr keeps --json output on stdout machine-readable
    handler = RichHandler(console=Console(stderr=True), rich_tracebacks=True, show_time=False)
    handler.setLevel(_parse_level(level_name)[0])
    handler.setFormatter(logging.Formatter("%(message)s"))
    return handler


def build_file_handler(config: AppConfig) -> logging.Handler:
    path = log_file_path(config)
    path.parent.mkdir(parents=True, exist_ok=True)
    handler = logging.handlers.RotatingFileHandler(
        path,
        maxBytes=config.general.log_file_max_bytes,
        backupCount=config.general.log_file_backup_count,
        encoding="utf-8",
    )
    handler.setLevel(logging.DEBUG)
    handler.setFormatter(logging.Formatter(fmt=FILE_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))
    return handler


def setup_logging(config: AppConfig, *, level_name: str | None = None) -> Path:
    """Replace the root handlers with a Rich console handler and a rotating file.

    Returns the log file path.
    """
    levelno, levelname = _parse_level(level_name or config.general.log_level)

    root = logging.getLogger()
    for handler in list(root.handlers):
        root.removeHandler(handler)
    root.setLevel(levelno)

    filter_ = SeverityOverrideFilter(config.general.log_overrides)
    for handler in (build_console_handler(levelname), build_file_handler(config)):
        handler.addFilter(filter_)
        root.addHandler(handler)

    logging.captureWarnings(True)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(levelno, logging.INFO))

    return log_file_path(config)


def log_process_output(text: str, logger: logging.Logger, *, category: str, level: str = "DEBUG") -> None:
    """Write captured subprocess output into the logger, one record per line."""
    levelno, levelname = _parse_level(level)
    for line in text.splitlines():
        line = line.rstrip()
        if line:
            logger.log(levelno, line, extra={"log_category": category, "force_level": levelname})
