"""Logging setup for whisperaccel.

Every module logs through ``logging.getLogger(__name__)``. The trace events
emitted by :class:`whisperaccel.events.EventEmitter` are mirrored to the
``whisperaccel.events`` logger with the workflow's correlation id attached,
so a log line can be matched to the decision trace it belongs to:

    2025-01-01 12:00:00 [INFO] whisperaccel.events op_3f2a9c0d1b7e4a65: [backend_loading] cuda backend loaded successfully

Call :func:`setup_logging` once from the application entry point.
"""

from __future__ import annotations

import logging
import os
import re
import sys
from pathlib import Path
from typing import Dict, Mapping, Optional

PACKAGE_LOGGER = "whisperaccel"

MODULE_LEVELS_ENV = "WA_LOG_MODULE_LEVELS"

DEFAULT_FORMAT = "%(asctime)s [%(levelname)s] %(name)s %(correlation_id)s: %(message)s"

NO_CORRELATION = "-"


class CorrelationIdFilter(logging.Filter):
    """Give every record a ``correlation_id`` so the format string can use it.

    Records logged with ``extra={"correlation_id": cid}`` keep their id; all
    others get ``"-"``.
    """

    def filter(self, record: logging.LogRecord) -> bool:
        if not getattr(record, "correlation_id", None):
            record.correlation_id = NO_CORRELATION
        return True


def _qualified(name: str) -> str:
    return name if name.startswith(PACKAGE_LOGGER) else f"{PACKAGE_LOGGER}.{name}"


def _parse_module_levels(value: str) -> Dict[str, int]:
    """Parse ``"selection=DEBUG,loader:INFO"`` into logger names and levels.

    Names are prefixed with ``whisperaccel.`` when they are not already;
    entries with an unknown level are dropped.
    """
    levels: Dict[str, int] = {}
    for part in re.split(r"[;,]+", value or ""):
        name, sep, level_name = part.replace(":", "=", 1).partition("=")
        name = name.strip()
        level = logging.getLevelName(level_name.strip().upper()) if sep else None
        if not name or not isinstance(level, int):
            continue
        levels[_qualified(name)] = level
    return levels


def _handler(handler: logging.Handler, format_string: str) -> logging.Handler:
    # Permissive handler level: per-module overrides may go below the package level.
    handler.setLevel(logging.DEBUG)
    handler.setFormatter(logging.Formatter(format_string, datefmt="%Y-%m-%d %H:%M:%S"))
    handler.addFilter(CorrelationIdFilter())
    return handler


def setup_logging(
    level: int = logging.INFO,
    log_file: Optional[Path] = None,
    format_string: Optional[str] = None,
    module_levels: Optional[Mapping[str, int]] = None,
) -> logging.Logger:
    """Configure the ``whisperaccel`` logger and return it.

    Args:
        level: Level for the package logger
        log_file: Optional file that receives the same records as stderr
        format_string: Custom format; may use ``%(correlation_id)s``
        module_levels: Per-module levels; merged over ``WA_LOG_MODULE_LEVELS``

    Calling it again replaces the handlers installed by the previous call.
    """
    format_string = format_string or DEFAULT_FORMAT

    logger = logging.getLogger(PACKAGE_LOGGER)
    for old in list(logger.handlers):
        logger.removeHandler(old)
        old.close()
    logger.setLevel(level)
    logger.addHandler(_handler(logging.StreamHandler(sys.stderr), format_string))

    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        logger.addHandler(_handler(logging.FileHandler(log_file, encoding="utf-8"), format_string))

    logger.propagate = False

    levels = _parse_module_levels(os.getenv(MODULE_LEVELS_ENV, ""))
    levels.update({_qualified(name): lvl for name, lvl in (module_levels or {}).items()})
    for name, lvl in levels.items():
        logging.getLogger(name).setLevel(lvl)

    return logger
