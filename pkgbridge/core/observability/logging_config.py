"""
Logging configuration, set up once by the CLI entrypoint.

Modules log through ``logger = logging.getLogger(__name__)``, so all of
them sit under the ``pkgbridge`` logger.  Only that subtree is raised
to the requested level; anything else stays at WARNING.

Level precedence: CLI flag > PKGBRIDGE_LOG_LEVEL env var > WARNING.

The optional log file (PKGBRIDGE_LOG_FILE) records DEBUG by default so
every package-manager command line is kept even when the terminal is
quiet.  Several pkgbridge processes may queue on the same package
manager lock and share the file, so each record carries the pid.
Package-manager output itself is not logged; the process runner mirrors
it straight to the terminal.
"""

from __future__ import annotations

import logging
import logging.handlers
import os
import sys

# ── Format strings ──────────────────────────────────────────────

_FMT_MINIMAL = "%(message)s"

_FMT_VERBOSE = "%(asctime)s [%(name)s] %(message)s"
_DATEFMT_VERBOSE = "%H:%M:%S"

_FMT_DEBUG = "%(asctime)s %(levelname)-5s %(name)s:%(lineno)d  %(message)s"
_DATEFMT_DEBUG = "%H:%M:%S"

_FMT_FILE = "%(asctime)s [%(process)d] %(levelname)-5s %(name)s  %(message)s"
_DATEFMT_FILE = "%Y-%m-%d %H:%M:%S"

PACKAGE_LOGGER = "pkgbridge"

ENV_LEVEL = "PKGBRIDGE_LOG_LEVEL"
ENV_FILE = "PKGBRIDGE_LOG_FILE"
ENV_FILE_LEVEL = "PKGBRIDGE_LOG_FILE_LEVEL"

# handlers installed here carry this name so a second setup replaces them
_HANDLER_NAME = "pkgbridge"


def setup_logging(
    level: str | None = None,
    log_file: str | None = None,
    log_file_level: str | None = None,
) -> None:
    """Configure logging for the ``pkgbridge`` loggers.

    Args:
        level: Console level name. Falls back to PKGBRIDGE_LOG_LEVEL, then WARNING.
        log_file: Optional log file path. Falls back to PKGBRIDGE_LOG_FILE.
        log_file_level: File level. Falls back to PKGBRIDGE_LOG_FILE_LEVEL, then DEBUG.
    """
    console_level = _parse_level(level or os.environ.get(ENV_LEVEL), logging.WARNING)
    log_file = log_file or os.environ.get(ENV_FILE)

    handlers: list[logging.Handler] = [_console_handler(console_level)]
    package_level = console_level

    if log_file:
        file_level = _parse_level(
            log_file_level or os.environ.get(ENV_FILE_LEVEL), logging.DEBUG,
        )
        package_level = min(package_level, file_level)
        # reopens the file after logrotate moves it
        fh = logging.handlers.WatchedFileHandler(log_file, encoding="utf-8")
        fh.setLevel(file_level)
        fh.setFormatter(logging.Formatter(_FMT_FILE, datefmt=_DATEFMT_FILE))
        handlers.append(fh)

    root = logging.getLogger()
    for old in [h for h in root.handlers if h.get_name() == _HANDLER_NAME]:
        root.removeHandler(old)
        old.close()
    for handler in handlers:
        handler.set_name(_HANDLER_NAME)
        root.addHandler(handler)

    root.setLevel(max(package_level, logging.WARNING))
    logging.getLogger(PACKAGE_LOGGER).setLevel(package_level)

    logging.raiseExceptions = False


def _console_handler(level: int) -> logging.Handler:
    if level <= logging.DEBUG:
        fmt, datefmt = _FMT_DEBUG, _DATEFMT_DEBUG
    elif level <= logging.INFO:
        fmt, datefmt = _FMT_VERBOSE, _DATEFMT_VERBOSE
    else:
        fmt, datefmt = _FMT_MINIMAL, None
    handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(fmt, datefmt=datefmt))
    return handler


def _parse_level(level: str | None, default: int) -> int:
    """Convert a level name to its numeric value (``default`` if unknown)."""
    if not level:
        return default
    numeric = getattr(logging, level.upper(), None)
    if not isinstance(numeric, int):
        return default
    return numeric
