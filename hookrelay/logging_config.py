"""Logging setup for the CLI and the ingress server.

Console output goes to stderr, colored when it is a terminal. With a
``log_dir`` the records are also written to ``hookrelay.log`` through a
queue, so receiving an event never blocks on file I/O.
"""

from __future__ import annotations

import atexit
import logging
import queue
import sys
from logging.handlers import QueueHandler, QueueListener, RotatingFileHandler
from pathlib import Path

from hookrelay.log_context import ContextFilter

LOG_FILENAME = "hookrelay.log"
MAX_BYTES = 5 * 1024 * 1024
BACKUP_COUNT = 3

CONSOLE_FMT = "%(asctime)s %(levelname)s %(name)s: %(ctx)s%(message)s"
FILE_FMT = "%(asctime)s [%(levelname)s] %(name)s:%(lineno)d: %(ctx)s%(message)s"
DATE_FMT = "%H:%M:%S"
FILE_DATE_FMT = "%Y-%m-%d %H:%M:%S"

# watchfiles reports every raw change batch; aiohttp logs one line per request.
QUIET_LOGGERS: dict[str, int] = {
    "watchfiles": logging.WARNING,
    "aiohttp.access": logging.WARNING,
}

logger = logging.getLogger(__name__)

_LEVEL_COLORS: dict[int, str] = {
    logging.DEBUG: "36",
    logging.INFO: "32",
    logging.WARNING: "33",
    logging.ERROR: "31",
    logging.CRITICAL: "35",
}


class _ColorFormatter(logging.Formatter):
    """Pads the level name and wraps it in an ANSI color when enabled."""

    def __init__(self, fmt: str, datefmt: str | None = None, use_color: bool = True) -> None:
        super().__init__(fmt, datefmt)
        self._use_color = use_color

    def format(self, record: logging.LogRecord) -> str:
        levelname = record.levelname
        padded = f"{levelname:<8}"
        code = _LEVEL_COLORS.get(record.levelno)
        record.levelname = f"\x1b[{code}m{padded}\x1b[0m" if self._use_color and code else padded
        try:
            return super().format(record)
        finally:
            record.levelname = levelname


class _FileLog:
    """Owns the background listener that drains the log queue into the rotating file."""

    def __init__(self) -> None:
        self._listener: QueueListener | None = None
        self._atexit_registered = False

    def start(self, log_dir: Path, ctx_filter: logging.Filter) -> QueueHandler:
        self.stop()
        log_dir.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            log_dir / LOG_FILENAME,
            maxBytes=MAX_BYTES,
            backupCount=BACKUP_COUNT,
            encoding="utf-8",
        )
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(logging.Formatter(FILE_FMT, datefmt=FILE_DATE_FMT))

        records: queue.Queue[logging.LogRecord] = queue.Queue()
        handler = QueueHandler(records)
        handler.setLevel(logging.DEBUG)
        # The filter runs on the caller's side so ContextVars are still visible.
        handler.addFilter(ctx_filter)

        self._listener = QueueListener(records, file_handler, respect_handler_level=True)
        self._listener.start()
        if not self._atexit_registered:
            atexit.register(self.stop)
            self._atexit_registered = True
        return handler

    def stop(self) -> None:
        if self._listener is not None:
            self._listener.stop()
            self._listener = None


_file_log = _FileLog()


def _console_handler(level: int, ctx_filter: logging.Filter) -> logging.Handler | None:
    stream = sys.stderr
    if stream is None:
        return None
    handler = logging.StreamHandler(stream)
    handler.setLevel(level)
    handler.addFilter(ctx_filter)
    use_color = hasattr(stream, "isatty") and stream.isatty()
    handler.setFormatter(_ColorFormatter(CONSOLE_FMT, datefmt=DATE_FMT, use_color=use_color))
    return handler


def setup_logging(
    level: int = logging.INFO,
    verbose: bool = False,
    log_dir: Path | None = None,
) -> None:
    """Replace the root handlers with a console handler and, given *log_dir*, a file log.

    Safe to call again once the config is loaded: the previous handlers and
    the file listener are torn down first. *verbose* forces DEBUG.
    """
    if verbose:
        level = logging.DEBUG
    _file_log.stop()

    ctx_filter = ContextFilter()
    root = logging.getLogger()
    root.setLevel(level)
    root.handlers.clear()

    console = _console_handler(level, ctx_filter)
    if console is not None:
        root.addHandler(console)
    if log_dir is not None:
        root.addHandler(_file_log.start(log_dir, ctx_filter))

    for name, quiet_level in QUIET_LOGGERS.items():
        logging.getLogger(name).setLevel(quiet_level)

    logger.debug(
        "Logging ready level=%s file=%s",
        logging.getLevelName(level),
        log_dir / LOG_FILENAME if log_dir is not None else "-",
    )
