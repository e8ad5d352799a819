"""Logging setup: console output plus a dated, line-oriented run log.

Each record becomes one line of ``<logs_dir>/ralphio_<YYYY-MM-DD>.log``::

    [2026-10-18T09:14:03.512+00:00] [INFO] ITERATION 3/50 - Starting task execution...
"""

from __future__ import annotations

import datetime as dt
import logging
import re
from pathlib import Path

LOG_PREFIX = "ralphio"
CONSOLE_FORMAT = "%(asctime)s  %(levelname)-8s  %(name)s  %(message)s"
CONSOLE_DATEFMT = "%H:%M:%S"

_ANSI_RE = re.compile(r"\x1b\[[0-9;?]*[A-Za-z]")


def strip_ansi(text: str) -> str:
    """Remove ANSI colour/cursor sequences from *text*."""
    return _ANSI_RE.sub("", text)


def log_file_for(logs_dir: Path, day: dt.date) -> Path:
    return logs_dir / f"{LOG_PREFIX}_{day.isoformat()}.log"


class RunLogFormatter(logging.Formatter):
    """``[iso-timestamp] [LEVEL] message`` with ANSI codes removed.

    Multi-line messages are split so each output line carries its own prefix.
    """

    def format(self, record: logging.LogRecord) -> str:
        stamp = dt.datetime.fromtimestamp(record.created, dt.timezone.utc).isoformat(
            timespec="milliseconds"
        )
        message = strip_ansi(record.getMessage())
        if record.exc_info:
            message = f"{message}\n{self.formatException(record.exc_info)}"
        prefix = f"[{stamp}] [{record.levelname}]"
        lines = message.splitlines() or [""]
        return "\n".join(f"{prefix} {line}" for line in lines)


class DailyFileHandler(logging.Handler):
    """Append records to ``ralphio_<date>.log``, switching files at midnight UTC."""

    def __init__(self, logs_dir: str | Path) -> None:
        super().__init__()
        self.logs_dir = Path(logs_dir)
        self.setFormatter(RunLogFormatter())

    def current_path(self) -> Path:
        return log_file_for(self.logs_dir, dt.datetime.now(dt.timezone.utc).date())

    def emit(self, record: logging.LogRecord) -> None:
        try:
            line = self.format(record)
            path = self.current_path()
            path.parent.mkdir(parents=True, exist_ok=True)
            with path.open("a", encoding="utf-8") as handle:
                handle.write(line + "\n")
        except Exception:
            self.handleError(record)


class _ConsoleHandler(logging.StreamHandler):
    """Console handler installed by :func:`configure_logging`."""


def configure_logging(logs_dir: Path | None = None, *, verbose: bool = False) -> None:
    """Configure root logging for a CLI run.

    The console shows INFO (DEBUG with *verbose*); the run log under
    *logs_dir* always records DEBUG and above.  Calling it again replaces
    the handlers it installed earlier.
    """
    root = logging.getLogger()
    for handler in list(root.handlers):
        if isinstance(handler, (DailyFileHandler, _ConsoleHandler)):
            root.removeHandler(handler)
            handler.close()

    console = _ConsoleHandler()
    console.setFormatter(logging.Formatter(CONSOLE_FORMAT, datefmt=CONSOLE_DATEFMT))
    console.setLevel(logging.DEBUG if verbose else logging.INFO)
    root.addHandler(console)

    if logs_dir is not None:
        file_handler = DailyFileHandler(logs_dir)
        file_handler.setLevel(logging.DEBUG)
        root.addHandler(file_handler)
    root.setLevel(logging.DEBUG)
