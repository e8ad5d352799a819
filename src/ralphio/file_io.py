"""Text I/O helpers for the workspace stores: atomic rewrites and appends."""

from __future__ import annotations

import os
import tempfile
import time
from contextlib import suppress
from pathlib import Path

_ATOMIC_REPLACE_MAX_RETRIES = 8
_ATOMIC_REPLACE_RETRY_SECONDS = 0.01


def _replace_file_with_retry(src: Path, dst: Path) -> None:
    last_error: OSError | None = None
    for attempt in range(_ATOMIC_REPLACE_MAX_RETRIES):
        try:
            src.replace(dst)
            return
        except PermissionError as exc:
            last_error = exc
        except OSError as exc:
            if exc.errno != 13:
                raise
            last_error = exc
        if attempt < _ATOMIC_REPLACE_MAX_RETRIES - 1:
            time.sleep(_ATOMIC_REPLACE_RETRY_SECONDS * (attempt + 1))
    if last_error is not None:
        raise last_error


def atomic_write_text(path: Path, content: str, *, encoding: str = "utf-8") -> None:
    """Write text to disk atomically to avoid partial/corrupt files."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f"{path.name}.", suffix=".tmp", dir=str(path.parent))
    tmp_path = Path(tmp_name)
    try:
        # newline="" keeps the store's original line endings intact.
        with os.fdopen(fd, "w", encoding=encoding, newline="") as handle:
            handle.write(content)
        _replace_file_with_retry(tmp_path, path)
    finally:
        with suppress(OSError):
            tmp_path.unlink(missing_ok=True)


def append_text(path: Path, content: str, *, encoding: str = "utf-8") -> None:
    """Append text, creating parent directories as needed."""
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("a", encoding=encoding) as handle:
        handle.write(content)


def read_text_or_empty(path: Path, *, encoding: str = "utf-8") -> str:
    """Return the file's text, or ``""`` when it does not exist."""
    try:
        return path.read_text(encoding=encoding)
    except FileNotFoundError:
        return ""
