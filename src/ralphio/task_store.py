"""Read and update the checkbox task list in ``planning.md``.

Ordering is the only priority signal: the first ``- [ ]`` line, scanned top
to bottom at any indentation, is the next task.  Headings, notes and any
line that is not a well-formed checkbox are opaque and left untouched.
"""

from __future__ import annotations

import logging
import re
from pathlib import Path

from ralphio.config import RalphioConfig
from ralphio.file_io import atomic_write_text
from ralphio.schemas import TaskEntry

logger = logging.getLogger(__name__)

_TASK_RE = re.compile(r"^(?P<indent>[ \t]*)- \[(?P<mark>[ xX])\] (?P<text>.+)$")


class StoreReadError(OSError):
    """Raised when the task store cannot be read or decoded."""


def parse_tasks(text: str) -> list[TaskEntry]:
    """Return every checkbox entry in *text*, in file order."""
    entries: list[TaskEntry] = []
    for line_number, line in enumerate(text.splitlines()):
        match = _TASK_RE.match(line)
        if match is None:
            continue
        entries.append(
            TaskEntry(
                text=match.group("text"),
                completed=match.group("mark") != " ",
                indent_level=len(match.group("indent")),
                line_number=line_number,
            )
        )
    return entries


def first_unfinished(entries: list[TaskEntry]) -> TaskEntry | None:
    for entry in entries:
        if not entry.completed:
            return entry
    return None


def resolve_plan_path(config: RalphioConfig) -> Path:
    """Return the configured plan file, falling back to a root-level ``planning.md``."""
    primary = config.paths.plan_file
    if primary.exists():
        return primary
    legacy = config.legacy_plan_file
    if legacy.exists():
        return legacy
    return primary


def read_store(path: Path) -> str:
    """Read the task store verbatim (line endings preserved)."""
    try:
        with path.open(encoding="utf-8", newline="") as handle:
            return handle.read()
    except FileNotFoundError as exc:
        raise StoreReadError(f"task store not found: {path}") from exc
    except (OSError, UnicodeDecodeError) as exc:
        raise StoreReadError(f"could not read task store {path}: {exc}") from exc


def peek_first_unfinished_task(path: Path) -> TaskEntry | None:
    """Return the first unchecked task, or ``None`` when there is no work.

    An unreadable store counts as "no work" rather than an error.
    """
    try:
        text = read_store(path)
    except StoreReadError as exc:
        logger.warning("%s", exc)
        return None
    return first_unfinished(parse_tasks(text))


def has_unfinished_task(path: Path) -> bool:
    """Return True when the store holds at least one unchecked task."""
    try:
        text = read_store(path)
    except StoreReadError as exc:
        logger.warning("%s", exc)
        return False
    entries = parse_tasks(text)
    remaining = sum(1 for entry in entries if not entry.completed)
    if remaining:
        logger.info("Found %d unchecked task(s) remaining in %s", remaining, path)
        return True
    logger.info("No unchecked tasks found in %s", path)
    return False


def mark_task_complete(path: Path, entry: TaskEntry) -> bool:
    """Flip *entry*'s checkbox to ``[x]``; return False when nothing changed.

    The line at ``entry.line_number`` is used when it still holds the same
    unchecked text.  Otherwise the same-text line nearest that position
    decides: a checked one means the agent already ticked the task, and an
    unchecked one is flipped only when it is the first unfinished task in
    the file.  Write failures are logged and reported as False.
    """
    try:
        text = read_store(path)
    except StoreReadError as exc:
        logger.warning("Cannot mark task complete: %s", exc)
        return False

    lines = text.splitlines(keepends=True)
    target = _locate(lines, entry)
    if target is None:
        logger.debug("Task already checked or gone: %r", entry.text)
        return False

    line = lines[target]
    body = line.rstrip("\r\n")
    ending = line[len(body):]
    lines[target] = body.replace("- [ ] ", "- [x] ", 1) + ending
    try:
        atomic_write_text(path, "".join(lines))
    except OSError as exc:
        logger.warning("Cannot mark task complete in %s: %s", path, exc)
        return False
    logger.info("Marked task complete: %s", entry.text)
    return True


def _locate(lines: list[str], entry: TaskEntry) -> int | None:
    candidates: list[tuple[int, bool]] = []
    first_open: int | None = None
    for index, line in enumerate(lines):
        match = _TASK_RE.match(line.rstrip("\r\n"))
        if match is None:
            continue
        unchecked = match.group("mark") == " "
        if unchecked and first_open is None:
            first_open = index
        if match.group("text") == entry.text:
            candidates.append((index, unchecked))

    if not candidates:
        return None
    # Ties go to the checked line so a duplicate is never ticked by mistake.
    index, unchecked = min(
        candidates,
        key=lambda item: (abs(item[0] - entry.line_number), item[1]),
    )
    if not unchecked:
        return None
    if index != entry.line_number and index != first_open:
        return None
    return index
