"""Git helpers and the post-invocation commit reconciler."""

from __future__ import annotations

import datetime as dt
import logging
import os
import re
import subprocess
from pathlib import Path

from ralphio.schemas import CommitOutcome, CommitResult

logger = logging.getLogger(__name__)

COMMIT_PREFIX = "RALPHIO"
MAX_SUBJECT_CHARS = 50
SESSION_SUFFIX_CHARS = 6

_UNSAFE_CHARS_RE = re.compile(r"[^A-Za-z0-9 _-]")
_WHITESPACE_RE = re.compile(r"\s+")
_NOTHING_TO_COMMIT = "nothing to commit"


def _git_subprocess_isolation_kwargs() -> dict[str, object]:
    """Return kwargs that prevent child console events from reaching the parent on Windows."""
    if os.name != "nt":
        return {}
    new_pg = int(getattr(subprocess, "CREATE_NEW_PROCESS_GROUP", 0))
    no_win = int(getattr(subprocess, "CREATE_NO_WINDOW", 0))
    flags = new_pg | no_win
    return {"creationflags": flags} if flags else {}


class GitError(RuntimeError):
    """Raised when a git command fails unexpectedly."""

    def __init__(self, message: str, *, stdout: str = "", stderr: str = "") -> None:
        super().__init__(message)
        self.stdout = stdout
        self.stderr = stderr


def _run_git(
    *args: str,
    cwd: Path,
    check: bool = True,
    timeout: int = 60,
) -> subprocess.CompletedProcess[str]:
    """Run a git command and return the CompletedProcess."""
    logger.debug("git %s (cwd=%s)", " ".join(args), cwd)
    result = subprocess.run(
        ["git", *args],
        cwd=cwd,
        capture_output=True,
        text=True,
        encoding="utf-8",
        errors="replace",
        timeout=timeout,
        **_git_subprocess_isolation_kwargs(),
    )
    if check and result.returncode != 0:
        raise GitError(
            f"`git {' '.join(args)}` failed (rc={result.returncode}): "
            f"{(result.stderr or result.stdout).strip()}",
            stdout=result.stdout,
            stderr=result.stderr,
        )
    return result


# ---------------------------------------------------------------------------
# Query helpers
# ---------------------------------------------------------------------------


def status_porcelain(repo: str | Path) -> str:
    """Return ``git status --porcelain`` output."""
    return _run_git("status", "--porcelain", cwd=Path(repo)).stdout.strip()


def is_clean(repo: str | Path) -> bool:
    """Return True when the working tree is clean."""
    return status_porcelain(repo) == ""


def staged_diff_stat(repo: str | Path) -> str:
    """Return ``git diff --cached --stat`` output."""
    return _run_git("diff", "--cached", "--stat", cwd=Path(repo)).stdout.strip()


def head_sha(repo: str | Path) -> str:
    """Return the short SHA of HEAD."""
    return _run_git("rev-parse", "--short", "HEAD", cwd=Path(repo)).stdout.strip()


# ---------------------------------------------------------------------------
# Mutation helpers
# ---------------------------------------------------------------------------


def stage_all(repo: str | Path) -> None:
    _run_git("add", "-A", cwd=Path(repo))


def commit(repo: str | Path, message: str) -> str:
    """Commit the index with *message*; return the new short SHA."""
    _run_git("commit", "-m", message, cwd=Path(repo))
    return head_sha(repo)


# ---------------------------------------------------------------------------
# Commit messages
# ---------------------------------------------------------------------------


def sanitize_task_description(text: str | None, limit: int = MAX_SUBJECT_CHARS) -> str:
    """Reduce a task description to a safe, bounded commit subject.

    Keeps only ``[A-Za-z0-9 _-]``, collapses whitespace, and truncates to
    *limit* characters at the last space inside the window (a hard cut only
    when the window holds no space).
    """
    task = _UNSAFE_CHARS_RE.sub("", text or "")
    task = _WHITESPACE_RE.sub(" ", task).strip()
    if len(task) > limit:
        window = task[: limit + 1]
        cut = window.rfind(" ")
        task = task[:cut] if 0 < cut <= limit else task[:limit]
    return task.strip() or "task"


def generate_commit_message(
    task_description: str | None,
    session_id: str | None,
    now: dt.datetime | None = None,
) -> str:
    """Build ``RALPHIO: <task> [<session6>-<HHMMSS>]`` for one iteration."""
    moment = now or dt.datetime.now(dt.timezone.utc)
    session = session_id[-SESSION_SUFFIX_CHARS:] if session_id else "nosess"
    session = _UNSAFE_CHARS_RE.sub("", session) or "nosess"
    return (
        f"{COMMIT_PREFIX}: {sanitize_task_description(task_description)} "
        f"[{session}-{moment.strftime('%H%M%S')}]"
    )


# ---------------------------------------------------------------------------
# Reconciliation
# ---------------------------------------------------------------------------


def reconcile(
    repo: str | Path,
    task_description: str | None,
    session_id: str | None,
    *,
    now: dt.datetime | None = None,
) -> CommitResult:
    """Capture whatever the agent left in the working tree as one commit.

    A clean tree is a success: the agent may already have committed.  Git
    failures are reported as ``COMMIT_FAILED`` and never raised.
    """
    cwd = Path(repo)
    message = ""
    try:
        if is_clean(cwd):
            logger.info("No uncommitted changes (agent may have already committed)")
            return CommitResult(outcome=CommitOutcome.NOTHING_TO_COMMIT)

        message = generate_commit_message(task_description, session_id, now)
        logger.debug("Commit attempt: task=%r message=%r", task_description, message)

        stage_all(cwd)
        if not staged_diff_stat(cwd):
            logger.info("No staged changes after staging (likely already committed or reverted)")
            return CommitResult(outcome=CommitOutcome.NOTHING_TO_COMMIT, message=message)

        sha = commit(cwd, message)
    except GitError as exc:
        if _NOTHING_TO_COMMIT in f"{exc} {exc.stdout}":
            logger.info("Nothing to commit")
            return CommitResult(outcome=CommitOutcome.NOTHING_TO_COMMIT, message=message)
        return _failed(cwd, message, str(exc))
    except (OSError, subprocess.SubprocessError) as exc:
        return _failed(cwd, message, str(exc))

    logger.info("Auto-commit success: %s (%s)", message, sha)
    return CommitResult(outcome=CommitOutcome.COMMITTED, message=message, detail=sha)


def _failed(cwd: Path, message: str, detail: str) -> CommitResult:
    logger.error("Auto-commit failed: %s", detail)
    try:
        short = _run_git("status", "--short", cwd=cwd, check=False).stdout.rstrip()
    except (OSError, subprocess.SubprocessError):
        short = ""
    if short:
        logger.debug("git status at failure:\n%s", short)
    return CommitResult(outcome=CommitOutcome.COMMIT_FAILED, message=message, detail=detail)
