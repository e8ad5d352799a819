"""Task-loop orchestrator.

The :class:`TaskLoop` drives one agent invocation per unchecked task in the
planning file, bounding each invocation with a deadline, capturing the
agent's changes as a commit, and stopping when the task list is empty, the
agent fails too many times in a row, or the iteration budget runs out.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from pathlib import Path
from string import Template

from ralphio import git_tools, task_store
from ralphio.agent_runner import AgentInvoker, AgentTransport, InvocationError
from ralphio.config import RalphioConfig
from ralphio.file_io import read_text_or_empty
from ralphio.prompts import PromptCatalog, get_catalog
from ralphio.schemas import (
    CommitOutcome,
    CommitResult,
    IterationResult,
    LoopOutcome,
    LoopState,
    StopReason,
    TaskEntry,
)
from ralphio.timeouts import InvocationTimeoutError, abandoned_count, with_timeout

logger = logging.getLogger(__name__)

_BANNER = "=" * 60
_NO_TASK_LABEL = "task"

Reconciler = Callable[[Path, str, str | None], CommitResult]
Sleeper = Callable[[float], Awaitable[None]]


# ---------------------------------------------------------------------------
# State transitions
# ---------------------------------------------------------------------------


def advance_state(
    state: LoopState,
    success: bool,
    *,
    max_consecutive_failures: int,
    max_iterations: int,
) -> tuple[LoopState, StopReason | None]:
    """Apply one iteration outcome and decide whether the loop must stop.

    Success resets the failure streak; every iteration bumps ``index``.
    The failure threshold is checked before the iteration ceiling.
    """
    if success:
        new_state = LoopState(index=state.index + 1, consecutive_failures=0)
    else:
        new_state = LoopState(
            index=state.index + 1,
            consecutive_failures=state.consecutive_failures + 1,
        )

    if new_state.consecutive_failures >= max_consecutive_failures:
        return new_state, StopReason.INSTABILITY
    if new_state.index >= max_iterations:
        return new_state, StopReason.EXHAUSTED
    return new_state, None


# ---------------------------------------------------------------------------
# Prompt builder
# ---------------------------------------------------------------------------


def build_task_prompt(
    prompt_text: str,
    memory_text: str,
    planning_text: str,
    *,
    config: RalphioConfig,
    catalog: PromptCatalog | None = None,
) -> str:
    """Assemble the invocation payload.

    The three stores are embedded verbatim so the agent starts with full
    context; it still edits the real files on disk.
    """
    catalog = catalog or get_catalog()
    paths = {
        "prompt_file": _display_path(config.paths.prompt_file, config.root),
        "memory_file": _display_path(config.paths.memory_file, config.root),
        "plan_file": _display_path(config.paths.plan_file, config.root),
    }
    sections: list[str] = []
    for key, body in (
        ("prompt_file", prompt_text),
        ("memory_file", memory_text),
        ("plan_file", planning_text),
    ):
        name = paths[key]
        sections.append(
            f"=== CURRENT STATE OF {name} (you don't have to re-read it) ===\n"
            f"{body.rstrip()}\n"
            f"=== END OF {name} ==="
        )
    instructions = Template(catalog.loop("task_instructions")).safe_substitute(paths)
    return "\n\n".join(sections) + "\n\n" + instructions + "\n"


def _display_path(path: Path, root: Path) -> str:
    try:
        return f"./{path.relative_to(root).as_posix()}"
    except ValueError:
        return str(path)


# ---------------------------------------------------------------------------
# Main orchestrator
# ---------------------------------------------------------------------------


class TaskLoop:
    """Runs guarded agent iterations against the planning file.

    Parameters
    ----------
    config:
        Paths and limits for this workspace.
    transport:
        The agent back-end; a fresh :class:`AgentInvoker` wraps it for every
        iteration so a timed-out invocation never shares state with the next.
    reconciler:
        Callable ``(repo, task_text, session_id) -> CommitResult``.
    sleep:
        Awaitable delay used between iterations.
    catalog:
        Prompt templates.
    """

    def __init__(
        self,
        config: RalphioConfig,
        transport: AgentTransport,
        *,
        reconciler: Reconciler | None = None,
        sleep: Sleeper | None = None,
        catalog: PromptCatalog | None = None,
    ) -> None:
        if config.timeout_ms <= 0:
            raise ValueError("timeout_ms must be a positive integer")
        if config.max_iterations < 1:
            raise ValueError("max_iterations must be >= 1")
        if config.max_consecutive_failures < 1:
            raise ValueError("max_consecutive_failures must be >= 1")

        self.config = config
        self.transport = transport
        self.reconciler = reconciler or git_tools.reconcile
        self.sleep = sleep or asyncio.sleep
        self.catalog = catalog or get_catalog()

    @property
    def plan_path(self) -> Path:
        return task_store.resolve_plan_path(self.config)

    # ------------------------------------------------------------------
    # Public entry points
    # ------------------------------------------------------------------

    def has_work(self) -> bool:
        return task_store.has_unfinished_task(self.plan_path)

    async def run_once(self) -> IterationResult:
        """Run a single guarded iteration (no streak or ceiling logic)."""
        logger.info("Starting single iteration")
        result = await self.run_iteration(index=1)
        if result.success:
            logger.info("Single iteration completed successfully")
        else:
            logger.error("Single iteration failed: %s", result.error)
        return result

    async def run_until_done(self) -> LoopOutcome:
        """Iterate until the task list is empty or a stop condition fires."""
        cfg = self.config
        state = LoopState()
        iterations: list[IterationResult] = []

        if not self.has_work():
            logger.info("ALL TASKS ALREADY COMPLETED - nothing to do")
            return LoopOutcome(stop_reason=StopReason.DONE, iterations=iterations, state=state)

        while True:
            if not self.has_work():
                logger.info("ALL TASKS COMPLETED - no unchecked tasks remain")
                return LoopOutcome(stop_reason=StopReason.DONE, iterations=iterations, state=state)

            number = state.index + 1
            logger.info(_BANNER)
            logger.info("ITERATION %d/%d - Starting task execution...", number, cfg.max_iterations)
            logger.info(_BANNER)

            result = await self.run_iteration(index=number)
            iterations.append(result)
            state, stop = advance_state(
                state,
                result.success,
                max_consecutive_failures=cfg.max_consecutive_failures,
                max_iterations=cfg.max_iterations,
            )

            if result.success:
                logger.info("ITERATION %d COMPLETED SUCCESSFULLY", number)
                logger.info("Consecutive failures: 0 (reset)")
            else:
                logger.error("ITERATION %d FAILED", number)
                logger.error(
                    "Consecutive failures: %d/%d",
                    state.consecutive_failures,
                    cfg.max_consecutive_failures,
                )
                logger.error("Error: %s", result.error)

            if stop == StopReason.INSTABILITY:
                logger.critical(
                    "TERMINATION: %d consecutive failures reached. System appears unstable.",
                    state.consecutive_failures,
                )
                return LoopOutcome(stop_reason=stop, iterations=iterations, state=state)
            if stop == StopReason.EXHAUSTED:
                if not self.has_work():
                    logger.info("ALL TASKS COMPLETED on the final iteration")
                    return LoopOutcome(
                        stop_reason=StopReason.DONE, iterations=iterations, state=state
                    )
                logger.critical("TERMINATION: Reached maximum %d iterations", cfg.max_iterations)
                return LoopOutcome(stop_reason=stop, iterations=iterations, state=state)

            if result.success:
                logger.info("Preparing next iteration...")
                await self.sleep(cfg.success_delay_seconds)
            else:
                logger.info("Retrying next iteration...")
                await self.sleep(cfg.failure_delay_seconds)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def run_iteration(self, *, index: int) -> IterationResult:
        """Invoke the agent for the first unchecked task, then reconcile commits."""
        cfg = self.config
        plan_path = self.plan_path
        task = task_store.peek_first_unfinished_task(plan_path)
        if task is not None:
            logger.info("Current task: %s", task.text)
        lingering = abandoned_count()
        if lingering:
            logger.warning(
                "%d earlier invocation(s) past their deadline are still running", lingering
            )

        invoker = AgentInvoker(
            self.transport,
            cwd=cfg.root,
            memory_file=cfg.paths.memory_file,
            max_turns=cfg.max_turns,
        )
        try:
            prompt = self._load_prompt(plan_path)
            invocation = await with_timeout(invoker.invoke(prompt), cfg.timeout_ms)
        except InvocationTimeoutError as exc:
            logger.error(
                "Timed out after %dms. Try setting the LOOP_TIMEOUT_MS environment variable.",
                exc.timeout_ms,
            )
            return IterationResult(index=index, success=False, task=task, error=str(exc))
        except InvocationError as exc:
            logger.error("Invocation failed: %s", exc)
            return IterationResult(index=index, success=False, task=task, error=str(exc))

        if cfg.mark_completed and task is not None:
            task_store.mark_task_complete(plan_path, task)

        commit = await self._reconcile(task, invocation.session_id)
        return IterationResult(
            index=index,
            success=True,
            task=task,
            invocation=invocation,
            commit=commit,
        )

    def _load_prompt(self, plan_path: Path) -> str:
        paths = self.config.paths
        try:
            prompt_text = paths.prompt_file.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as exc:
            raise InvocationError(f"Cannot read prompt store {paths.prompt_file}: {exc}") from exc
        memory_text = self._read_context(paths.memory_file)
        planning_text = self._read_context(plan_path)
        return build_task_prompt(
            prompt_text,
            memory_text,
            planning_text,
            config=self.config,
            catalog=self.catalog,
        )

    @staticmethod
    def _read_context(path: Path) -> str:
        try:
            return read_text_or_empty(path)
        except (OSError, UnicodeDecodeError) as exc:
            logger.warning("Could not read %s: %s", path, exc)
            return ""

    async def _reconcile(self, task: TaskEntry | None, session_id: str | None) -> CommitResult:
        task_text = task.text if task is not None else _NO_TASK_LABEL
        commit = await asyncio.to_thread(self.reconciler, self.config.root, task_text, session_id)
        if commit.outcome == CommitOutcome.COMMIT_FAILED:
            logger.warning("Auto-commit failed, but task completed successfully: %s", commit.detail)
        elif commit.outcome == CommitOutcome.COMMITTED:
            logger.info("Committed: %s", commit.message)
        return commit
