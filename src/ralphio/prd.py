"""Turn a product requirements document into checkbox tasks in the plan file."""

from __future__ import annotations

import datetime as dt
import logging
from pathlib import Path

from ralphio.agent_runner import AgentInvoker, AgentTransport, InvocationError
from ralphio.config import RalphioConfig
from ralphio.file_io import append_text
from ralphio.prompts import PromptCatalog, get_catalog
from ralphio.timeouts import with_timeout

logger = logging.getLogger(__name__)


class PrdError(RuntimeError):
    """Raised when tasks cannot be generated from a PRD."""


def build_prd_prompt(
    prd_text: str,
    planning_text: str,
    *,
    plan_name: str = "planning.md",
    catalog: PromptCatalog | None = None,
) -> str:
    catalog = catalog or get_catalog()
    return (
        f"{catalog.prd('parse')}\n\n"
        f"PRD Content:\n{prd_text}\n\n"
        f"Current {plan_name} (for context - avoid duplicates):\n{planning_text}\n\n"
        f"{catalog.prd('output_rules')}"
    )


def section_heading(day: dt.date) -> str:
    return f"## Tasks from PRD ({day.isoformat()})"


async def parse_prd(
    config: RalphioConfig,
    prd_file: str | Path,
    transport: AgentTransport,
    *,
    catalog: PromptCatalog | None = None,
    today: dt.date | None = None,
) -> str:
    """Generate tasks for *prd_file* and append them to the plan file.

    Returns the generated task text.  Raises :class:`PrdError` when either
    input file is missing, the invocation fails, or the agent produced no
    output.  No session breadcrumb is written.
    """
    prd_path = Path(prd_file)
    if not prd_path.is_absolute():
        prd_path = config.root / prd_path
    plan_path = config.paths.plan_file

    if not prd_path.is_file():
        raise PrdError(f"PRD file not found: {prd_path}")
    if not plan_path.is_file():
        raise PrdError(f"{plan_path} not found. Run 'ralphio init' first.")

    try:
        prd_text = prd_path.read_text(encoding="utf-8")
        planning_text = plan_path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as exc:
        raise PrdError(f"Could not read inputs: {exc}") from exc
    logger.info("Reading PRD from %s", prd_path)

    prompt = build_prd_prompt(
        prd_text,
        planning_text,
        plan_name=plan_path.name,
        catalog=catalog,
    )
    invoker = AgentInvoker(transport, cwd=config.root, max_turns=config.prd_max_turns)

    logger.info("Analyzing PRD and generating tasks...")
    try:
        result = await with_timeout(invoker.invoke(prompt), config.timeout_ms)
    except (InvocationError, TimeoutError) as exc:
        raise PrdError(f"Failed to generate tasks from PRD: {exc}") from exc

    if result.is_error:
        raise PrdError(f"Agent reported an error: {result.summary.strip() or 'no details'}")
    generated = result.summary.strip() or "\n".join(invoker.partial_output).strip()
    if not generated:
        raise PrdError("Failed to generate tasks from PRD: the agent returned no output")

    day = today or dt.datetime.now(dt.timezone.utc).date()
    try:
        append_text(plan_path, f"\n\n{section_heading(day)}\n{generated}\n")
    except OSError as exc:
        raise PrdError(f"Could not update {plan_path}: {exc}") from exc

    logger.info("Tasks successfully added to %s", plan_path)
    return generated
