"""Create the ``.agent/`` workspace that the loop reads and updates."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path

from ralphio.config import AGENT_DIR_NAME, CONFIG_FILENAME, AgentPaths
from ralphio.file_io import atomic_write_text
from ralphio.prompts import PromptCatalog, get_catalog

logger = logging.getLogger(__name__)


class ScaffoldError(OSError):
    """Raised when the workspace cannot be written."""


@dataclass
class ScaffoldResult:
    """Outcome of :func:`init_workspace`."""

    agent_dir: Path
    created: bool
    files: list[Path] = field(default_factory=list)


def init_workspace(root: str | Path, *, catalog: PromptCatalog | None = None) -> ScaffoldResult:
    """Write the default workspace under *root*.

    An existing ``.agent/`` directory is left untouched and reported with
    ``created=False``.
    """
    root_path = Path(root).resolve()
    paths = AgentPaths()
    resolved = paths.resolved(root_path)
    agent_dir = resolved.agent_dir

    if agent_dir.exists():
        logger.info("%s already exists, not overwriting", agent_dir)
        return ScaffoldResult(agent_dir=agent_dir, created=False)

    catalog = catalog or get_catalog()
    config_payload = {"paths": paths.to_json_dict()}
    files = {
        agent_dir / CONFIG_FILENAME: json.dumps(config_payload, indent=2) + "\n",
        resolved.memory_file: catalog.workspace("memory"),
        resolved.plan_file: catalog.workspace("planning"),
        resolved.prompt_file: catalog.workspace("prompt"),
    }

    try:
        for directory in (agent_dir, resolved.artifacts_dir, resolved.logs_dir):
            directory.mkdir(parents=True, exist_ok=True)
            logger.debug("Created directory %s", directory)
        for path, content in files.items():
            atomic_write_text(path, content)
            logger.debug("Wrote %s", path)
    except OSError as exc:
        raise ScaffoldError(f"Failed to initialize {AGENT_DIR_NAME}/: {exc}") from exc

    logger.info("Initialized workspace in %s", agent_dir)
    return ScaffoldResult(agent_dir=agent_dir, created=True, files=list(files))
