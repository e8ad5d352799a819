"""Runtime configuration: workspace paths, limits, and environment overrides.

Paths default to the ``.agent/`` layout written by ``ralphio init`` and are
resolved against the working directory the CLI runs in.  A workspace may
override them through ``.agent/agent.config.json``.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from pathlib import Path

from pydantic import BaseModel, Field, ValidationError

logger = logging.getLogger(__name__)

AGENT_DIR_NAME = ".agent"
CONFIG_FILENAME = "agent.config.json"
TIMEOUT_ENV_VAR = "LOOP_TIMEOUT_MS"

DEFAULT_TIMEOUT_MS: int = 600_000
"""Overall deadline for one agent invocation."""

DEFAULT_MAX_ITERATIONS: int = 50
DEFAULT_MAX_CONSECUTIVE_FAILURES: int = 3
DEFAULT_MAX_TURNS: int = 200


class ConfigError(ValueError):
    """Raised when a configuration file cannot be used."""


class AgentPaths(BaseModel):
    """File-system locations of the task, memory and prompt stores."""

    agent_dir: Path = Path(AGENT_DIR_NAME)
    memory_file: Path = Path(AGENT_DIR_NAME) / "memory.md"
    plan_file: Path = Path(AGENT_DIR_NAME) / "planning.md"
    prompt_file: Path = Path(AGENT_DIR_NAME) / "prompt.md"
    artifacts_dir: Path = Path(AGENT_DIR_NAME) / "artifacts" / "loops"
    logs_dir: Path = Path(AGENT_DIR_NAME) / "logs"

    def resolved(self, root: Path) -> AgentPaths:
        """Return a copy with every relative path anchored at *root*."""
        values = {
            name: value if value.is_absolute() else (root / value)
            for name, value in self.model_dump().items()
        }
        return AgentPaths(**values)

    def to_json_dict(self) -> dict[str, str]:
        """Return the camelCase mapping stored in ``agent.config.json``."""
        out: dict[str, str] = {}
        for name, value in self.model_dump().items():
            out[_CAMEL_KEYS[name]] = value.as_posix() if value.is_absolute() else f"./{value.as_posix()}"
        return out


_CAMEL_KEYS = {
    "agent_dir": "agentDir",
    "memory_file": "memoryFile",
    "plan_file": "planFile",
    "prompt_file": "promptFile",
    "artifacts_dir": "artifactsDir",
    "logs_dir": "logsDir",
}


class RalphioConfig(BaseModel):
    """Everything the loop controller needs, injected at startup."""

    root: Path = Field(default_factory=Path.cwd)
    paths: AgentPaths = Field(default_factory=AgentPaths)
    agent: str = "claude_code"
    timeout_ms: int = DEFAULT_TIMEOUT_MS
    max_iterations: int = DEFAULT_MAX_ITERATIONS
    max_consecutive_failures: int = DEFAULT_MAX_CONSECUTIVE_FAILURES
    max_turns: int = DEFAULT_MAX_TURNS
    prd_max_turns: int = 1
    success_delay_seconds: float = 1.0
    failure_delay_seconds: float = 2.0
    mark_completed: bool = True

    @property
    def legacy_plan_file(self) -> Path:
        """Pre-``.agent/`` location of the planning file."""
        return self.root / "planning.md"


def timeout_from_env(
    env: Mapping[str, str] | None = None,
    default: int = DEFAULT_TIMEOUT_MS,
) -> int:
    """Return the ``LOOP_TIMEOUT_MS`` override, or *default* when unset or invalid."""
    source = os.environ if env is None else env
    raw = source.get(TIMEOUT_ENV_VAR)
    if raw is None or not raw.strip():
        return default
    try:
        value = int(raw.strip())
    except ValueError:
        value = 0
    if value <= 0:
        logger.warning("Invalid %s: %r. Using default %dms.", TIMEOUT_ENV_VAR, raw, default)
        return default
    return value


def _read_paths_override(config_path: Path) -> AgentPaths | None:
    """Parse the ``paths`` object of *config_path*; ``None`` when absent or unusable."""
    if not config_path.is_file():
        return None
    try:
        raw = config_path.read_text(encoding="utf-8")
        if not raw.strip():
            raise ConfigError("config file is empty")
        payload = _ConfigFile.model_validate_json(raw)
    except (OSError, ValidationError, ConfigError) as exc:
        logger.warning("Could not load %s, using default paths: %s", config_path, exc)
        return None
    return payload.to_paths()


class _ConfigFile(BaseModel):
    """On-disk shape of ``agent.config.json`` (camelCase keys)."""

    paths: dict[str, str] = Field(default_factory=dict)

    def to_paths(self) -> AgentPaths:
        by_camel = {camel: name for name, camel in _CAMEL_KEYS.items()}
        values: dict[str, Path] = {}
        for key, value in self.paths.items():
            name = by_camel.get(key, key)
            if name in _CAMEL_KEYS and str(value).strip():
                values[name] = Path(str(value).strip())
        return AgentPaths(**values)


def load_config(
    root: str | Path | None = None,
    env: Mapping[str, str] | None = None,
    **overrides: object,
) -> RalphioConfig:
    """Build a :class:`RalphioConfig` for the workspace at *root*.

    Precedence: keyword *overrides*, then ``LOOP_TIMEOUT_MS``, then the
    workspace's ``agent.config.json``, then built-in defaults.
    """
    root_path = Path(root or Path.cwd()).resolve()
    paths = _read_paths_override(root_path / AGENT_DIR_NAME / CONFIG_FILENAME) or AgentPaths()
    values: dict[str, object] = {
        "root": root_path,
        "paths": paths.resolved(root_path),
        "timeout_ms": timeout_from_env(env),
    }
    values.update(overrides)
    return RalphioConfig(**values)
