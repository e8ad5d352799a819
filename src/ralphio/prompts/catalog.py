"""Prompt catalog backed by ``templates.yaml``.

Supports a user-override file at ``~/.ralphio/prompt_overrides.yaml`` that
is merged on top of the built-in defaults.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import yaml

logger = logging.getLogger(__name__)

_BUILTIN_YAML = Path(__file__).resolve().parent / "templates.yaml"
_USER_OVERRIDE = Path.home() / ".ralphio" / "prompt_overrides.yaml"


def _load_yaml(path: Path) -> dict[str, Any]:
    """Load a YAML mapping, returning an empty dict on failure."""
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except (OSError, yaml.YAMLError) as exc:
        logger.warning("Failed to load %s: %s", path, exc)
        return {}
    if not isinstance(data, dict):
        logger.warning("Ignoring %s: top level is not a mapping", path)
        return {}
    return data


def _deep_merge(base: dict, override: dict) -> dict:
    """Recursively merge *override* into *base* (override wins)."""
    merged = dict(base)
    for k, v in override.items():
        if k in merged and isinstance(merged[k], dict) and isinstance(v, dict):
            merged[k] = _deep_merge(merged[k], v)
        else:
            merged[k] = v
    return merged


class PromptCatalog:
    """Loads and serves templates from the YAML catalog.

    Usage::

        catalog = PromptCatalog()
        system_prompt = catalog.workspace("prompt")
        instructions = catalog.loop("task_instructions")
    """

    def __init__(self, extra_path: Path | None = None) -> None:
        self._data: dict[str, Any] = {}
        self._extra_path = extra_path
        self._load()

    def _load(self) -> None:
        """Load built-in templates, then merge user overrides."""
        extra_path = self._extra_path
        self._data = _load_yaml(_BUILTIN_YAML)

        if _USER_OVERRIDE.exists():
            overrides = _load_yaml(_USER_OVERRIDE)
            if overrides:
                self._data = _deep_merge(self._data, overrides)
                logger.info("Loaded prompt overrides from %s", _USER_OVERRIDE)

        if extra_path and extra_path.exists():
            extra = _load_yaml(extra_path)
            if extra:
                self._data = _deep_merge(self._data, extra)
                logger.info("Loaded extra prompts from %s", extra_path)

    def reload(self) -> None:
        """Re-read all YAML files from disk."""
        self._load()

    def _section(self, section: str, key: str) -> str:
        entry = self._data.get(section, {})
        value = entry.get(key) if isinstance(entry, dict) else None
        if not isinstance(value, str) or not value.strip():
            raise KeyError(f"No template '{section}.{key}' in prompt catalog")
        return value

    def workspace(self, key: str) -> str:
        """Return a workspace file template (``memory``, ``planning``, ``prompt``)."""
        return self._section("workspace", key)

    def loop(self, key: str) -> str:
        """Return a loop prompt fragment by key."""
        return self._section("loop", key).strip()

    def prd(self, key: str) -> str:
        """Return a PRD-parsing prompt fragment by key."""
        return self._section("prd", key).strip()


_default_catalog: PromptCatalog | None = None


def get_catalog() -> PromptCatalog:
    """Return the module-level singleton catalog (lazy-loaded)."""
    global _default_catalog
    if _default_catalog is None:
        _default_catalog = PromptCatalog()
    return _default_catalog
