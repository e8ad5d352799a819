"""Shared pytest configuration: markers, execution ordering, workspace fixtures."""

from __future__ import annotations

import subprocess
from pathlib import Path

import pytest

import ralphio.prompts.catalog as catalog_module
from ralphio.config import RalphioConfig, load_config


def pytest_configure(config: pytest.Config) -> None:
    config.addinivalue_line("markers", "unit: fast isolated unit tests")
    config.addinivalue_line("markers", "integration: filesystem/subprocess integration tests")
    config.addinivalue_line("markers", "slow: tests that wait on real timers or processes")


def pytest_collection_modifyitems(items: list[pytest.Item]) -> None:
    """Run fast unit tests first, integration tests second, slow tests last."""

    def sort_key(item: pytest.Item) -> tuple[int, str]:
        if item.get_closest_marker("slow"):
            return (2, item.nodeid)
        if item.get_closest_marker("integration"):
            return (1, item.nodeid)
        return (0, item.nodeid)

    items.sort(key=sort_key)


@pytest.fixture(autouse=True)
def _isolated_environment(monkeypatch, tmp_path_factory):
    """Keep developer settings (env vars, prompt overrides) out of tests."""
    for var in ("LOOP_TIMEOUT_MS", "CLAUDE_CODE_EXECUTABLE", "CLAUDE_PATH"):
        monkeypatch.delenv(var, raising=False)
    no_overrides = tmp_path_factory.getbasetemp() / "no-prompt-overrides.yaml"
    monkeypatch.setattr(catalog_module, "_USER_OVERRIDE", no_overrides)
    monkeypatch.setattr(catalog_module, "_default_catalog", None)


def init_git_repo(repo: Path) -> Path:
    repo.mkdir(parents=True, exist_ok=True)
    for args in (
        ["git", "init"],
        ["git", "config", "user.name", "Test User"],
        ["git", "config", "user.email", "test@example.com"],
        ["git", "config", "commit.gpgsign", "false"],
    ):
        subprocess.run(args, cwd=repo, check=True, capture_output=True, text=True)
    (repo / "README.md").write_text("seed\n", encoding="utf-8")
    subprocess.run(["git", "add", "-A"], cwd=repo, check=True, capture_output=True, text=True)
    subprocess.run(
        ["git", "commit", "-m", "seed"],
        cwd=repo,
        check=True,
        capture_output=True,
        text=True,
    )
    return repo


@pytest.fixture
def git_repo(tmp_path: Path) -> Path:
    """A throwaway git repository with one seed commit."""
    return init_git_repo(tmp_path / "repo")


def write_workspace(root: Path, planning: str, *, prompt: str = "# Rules\n") -> RalphioConfig:
    """Create a minimal ``.agent/`` workspace and return its config."""
    agent = root / ".agent"
    agent.mkdir(parents=True, exist_ok=True)
    (agent / "planning.md").write_text(planning, encoding="utf-8")
    (agent / "memory.md").write_text("# MEMORY\n", encoding="utf-8")
    (agent / "prompt.md").write_text(prompt, encoding="utf-8")
    return load_config(root, env={})


@pytest.fixture
def make_workspace():
    """Factory fixture wrapping :func:`write_workspace`."""
    return write_workspace
