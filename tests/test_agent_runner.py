"""Tests for transport registry helpers and the invocation adapter."""

from __future__ import annotations

import asyncio
from pathlib import Path

import pytest

import ralphio.agent_runner as agent_runner_module
from ralphio.agent_runner import (
    AgentInvoker,
    AgentTransport,
    InvocationError,
    get_transport_class,
    list_transports,
    register_transport,
)
from ralphio.schemas import AgentEvent, UsageInfo


class _ScriptedTransport(AgentTransport):
    name = "scripted"

    def __init__(self, events: list[AgentEvent] | None = None, *, fail_with: Exception | None = None):
        self.events = list(events or [])
        self.fail_with = fail_with
        self.calls: list[dict] = []

    async def stream(self, prompt: str, *, cwd: Path, max_turns: int):
        self.calls.append({"prompt": prompt, "cwd": cwd, "max_turns": max_turns})
        for event in self.events:
            yield event
        if self.fail_with is not None:
            raise self.fail_with


def _run(coro):
    return asyncio.run(coro)


def test_register_get_and_list_transports(monkeypatch) -> None:
    monkeypatch.setattr(agent_runner_module, "_REGISTRY", {})

    register_transport("b", _ScriptedTransport)
    register_transport("a", _ScriptedTransport)

    assert get_transport_class("a") is _ScriptedTransport
    assert list_transports() == ["a", "b"]


def test_get_transport_class_raises_helpful_error(monkeypatch) -> None:
    monkeypatch.setattr(agent_runner_module, "_REGISTRY", {})
    with pytest.raises(KeyError, match=r"Unknown agent 'missing'. Available: \(none\)"):
        get_transport_class("missing")

    register_transport("claude_code", _ScriptedTransport)
    with pytest.raises(KeyError, match=r"Available: claude_code"):
        get_transport_class("missing")


def test_register_transport_validates_inputs(monkeypatch) -> None:
    monkeypatch.setattr(agent_runner_module, "_REGISTRY", {})
    with pytest.raises(ValueError, match="non-empty"):
        register_transport("  ", _ScriptedTransport)
    with pytest.raises(TypeError):
        register_transport("x", object)  # type: ignore[arg-type]

    class _Other(_ScriptedTransport):
        pass

    register_transport("x", _ScriptedTransport)
    register_transport("x", _ScriptedTransport)
    with pytest.raises(ValueError, match="already registered"):
        register_transport("x", _Other)


def test_claude_code_transport_is_registered_by_default() -> None:
    import ralphio.claude_code  # noqa: F401

    assert "claude_code" in list_transports()


class TestAgentInvoker:
    def test_returns_completed_summary_and_session(self, tmp_path: Path) -> None:
        memory = tmp_path / "memory.md"
        memory.write_text("# MEMORY\n", encoding="utf-8")
        transport = _ScriptedTransport(
            [
                AgentEvent.session_started("sess-abc123"),
                AgentEvent.partial_output("Working on it"),
                AgentEvent.tool_call("Edit", {"file_path": "app.py"}),
                AgentEvent.tool_result("Edit", ok=True),
                AgentEvent.completed(
                    "All done",
                    usage=UsageInfo(input_tokens=10, output_tokens=5, total_tokens=15),
                ),
            ]
        )
        invoker = AgentInvoker(transport, cwd=tmp_path, memory_file=memory, max_turns=7)

        result = _run(invoker.invoke("do the task"))

        assert result.summary == "All done"
        assert result.session_id == "sess-abc123"
        assert result.event_count == 5
        assert result.is_error is False
        assert result.usage.total_tokens == 15
        assert transport.calls == [{"prompt": "do the task", "cwd": tmp_path, "max_turns": 7}]

    def test_breadcrumb_is_appended_once(self, tmp_path: Path) -> None:
        memory = tmp_path / "memory.md"
        memory.write_text("# MEMORY\n", encoding="utf-8")
        transport = _ScriptedTransport(
            [
                AgentEvent.session_started("sess-1"),
                AgentEvent.session_started("sess-1"),
                AgentEvent.completed("ok"),
            ]
        )

        _run(AgentInvoker(transport, cwd=tmp_path, memory_file=memory).invoke("p"))

        text = memory.read_text(encoding="utf-8")
        assert text == "# MEMORY\n\n<!-- Last session: sess-1 -->\n"

    def test_no_breadcrumb_without_memory_file(self, tmp_path: Path) -> None:
        transport = _ScriptedTransport(
            [AgentEvent.session_started("s"), AgentEvent.completed("ok")]
        )
        result = _run(AgentInvoker(transport, cwd=tmp_path).invoke("p"))
        assert result.session_id == "s"
        assert list(tmp_path.iterdir()) == []

    def test_missing_completion_raises_invocation_error(self, tmp_path: Path) -> None:
        transport = _ScriptedTransport(
            [AgentEvent.session_started("s"), AgentEvent.partial_output("halfway")]
        )
        with pytest.raises(InvocationError, match="without a completion event"):
            _run(AgentInvoker(transport, cwd=tmp_path).invoke("p"))

    def test_transport_failure_is_wrapped(self, tmp_path: Path) -> None:
        transport = _ScriptedTransport(fail_with=ConnectionResetError("pipe closed"))
        with pytest.raises(InvocationError, match="pipe closed") as exc_info:
            _run(AgentInvoker(transport, cwd=tmp_path).invoke("p"))
        assert isinstance(exc_info.value.__cause__, ConnectionResetError)

    def test_invocation_error_passes_through_unwrapped(self, tmp_path: Path) -> None:
        original = InvocationError("agent exited with code 1")
        transport = _ScriptedTransport(fail_with=original)
        with pytest.raises(InvocationError) as exc_info:
            _run(AgentInvoker(transport, cwd=tmp_path).invoke("p"))
        assert exc_info.value is original

    def test_events_after_completion_are_ignored(self, tmp_path: Path) -> None:
        transport = _ScriptedTransport(
            [
                AgentEvent.completed("first"),
                AgentEvent.partial_output("stray output"),
                AgentEvent.completed("second"),
            ]
        )
        invoker = AgentInvoker(transport, cwd=tmp_path)
        result = _run(invoker.invoke("p"))
        assert result.summary == "first"
        assert invoker.partial_output == []

    def test_streams_each_output_line_to_the_log(self, tmp_path: Path, caplog) -> None:
        transport = _ScriptedTransport(
            [
                AgentEvent.session_started("s"),
                AgentEvent.partial_output("line one\n\nline two"),
                AgentEvent.tool_call("Bash", {"command": "pytest -q"}),
                AgentEvent.tool_result("Bash", ok=False),
                AgentEvent.completed("done"),
            ]
        )
        invoker = AgentInvoker(transport, cwd=tmp_path)
        with caplog.at_level("INFO", logger="ralphio.agent_runner"):
            _run(invoker.invoke("p"))

        messages = [record.getMessage() for record in caplog.records]
        assert "line one" in messages
        assert "line two" in messages
        assert 'TOOL CALL: Bash | Params: {"command": "pytest -q"}' in messages
        assert "TOOL RESULT: Bash | ERROR" in messages
        assert invoker.partial_output == ["line one", "line two"]

    def test_error_result_is_flagged(self, tmp_path: Path) -> None:
        transport = _ScriptedTransport([AgentEvent.completed("max turns", ok=False)])
        result = _run(AgentInvoker(transport, cwd=tmp_path).invoke("p"))
        assert result.is_error is True
