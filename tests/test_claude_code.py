"""Unit tests for the Claude Code transport."""

from __future__ import annotations

import asyncio
import json
import sys
import textwrap
from pathlib import Path

import pytest

import ralphio.claude_code as claude_code
from ralphio.agent_runner import AgentInvoker, InvocationError
from ralphio.claude_code import (
    AgentNotFoundError,
    ClaudeCodeTransport,
    StreamJsonParser,
    extract_usage,
    resolve_claude_executable,
)
from ralphio.schemas import EventKind


class TestBuildCommand:
    def test_basic(self):
        transport = ClaudeCodeTransport(["claude"])
        cmd = transport.build_command(max_turns=200)
        assert cmd == [
            "claude",
            "-p",
            "--output-format",
            "stream-json",
            "--verbose",
            "--permission-mode",
            "bypassPermissions",
            "--max-turns",
            "200",
        ]

    def test_prompt_is_not_on_the_command_line(self):
        cmd = ClaudeCodeTransport(["claude"]).build_command(max_turns=1)
        assert all("task" not in part for part in cmd)

    def test_model_is_trimmed(self):
        transport = ClaudeCodeTransport(["claude"], model="  claude-sonnet  ")
        cmd = transport.build_command(max_turns=1)
        assert cmd[cmd.index("--model") + 1] == "claude-sonnet"

    def test_zero_max_turns_omits_flag(self):
        cmd = ClaudeCodeTransport(["claude"]).build_command(max_turns=0)
        assert "--max-turns" not in cmd


class TestResolveExecutable:
    def test_env_override_wins(self, monkeypatch):
        monkeypatch.setattr(claude_code.shutil, "which", lambda name: None)
        argv = resolve_claude_executable({"CLAUDE_CODE_EXECUTABLE": "/opt/claude/bin/claude"})
        assert argv == ["/opt/claude/bin/claude"]

    def test_claude_path_is_second_choice(self, monkeypatch):
        monkeypatch.setattr(claude_code.shutil, "which", lambda name: None)
        argv = resolve_claude_executable({"CLAUDE_PATH": '"/tools/claude"'})
        assert argv == ["/tools/claude"]

    def test_js_entrypoint_runs_through_node(self, monkeypatch):
        monkeypatch.setattr(
            claude_code.shutil,
            "which",
            lambda name: "/usr/bin/node" if name == "node" else None,
        )
        argv = resolve_claude_executable({"CLAUDE_CODE_EXECUTABLE": "/lib/claude/cli.js"})
        assert argv == ["/usr/bin/node", "/lib/claude/cli.js"]

    def test_falls_back_to_path_then_legacy_name(self, monkeypatch):
        found = {"claude-code": "/usr/local/bin/claude-code"}
        monkeypatch.setattr(claude_code.shutil, "which", lambda name: found.get(name))
        assert resolve_claude_executable({}) == ["/usr/local/bin/claude-code"]

        found["claude"] = "/usr/local/bin/claude"
        assert resolve_claude_executable({}) == ["/usr/local/bin/claude"]

    def test_missing_cli_raises_with_install_hint(self, monkeypatch):
        monkeypatch.setattr(claude_code.shutil, "which", lambda name: None)
        with pytest.raises(AgentNotFoundError, match="npm install -g @anthropic-ai/claude-code"):
            resolve_claude_executable({})

    def test_not_found_is_an_invocation_error(self):
        assert issubclass(AgentNotFoundError, InvocationError)


class TestStreamJsonParser:
    def test_init_event_starts_session(self):
        parser = StreamJsonParser()
        events = parser.parse_line(
            json.dumps({"type": "system", "subtype": "init", "session_id": "sess-42"})
        )
        assert [e.kind for e in events] == [EventKind.SESSION_STARTED]
        assert events[0].session_id == "sess-42"
        assert parser.session_id == "sess-42"

    def test_assistant_text_and_tool_use(self):
        parser = StreamJsonParser()
        events = parser.parse_event(
            {
                "type": "assistant",
                "message": {
                    "content": [
                        {"type": "text", "text": "Reading the plan"},
                        {
                            "type": "tool_use",
                            "id": "toolu_1",
                            "name": "Read",
                            "input": {"file_path": ".agent/planning.md"},
                        },
                    ]
                },
            }
        )
        assert [e.kind for e in events] == [EventKind.PARTIAL_OUTPUT, EventKind.TOOL_CALL]
        assert events[0].text == "Reading the plan"
        assert events[1].tool_name == "Read"
        assert events[1].params == {"file_path": ".agent/planning.md"}

    def test_tool_result_resolves_name_from_tool_use_id(self):
        parser = StreamJsonParser()
        parser.parse_event(
            {
                "type": "assistant",
                "message": {"content": [{"type": "tool_use", "id": "toolu_9", "name": "Bash"}]},
            }
        )
        events = parser.parse_event(
            {
                "type": "user",
                "message": {
                    "content": [{"type": "tool_result", "tool_use_id": "toolu_9", "is_error": True}]
                },
            }
        )
        assert len(events) == 1
        assert events[0].kind == EventKind.TOOL_RESULT
        assert events[0].tool_name == "Bash"
        assert events[0].ok is False

    def test_top_level_tool_result(self):
        events = StreamJsonParser().parse_event({"type": "tool_result", "tool_name": "Edit"})
        assert events[0].tool_name == "Edit"
        assert events[0].ok is True

    def test_result_becomes_completed_with_usage(self):
        events = StreamJsonParser().parse_event(
            {
                "type": "result",
                "subtype": "success",
                "is_error": False,
                "result": "Task finished",
                "session_id": "sess-7",
                "usage": {"input_tokens": 100, "output_tokens": 20},
                "total_cost_usd": 0.05,
            }
        )
        completed = events[0]
        assert completed.kind == EventKind.COMPLETED
        assert completed.summary == "Task finished"
        assert completed.session_id == "sess-7"
        assert completed.ok is True
        assert completed.usage.total_tokens == 120
        assert completed.usage.cost_usd == pytest.approx(0.05)

    def test_non_json_and_unknown_lines_are_dropped(self):
        parser = StreamJsonParser()
        assert parser.parse_line("not json at all") == []
        assert parser.parse_line("[1, 2, 3]") == []
        assert parser.parse_line(json.dumps({"type": "stream_event"})) == []

    def test_blank_text_blocks_are_skipped(self):
        events = StreamJsonParser().parse_event(
            {"type": "assistant", "message": {"content": [{"type": "text", "text": "   "}]}}
        )
        assert events == []


def test_extract_usage_counts_cache_tokens_and_ignores_bad_values():
    usage = extract_usage(
        {
            "usage": {
                "input_tokens": "10",
                "output_tokens": 5,
                "cache_read_input_tokens": 3,
                "cache_creation_input_tokens": -4,
            },
            "total_cost_usd": "nope",
        }
    )
    assert usage.input_tokens == 10
    assert usage.output_tokens == 5
    assert usage.total_tokens == 18
    assert usage.cost_usd == 0.0


def _fake_claude(tmp_path: Path, body: str) -> list[str]:
    script = tmp_path / "fake_claude.py"
    script.write_text(textwrap.dedent(body), encoding="utf-8")
    return [sys.executable, str(script)]


@pytest.mark.integration
def test_stream_runs_subprocess_and_normalizes_events(tmp_path: Path):
    argv = _fake_claude(
        tmp_path,
        """
        import json, sys
        prompt = sys.stdin.read()
        emit = lambda obj: print(json.dumps(obj), flush=True)
        emit({"type": "system", "subtype": "init", "session_id": "sess-fake01"})
        emit({"type": "assistant", "message": {"content": [{"type": "text", "text": "got " + str(len(prompt))}]}})
        print("warning: not json", flush=True)
        emit({"type": "result", "is_error": False, "result": "done: " + prompt})
        """,
    )
    memory = tmp_path / "memory.md"
    memory.write_text("", encoding="utf-8")
    invoker = AgentInvoker(ClaudeCodeTransport(argv), cwd=tmp_path, memory_file=memory)

    result = asyncio.run(invoker.invoke("hello"))

    assert result.session_id == "sess-fake01"
    assert result.summary == "done: hello"
    assert invoker.partial_output == ["got 5"]
    assert "<!-- Last session: sess-fake01 -->" in memory.read_text(encoding="utf-8")


@pytest.mark.integration
def test_stream_without_result_raises_with_stderr_tail(tmp_path: Path):
    argv = _fake_claude(
        tmp_path,
        """
        import sys
        sys.stdin.read()
        print("authentication failed", file=sys.stderr)
        sys.exit(3)
        """,
    )
    invoker = AgentInvoker(ClaudeCodeTransport(argv), cwd=tmp_path)

    with pytest.raises(InvocationError, match="authentication failed"):
        asyncio.run(invoker.invoke("hello"))


@pytest.mark.integration
def test_missing_binary_is_an_invocation_error(tmp_path: Path):
    transport = ClaudeCodeTransport([str(tmp_path / "does-not-exist")])
    with pytest.raises(InvocationError, match="Failed to execute claude"):
        asyncio.run(AgentInvoker(transport, cwd=tmp_path).invoke("hello"))
