"""Transport for the Anthropic Claude Code CLI (``claude``)."""

from __future__ import annotations

import asyncio
import json
import logging
import math
import os
import shutil
from collections import deque
from collections.abc import AsyncIterator, Mapping
from pathlib import Path
from typing import Any

from ralphio.agent_runner import AgentTransport, InvocationError, register_transport
from ralphio.schemas import AgentEvent, EventKind, UsageInfo

logger = logging.getLogger(__name__)

EXECUTABLE_ENV_VARS = ("CLAUDE_CODE_EXECUTABLE", "CLAUDE_PATH")
PRIMARY_BINARY = "claude"
LEGACY_BINARY = "claude-code"
INSTALL_HINT = (
    "Claude Code CLI not found. Install it with "
    "'npm install -g @anthropic-ai/claude-code' or set CLAUDE_CODE_EXECUTABLE "
    "to the CLI path."
)

_STREAM_LIMIT_BYTES = 16 * 1024 * 1024
_STDERR_TAIL_LINES = 200
_TERMINATE_GRACE_SECONDS = 5.0


class AgentNotFoundError(InvocationError):
    """Raised when no Claude Code executable can be resolved."""


def _expand(value: str) -> str:
    expanded = os.path.expandvars(os.path.expanduser(str(value or "").strip()))
    if len(expanded) >= 2 and expanded[0] == expanded[-1] and expanded[0] in {"'", '"'}:
        # Accept copy/paste paths wrapped in shell quotes.
        expanded = expanded[1:-1].strip()
    return expanded


def resolve_claude_executable(env: Mapping[str, str] | None = None) -> list[str]:
    """Return the argv prefix that launches Claude Code.

    Lookup order: ``CLAUDE_CODE_EXECUTABLE``, ``CLAUDE_PATH``, ``claude`` on
    ``PATH``, then the legacy ``claude-code`` name.  A ``.js`` entrypoint is
    launched through ``node``.
    """
    source = os.environ if env is None else env
    for var in EXECUTABLE_ENV_VARS:
        candidate = _expand(source.get(var, ""))
        if candidate:
            return _launcher_for(shutil.which(candidate) or candidate)

    for name in (PRIMARY_BINARY, LEGACY_BINARY):
        resolved = shutil.which(name)
        if resolved:
            return _launcher_for(resolved)

    raise AgentNotFoundError(INSTALL_HINT)


def _launcher_for(path: str) -> list[str]:
    if path.lower().endswith((".js", ".mjs", ".cjs")):
        return [shutil.which("node") or "node", path]
    return [path]


def coerce_int(value: Any) -> int:
    """Best-effort integer coercion for loosely typed CLI payloads."""
    if value is None or isinstance(value, bool):
        return 0
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value) if math.isfinite(value) else 0
    if isinstance(value, str):
        cleaned = value.strip().replace(",", "")
        try:
            return int(float(cleaned)) if cleaned else 0
        except (ValueError, OverflowError):
            return 0
    return 0


class ClaudeCodeTransport(AgentTransport):
    """Spawn ``claude -p`` and normalize its ``stream-json`` output.

    Claude Code's non-interactive streaming mode emits one JSON object per
    line::

        {"type": "system", "subtype": "init", "session_id": "..."}
        {"type": "assistant", "message": {"content": [...]}}
        {"type": "user", "message": {"content": [{"type": "tool_result", ...}]}}
        {"type": "result", "result": "...", "is_error": false, "usage": {...}}

    Parameters
    ----------
    executable:
        Explicit argv prefix; resolved from the environment when omitted.
    permission_mode:
        Value for ``--permission-mode``.  The loop runs unattended, so the
        default bypasses interactive permission prompts.
    env_overrides:
        Extra environment variables forwarded to the child process.
    model:
        Optional ``--model`` override.
    """

    name = "Claude Code"

    def __init__(
        self,
        executable: list[str] | None = None,
        *,
        permission_mode: str = "bypassPermissions",
        env_overrides: dict[str, str] | None = None,
        model: str = "",
    ) -> None:
        self._executable = list(executable) if executable else None
        self.permission_mode = permission_mode
        self.env_overrides = env_overrides or {}
        self.model = (model or "").strip()

    @property
    def executable(self) -> list[str]:
        if self._executable is None:
            self._executable = resolve_claude_executable()
        return self._executable

    def check_available(self) -> None:
        """Resolve the CLI now; raises :class:`AgentNotFoundError` when missing."""
        logger.debug("Using Claude Code executable: %s", " ".join(self.executable))

    def build_command(self, *, max_turns: int) -> list[str]:
        cmd = [
            *self.executable,
            "-p",
            "--output-format",
            "stream-json",
            "--verbose",
            "--permission-mode",
            self.permission_mode,
        ]
        if max_turns > 0:
            cmd.extend(["--max-turns", str(max_turns)])
        if self.model:
            cmd.extend(["--model", self.model])
        return cmd

    async def stream(
        self,
        prompt: str,
        *,
        cwd: Path,
        max_turns: int,
    ) -> AsyncIterator[AgentEvent]:
        cmd = self.build_command(max_turns=max_turns)
        logger.debug("Launching %s (cwd=%s, prompt_len=%d)", cmd[0], cwd, len(prompt))
        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                cwd=str(cwd),
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env={**os.environ, **self.env_overrides},
                limit=_STREAM_LIMIT_BYTES,
                start_new_session=os.name != "nt",
            )
        except OSError as exc:
            raise InvocationError(f"Failed to execute claude: {exc}") from exc

        stderr_lines: deque[str] = deque(maxlen=_STDERR_TAIL_LINES)
        stderr_task = asyncio.ensure_future(_drain_lines(proc.stderr, stderr_lines))
        parser = StreamJsonParser()
        completed = False
        try:
            await _feed_stdin(proc, prompt)
            assert proc.stdout is not None
            while True:
                raw = await proc.stdout.readline()
                if not raw:
                    break
                line = raw.decode("utf-8", errors="replace").strip()
                if not line:
                    continue
                for event in parser.parse_line(line):
                    if event.kind == EventKind.COMPLETED:
                        completed = True
                    yield event

            returncode = await proc.wait()
            await stderr_task
        finally:
            if proc.returncode is None:
                await _terminate(proc)
            if not stderr_task.done():
                stderr_task.cancel()

        stderr_text = "\n".join(stderr_lines).strip()
        if not completed:
            detail = stderr_text[-2000:] if stderr_text else "no error output"
            raise InvocationError(
                f"Claude Code exited with status {returncode} without a result event: {detail}"
            )
        if returncode != 0:
            logger.warning("Claude Code exited with status %d after completing", returncode)


class StreamJsonParser:
    """Stateful normalizer for Claude Code ``stream-json`` lines.

    Keeps the tool-use id -> tool name map so that tool results, which only
    carry the id, can be reported by name.
    """

    def __init__(self) -> None:
        self.session_id: str | None = None
        self._tool_names: dict[str, str] = {}

    def parse_line(self, line: str) -> list[AgentEvent]:
        try:
            data = json.loads(line)
        except json.JSONDecodeError:
            logger.debug("Non-JSON line from claude: %s", line[:200])
            return []
        if not isinstance(data, dict):
            return []
        return self.parse_event(data)

    def parse_event(self, data: dict[str, Any]) -> list[AgentEvent]:
        etype = str(data.get("type") or "").strip().lower()

        if etype == "system":
            session_id = data.get("session_id")
            if data.get("subtype") == "init" and isinstance(session_id, str) and session_id:
                self.session_id = session_id
                return [AgentEvent.session_started(session_id)]
            return []

        if etype == "assistant":
            return self._assistant_events(data)

        if etype == "user":
            return self._tool_result_events(data)

        if etype == "tool_result":
            name = data.get("tool_name") or self._tool_names.get(str(data.get("tool_use_id")), "unknown")
            return [AgentEvent.tool_result(str(name), ok=not data.get("is_error"))]

        if etype == "result":
            return [self._completed_event(data)]

        logger.debug("Unhandled claude event type: %s", etype or "<missing>")
        return []

    def _assistant_events(self, data: dict[str, Any]) -> list[AgentEvent]:
        events: list[AgentEvent] = []
        for block in _content_blocks(data):
            block_type = block.get("type")
            if block_type == "text":
                text = str(block.get("text") or "")
                if text.strip():
                    events.append(AgentEvent.partial_output(text, session_id=self.session_id))
            elif block_type == "tool_use":
                name = str(block.get("name") or "unknown")
                tool_id = block.get("id")
                if tool_id:
                    self._tool_names[str(tool_id)] = name
                params = block.get("input")
                events.append(
                    AgentEvent.tool_call(
                        name,
                        params if isinstance(params, dict) else None,
                        session_id=self.session_id,
                    )
                )
        return events

    def _tool_result_events(self, data: dict[str, Any]) -> list[AgentEvent]:
        events: list[AgentEvent] = []
        for block in _content_blocks(data):
            if block.get("type") != "tool_result":
                continue
            name = self._tool_names.get(str(block.get("tool_use_id")), "unknown")
            events.append(
                AgentEvent.tool_result(
                    name,
                    ok=not block.get("is_error"),
                    session_id=self.session_id,
                )
            )
        return events

    def _completed_event(self, data: dict[str, Any]) -> AgentEvent:
        result = data.get("result")
        if isinstance(result, dict):
            summary = str(result.get("text") or result.get("content") or "")
        else:
            summary = str(result or "")
        return AgentEvent.completed(
            summary,
            session_id=data.get("session_id") or self.session_id,
            ok=not data.get("is_error"),
            usage=extract_usage(data),
        )


def _content_blocks(data: dict[str, Any]) -> list[dict[str, Any]]:
    message = data.get("message")
    content = message.get("content") if isinstance(message, dict) else None
    if isinstance(content, str):
        return [{"type": "text", "text": content}]
    if isinstance(content, list):
        return [block for block in content if isinstance(block, dict)]
    return []


def extract_usage(data: dict[str, Any]) -> UsageInfo:
    """Extract token usage from a Claude Code result event."""
    usage_raw = data.get("usage")
    if not isinstance(usage_raw, dict):
        usage_raw = {}

    input_tokens = max(0, coerce_int(usage_raw.get("input_tokens")))
    output_tokens = max(0, coerce_int(usage_raw.get("output_tokens")))
    cache_read = max(0, coerce_int(usage_raw.get("cache_read_input_tokens")))
    cache_creation = max(0, coerce_int(usage_raw.get("cache_creation_input_tokens")))

    cost = data.get("total_cost_usd")
    try:
        cost_usd = max(0.0, float(cost)) if cost is not None else 0.0
    except (TypeError, ValueError):
        cost_usd = 0.0

    return UsageInfo(
        input_tokens=input_tokens,
        output_tokens=output_tokens,
        total_tokens=input_tokens + output_tokens + cache_read + cache_creation,
        cost_usd=cost_usd,
    )


async def _feed_stdin(proc: asyncio.subprocess.Process, prompt: str) -> None:
    if proc.stdin is None:
        return
    try:
        proc.stdin.write(prompt.encode("utf-8"))
        await proc.stdin.drain()
    except (BrokenPipeError, ConnectionResetError):
        logger.debug("claude closed stdin before the prompt was fully written")
    finally:
        proc.stdin.close()


async def _drain_lines(stream: asyncio.StreamReader | None, sink: deque[str]) -> None:
    if stream is None:
        return
    while True:
        raw = await stream.readline()
        if not raw:
            return
        line = raw.decode("utf-8", errors="replace").rstrip()
        if line:
            sink.append(line)
            logger.debug("claude stderr: %s", line)


async def _terminate(proc: asyncio.subprocess.Process) -> None:
    """Graceful terminate first, then force-kill if still alive."""
    try:
        proc.terminate()
    except ProcessLookupError:
        return
    try:
        await asyncio.wait_for(proc.wait(), timeout=_TERMINATE_GRACE_SECONDS)
    except asyncio.TimeoutError:
        logger.warning("claude did not exit after terminate; forcing kill.")
        try:
            proc.kill()
        except ProcessLookupError:
            return
        await proc.wait()


# ── Register with the transport registry ─────────────────────────
register_transport("claude_code", ClaudeCodeTransport)
