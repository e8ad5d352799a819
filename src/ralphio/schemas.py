"""Pydantic models for structured data throughout ralphio."""

from __future__ import annotations

from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

# ---------------------------------------------------------------------------
# Task store
# ---------------------------------------------------------------------------


class TaskEntry(BaseModel):
    """One checkbox line of the planning file."""

    text: str
    completed: bool = False
    indent_level: int = 0
    line_number: int = 0


# ---------------------------------------------------------------------------
# Agent events
# ---------------------------------------------------------------------------


class UsageInfo(BaseModel):
    """Token usage reported by the agent's terminal event."""

    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0
    cost_usd: float = 0.0


class EventKind(str, Enum):
    """Normalized event types produced by an agent transport."""

    SESSION_STARTED = "session_started"
    PARTIAL_OUTPUT = "partial_output"
    TOOL_CALL = "tool_call"
    TOOL_RESULT = "tool_result"
    COMPLETED = "completed"


class AgentEvent(BaseModel):
    """A single normalized event from one agent invocation."""

    kind: EventKind
    session_id: str | None = None
    text: str | None = None
    tool_name: str | None = None
    params: dict[str, Any] | None = None
    ok: bool = True
    summary: str | None = None
    usage: UsageInfo | None = None

    @classmethod
    def session_started(cls, session_id: str, **kwargs: Any) -> AgentEvent:
        return cls(kind=EventKind.SESSION_STARTED, session_id=session_id, **kwargs)

    @classmethod
    def partial_output(cls, text: str, **kwargs: Any) -> AgentEvent:
        return cls(kind=EventKind.PARTIAL_OUTPUT, text=text, **kwargs)

    @classmethod
    def tool_call(cls, name: str, params: dict[str, Any] | None = None, **kwargs: Any) -> AgentEvent:
        return cls(kind=EventKind.TOOL_CALL, tool_name=name, params=params, **kwargs)

    @classmethod
    def tool_result(cls, name: str, ok: bool = True, **kwargs: Any) -> AgentEvent:
        return cls(kind=EventKind.TOOL_RESULT, tool_name=name, ok=ok, **kwargs)

    @classmethod
    def completed(cls, summary: str, **kwargs: Any) -> AgentEvent:
        return cls(kind=EventKind.COMPLETED, summary=summary, **kwargs)


class InvocationResult(BaseModel):
    """Aggregated result of one fully consumed agent invocation."""

    session_id: str | None = None
    summary: str = ""
    event_count: int = 0
    is_error: bool = False
    duration_seconds: float = 0.0
    usage: UsageInfo = Field(default_factory=UsageInfo)


# ---------------------------------------------------------------------------
# Commit reconciliation
# ---------------------------------------------------------------------------


class CommitOutcome(str, Enum):
    """What the commit reconciler did with the working tree."""

    COMMITTED = "committed"
    NOTHING_TO_COMMIT = "nothing_to_commit"
    COMMIT_FAILED = "commit_failed"


class CommitResult(BaseModel):
    """Transient result of one reconciliation pass; logged, never persisted."""

    outcome: CommitOutcome
    message: str = ""
    detail: str = ""


# ---------------------------------------------------------------------------
# Loop state
# ---------------------------------------------------------------------------


class StopReason(str, Enum):
    """Terminal state of a task loop."""

    DONE = "done"
    INSTABILITY = "instability"
    EXHAUSTED = "exhausted"

    @property
    def exit_code(self) -> int:
        return _EXIT_CODES[self]


_EXIT_CODES = {
    StopReason.DONE: 0,
    StopReason.INSTABILITY: 1,
    StopReason.EXHAUSTED: 2,
}


class LoopState(BaseModel):
    """In-memory iteration record owned by the loop controller."""

    index: int = 0
    consecutive_failures: int = 0


class IterationResult(BaseModel):
    """Outcome of one guarded iteration."""

    index: int
    success: bool
    task: TaskEntry | None = None
    invocation: InvocationResult | None = None
    commit: CommitResult | None = None
    error: str | None = None


class LoopOutcome(BaseModel):
    """Final report of a multi-iteration run."""

    stop_reason: StopReason
    iterations: list[IterationResult] = Field(default_factory=list)
    state: LoopState = Field(default_factory=LoopState)

    @property
    def exit_code(self) -> int:
        return self.stop_reason.exit_code
