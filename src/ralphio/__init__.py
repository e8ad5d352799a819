"""ralphio - run a coding agent against a checkbox task list, one task per loop."""

from importlib.metadata import PackageNotFoundError, version

from ralphio.schemas import AgentEvent, InvocationResult, LoopOutcome, StopReason, TaskEntry

__all__ = ["AgentEvent", "InvocationResult", "LoopOutcome", "StopReason", "TaskEntry"]

try:
    __version__ = version("ralphio")
except PackageNotFoundError:
    __version__ = "0.0.0"
