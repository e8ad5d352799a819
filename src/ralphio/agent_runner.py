"""Agent transports and the invocation adapter that consumes them.

A transport turns one prompt into an ordered async stream of
:class:`~ralphio.schemas.AgentEvent` objects.  :class:`AgentInvoker` drains
that stream one event at a time, mirrors each event to the log, records the
session breadcrumb in the memory store, and returns the terminal summary.
"""

from __future__ import annotations

import abc
import json
import logging
import time
from collections.abc import AsyncIterator
from pathlib import Path

from ralphio.file_io import append_text
from ralphio.schemas import AgentEvent, EventKind, InvocationResult, UsageInfo

logger = logging.getLogger(__name__)

_MAX_LOGGED_PARAMS_CHARS = 400


class InvocationError(RuntimeError):
    """Raised when an agent invocation fails without a terminal event."""


class AgentTransport(abc.ABC):
    """Common interface for agent back-ends.

    Subclasses implement :meth:`stream`, an async generator yielding
    normalized events: ``SessionStarted`` first, ``Completed`` last.
    """

    #: Human-readable name used in log messages.
    name: str = "base"

    def check_available(self) -> None:
        """Raise :class:`InvocationError` when the back-end cannot be started."""

    @abc.abstractmethod
    def stream(
        self,
        prompt: str,
        *,
        cwd: Path,
        max_turns: int,
    ) -> AsyncIterator[AgentEvent]:
        """Start one invocation and yield its events in order.

        Parameters
        ----------
        prompt:
            Full prompt text, forwarded verbatim.
        cwd:
            Working directory the agent operates in.
        max_turns:
            Upper bound on the agent's internal turns.
        """


# ── Registry ──────────────────────────────────────────────────────

_REGISTRY: dict[str, type[AgentTransport]] = {}


def register_transport(key: str, cls: type[AgentTransport]) -> None:
    """Register a transport class under a lookup key."""
    normalized_key = (key or "").strip()
    if not normalized_key:
        raise ValueError("Transport key must be a non-empty string")
    if not isinstance(cls, type) or not issubclass(cls, AgentTransport):
        raise TypeError("Registered transport must be an AgentTransport subclass")

    existing = _REGISTRY.get(normalized_key)
    if existing is not None and existing is not cls:
        raise ValueError(
            f"Transport '{normalized_key}' is already registered with {existing.__name__}"
        )

    _REGISTRY[normalized_key] = cls


def get_transport_class(key: str) -> type[AgentTransport]:
    """Look up a registered transport class by key."""
    normalized_key = (key or "").strip()
    if normalized_key not in _REGISTRY:
        available = ", ".join(sorted(_REGISTRY)) or "(none)"
        raise KeyError(f"Unknown agent '{normalized_key}'. Available: {available}")
    return _REGISTRY[normalized_key]


def list_transports() -> list[str]:
    """Return all registered transport keys."""
    return sorted(_REGISTRY)


# ── Invocation adapter ────────────────────────────────────────────


class AgentInvoker:
    """Run one prompt through a transport and reduce it to a single result.

    Parameters
    ----------
    transport:
        The agent back-end.
    cwd:
        Working directory handed to the transport.
    memory_file:
        Memory store that receives the ``Last session`` breadcrumb.  ``None``
        disables breadcrumbs (used for PRD parsing).
    max_turns:
        Default turn limit for :meth:`invoke`.
    """

    def __init__(
        self,
        transport: AgentTransport,
        *,
        cwd: str | Path,
        memory_file: Path | None = None,
        max_turns: int = 200,
    ) -> None:
        self.transport = transport
        self.cwd = Path(cwd)
        self.memory_file = memory_file
        self.max_turns = max_turns
        self.session_id: str | None = None
        self.partial_output: list[str] = []

    async def invoke(self, prompt: str, *, max_turns: int | None = None) -> InvocationResult:
        """Consume the full event stream and return the terminal summary.

        Raises :class:`InvocationError` when the stream fails or ends
        without a ``Completed`` event.
        """
        self.session_id = None
        self.partial_output = []
        start = time.monotonic()
        completed: AgentEvent | None = None
        count = 0

        stream = self.transport.stream(
            prompt,
            cwd=self.cwd,
            max_turns=self.max_turns if max_turns is None else max_turns,
        )
        try:
            async for event in stream:
                count += 1
                if completed is not None:
                    logger.debug("Ignoring %s event after completion", event.kind.value)
                    continue
                self._handle(event)
                if event.kind == EventKind.COMPLETED:
                    completed = event
        except InvocationError:
            raise
        except Exception as exc:
            raise InvocationError(f"{self.transport.name} invocation failed: {exc}") from exc

        if completed is None:
            raise InvocationError(
                f"{self.transport.name} stream ended without a completion event "
                f"(session={self.session_id or 'none'}, events={count})"
            )

        logger.info("Task execution completed. Session: %s", self.session_id)
        return InvocationResult(
            session_id=self.session_id,
            summary=completed.summary or "",
            event_count=count,
            is_error=not completed.ok,
            duration_seconds=time.monotonic() - start,
            usage=completed.usage or UsageInfo(),
        )

    def _handle(self, event: AgentEvent) -> None:
        if event.kind == EventKind.SESSION_STARTED:
            if self.session_id is None and event.session_id:
                self.session_id = event.session_id
                logger.info("Session started: %s", self.session_id)
                self._record_breadcrumb(self.session_id)
            else:
                logger.debug("Duplicate session event: %s", event.session_id)
        elif event.kind == EventKind.PARTIAL_OUTPUT:
            for line in (event.text or "").splitlines():
                if line.strip():
                    self.partial_output.append(line)
                    logger.info("%s", line)
        elif event.kind == EventKind.TOOL_CALL:
            logger.info("TOOL CALL: %s%s", event.tool_name, _format_params(event.params))
        elif event.kind == EventKind.TOOL_RESULT:
            logger.info(
                "TOOL RESULT: %s | %s",
                event.tool_name or "unknown",
                "SUCCESS" if event.ok else "ERROR",
            )

    def _record_breadcrumb(self, session_id: str) -> None:
        if self.memory_file is None:
            return
        try:
            append_text(self.memory_file, f"\n<!-- Last session: {session_id} -->\n")
        except OSError as exc:
            logger.warning("Could not record session breadcrumb in %s: %s", self.memory_file, exc)


def _format_params(params: dict | None) -> str:
    if not params:
        return ""
    try:
        rendered = json.dumps(params, ensure_ascii=False, default=str)
    except (TypeError, ValueError):
        rendered = repr(params)
    if len(rendered) > _MAX_LOGGED_PARAMS_CHARS:
        rendered = rendered[: _MAX_LOGGED_PARAMS_CHARS - 3] + "..."
    return f" | Params: {rendered}"
