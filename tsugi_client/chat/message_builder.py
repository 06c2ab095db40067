"""
Incremental Message Builder

Reconstructs one assistant message from the ordered event stream of a
single turn:
- text / reasoning accumulation windows
- shell tool calls correlated by command id
- grounded (agent) tool calls correlated by tool call id
- grounding sources and the synthesized search part
- usage increments summed into per-message stats
- finalization on done, or on user interruption

One builder is created per send and owns the in-progress message until it is
finalized; nothing here is shared between turns.
"""

from __future__ import annotations

import logging
import re
import time
from collections.abc import Callable

from tsugi_client.chat.models import (
    INTERRUPTED_CONTENT,
    AgentIteration,
    AgentKind,
    AgentToolCallEvent,
    AgentToolPart,
    AgentToolResultEvent,
    DoneEvent,
    ErrorEvent,
    IterationEndEvent,
    Message,
    MessagePart,
    MessageStats,
    RawContentEvent,
    RawPayloadEvent,
    ReasoningEvent,
    ReasoningPart,
    SandboxActiveEvent,
    SandboxTerminatedEvent,
    SandboxTimeoutEvent,
    Source,
    SourceEvent,
    SourcesPart,
    StreamEvent,
    TextEvent,
    TextPart,
    ToolCallEvent,
    ToolOutputEvent,
    ToolPart,
    ToolProgressEvent,
    ToolResultEvent,
    ToolStartEvent,
    UsageEvent,
    generate_message_id,
)

logger = logging.getLogger(__name__)

GROUNDING_TOOL_NAME = "google_search"
GROUNDING_TOOL_CALL_ID = "grounding-search"

_COMPLETE_SHELL_TAG = re.compile(r"<shell>[\s\S]*?</shell>")
_OPEN_SHELL_TAG = re.compile(r"<shell>[\s\S]*$")
_EXCESS_NEWLINES = re.compile(r"\n{3,}")


def strip_shell_tags(text: str) -> str:
    """
    Remove shell control markup from model text and collapse blank runs.

    A <shell> tag that is still streaming (no closing tag yet) is removed too,
    so raw markup never leaks into rendered text.
    """
    text = _COMPLETE_SHELL_TAG.sub("", text)
    text = _OPEN_SHELL_TAG.sub("", text)
    return _EXCESS_NEWLINES.sub("\n\n", text)


def build_raw_content(parts: list[MessagePart]) -> str:
    """Flat text reconstruction of a message, re-submittable as context."""
    segments: list[str] = []
    for part in parts:
        if isinstance(part, TextPart):
            segments.append(part.content)
        elif isinstance(part, ToolPart):
            segments.append(f"<shell>{part.command}</shell>")
    return "\n\n".join(segments)


class UsageAccumulator:
    """Sums usage increments of a multi-step agent loop."""

    def __init__(self) -> None:
        self.has_tokens = False
        self.prompt_tokens = 0
        self.completion_tokens = 0
        self.cached_tokens = 0
        self.reasoning_tokens = 0
        self.execution_time_ms: float = 0
        self.tokens_unavailable = False
        self.pending = False
        self.root_span_id: str | None = None

    def add(self, event: UsageEvent) -> None:
        awaiting_resolution = event.status == "pending" and bool(event.root_span_id)

        if event.usage is not None:
            self.has_tokens = True
            self.prompt_tokens += event.usage.prompt_tokens or 0
            self.completion_tokens += event.usage.completion_tokens or 0
            self.cached_tokens += event.usage.cached_content_token_count or 0
            self.reasoning_tokens += event.usage.reasoning_tokens or 0
        elif not awaiting_resolution:
            # Observability source unreachable for this step
            self.tokens_unavailable = True

        if event.status == "unavailable":
            self.tokens_unavailable = True
        if event.root_span_id:
            self.root_span_id = event.root_span_id
        if awaiting_resolution:
            self.pending = True

        self.execution_time_ms += event.execution_time_ms or 0

    def to_stats(self, fallback_execution_time_ms: float) -> MessageStats:
        """Final per-message stats; execution time falls back to wall time."""
        execution_time_ms = self.execution_time_ms or fallback_execution_time_ms
        if self.pending:
            status = "pending"
            tokens_unavailable = False
        elif self.tokens_unavailable or not self.has_tokens:
            status = "unavailable"
            tokens_unavailable = True
        else:
            status = "resolved"
            tokens_unavailable = False

        if not self.has_tokens:
            return MessageStats(
                execution_time_ms=execution_time_ms,
                tokens_unavailable=tokens_unavailable,
                stats_status=status,
                root_span_id=self.root_span_id,
            )
        return MessageStats(
            prompt_tokens=self.prompt_tokens,
            completion_tokens=self.completion_tokens,
            cached_tokens=self.cached_tokens,
            reasoning_tokens=self.reasoning_tokens,
            execution_time_ms=execution_time_ms,
            tokens_unavailable=tokens_unavailable,
            stats_status=status,
            root_span_id=self.root_span_id,
        )


class MessageBuilder:
    """State machine turning one turn's events into a structured message."""

    def __init__(
        self,
        agent: AgentKind = "task",
        message_id: str | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.message_id = message_id or generate_message_id()
        self.agent: AgentKind = agent
        self._clock = clock
        self._started_at = clock()

        self._parts: list[MessagePart] = []
        self._pending_text = ""
        self._sources: list[Source] = []
        self._grounding_part: AgentToolPart | None = None
        self._usage = UsageAccumulator()
        self._iterations: list[AgentIteration] = []
        self._raw_payload: list[object] | None = None

        self.done = False
        self.error: str | None = None
        self._final: Message | None = None

    @property
    def finished(self) -> bool:
        """True once the message has been finalized (done or interrupted)."""
        return self._final is not None

    # ------------------------------------------------------------------
    # Event handling
    # ------------------------------------------------------------------

    def apply(self, event: StreamEvent) -> bool:
        """
        Apply one event in arrival order.

        Returns True when the visible message changed and a new snapshot
        should be published. Never raises on correlation misses.
        """
        if self._final is not None:
            logger.debug("Ignoring %s event after finalization", event.type)
            return False

        match event:
            case TextEvent(content=content):
                self._pending_text += content
                return True

            case ReasoningEvent(content=content):
                self.flush_text()
                last = self._parts[-1] if self._parts else None
                if isinstance(last, ReasoningPart):
                    last.content += content
                else:
                    self._parts.append(ReasoningPart(content=content))
                return True

            case ToolCallEvent():
                return self._open_tool(event)

            case ToolStartEvent(command_id=command_id):
                part = self._find_tool_part(command_id)
                if part is None:
                    logger.debug("tool-start for unknown command id %s", command_id)
                    return False
                if part.status == "queued":
                    part.status = "running"
                return True

            case ToolResultEvent(command_id=command_id, result=result):
                part = self._find_tool_part(command_id)
                if part is None:
                    logger.debug("tool-result for unknown command id %s", command_id)
                    return False
                if part.status == "error":
                    return False
                part.content = result
                part.status = "completed"
                return True

            case AgentToolCallEvent():
                return self._open_agent_tool(event)

            case AgentToolResultEvent(tool_call_id=tool_call_id, result=result):
                agent_part = self._find_agent_tool_part(tool_call_id)
                if agent_part is None:
                    logger.debug("agent-tool-result for unknown tool call id %s", tool_call_id)
                    return False
                if agent_part.status == "error":
                    return False
                agent_part.content = result
                agent_part.status = "completed"
                return True

            case SourceEvent():
                return self._add_source(event)

            case UsageEvent():
                self._usage.add(event)
                if event.agent:
                    self.agent = event.agent
                return False

            case RawContentEvent(raw_content=raw_content):
                self._iterations.append(AgentIteration(raw_content=raw_content))
                return False

            case ToolOutputEvent(tool_output=tool_output):
                if tool_output and self._iterations:
                    self._iterations[-1].tool_output = tool_output
                return False

            case RawPayloadEvent(raw_payload=raw_payload):
                self._raw_payload = raw_payload
                return False

            case DoneEvent():
                self.finalize()
                return True

            case ErrorEvent(content=content):
                self.error = content or "Unknown error"
                return False

            case IterationEndEvent() | ToolProgressEvent():
                # Iterations keep building the same message; tool progress is
                # transient session state
                return False

            case SandboxActiveEvent() | SandboxTerminatedEvent() | SandboxTimeoutEvent():
                return False

            case _:
                # Unknown event kinds from newer backends are ignored
                logger.debug("Ignoring unhandled event type %s", event.type)
                return False

    def flush_text(self) -> None:
        """
        Close the current text accumulation window.

        The normalized text becomes a text part when non-empty. Calling this
        twice without new text in between is a no-op.
        """
        text = strip_shell_tags(self._pending_text).strip()
        self._pending_text = ""
        if text:
            self._parts.append(TextPart(content=text))

    def _open_tool(self, event: ToolCallEvent) -> bool:
        self.flush_text()
        command_id = event.command_id or f"cmd-{generate_message_id()}"
        if self._find_tool_part(command_id) is not None:
            logger.warning("Duplicate tool-call for command id %s ignored", command_id)
            return False
        self._parts.append(ToolPart(command=event.command, command_id=command_id, status="queued"))
        return True

    def _open_agent_tool(self, event: AgentToolCallEvent) -> bool:
        self.flush_text()
        tool_call_id = event.tool_call_id or f"call-{generate_message_id()}"
        if self._find_agent_tool_part(tool_call_id) is not None:
            logger.warning("Duplicate agent-tool-call for tool call id %s ignored", tool_call_id)
            return False
        self._parts.append(
            AgentToolPart(
                tool_name=event.tool_name,
                tool_args=event.tool_args,
                tool_call_id=tool_call_id,
            )
        )
        return True

    def _find_tool_part(self, command_id: str | None) -> ToolPart | None:
        if command_id is None:
            return None
        for part in self._parts:
            if isinstance(part, ToolPart) and part.command_id == command_id:
                return part
        return None

    def _find_agent_tool_part(self, tool_call_id: str | None) -> AgentToolPart | None:
        if tool_call_id is None:
            return None
        for part in self._parts:
            if isinstance(part, AgentToolPart) and part.tool_call_id == tool_call_id:
                return part
        return None

    def _add_source(self, event: SourceEvent) -> bool:
        source_id = event.source_id or event.source_url
        if any(s.id == source_id for s in self._sources):
            return False
        self._sources.append(Source(id=source_id, url=event.source_url, title=event.source_title))

        if self._grounding_part is None:
            # Grounding happens before the answer text, so the search renders first
            self._grounding_part = AgentToolPart(
                tool_name=GROUNDING_TOOL_NAME,
                tool_call_id=GROUNDING_TOOL_CALL_ID,
            )
            self._parts.insert(0, self._grounding_part)
        return True

    def _finalize_sources(self) -> None:
        if self._grounding_part is None or not self._sources:
            return
        self._grounding_part.sources = list(self._sources)
        if self._grounding_part.status == "running":
            self._grounding_part.status = "completed"
        self._parts.append(SourcesPart(sources=list(self._sources)))

    # ------------------------------------------------------------------
    # Snapshots and finalization
    # ------------------------------------------------------------------

    def elapsed_ms(self) -> float:
        return (self._clock() - self._started_at) * 1000

    def snapshot(self) -> Message:
        """Copy of the in-progress message, including the open text window."""
        if self._final is not None:
            return self._final.model_copy(deep=True)

        parts: list[MessagePart] = [p.model_copy(deep=True) for p in self._parts]
        text = strip_shell_tags(self._pending_text).strip()
        if text:
            parts.append(TextPart(content=text))
        return Message(id=self.message_id, role="assistant", parts=parts, agent=self.agent)

    def finalize(self) -> Message:
        """Terminal transition on done: flush, attach sources and final stats."""
        if self._final is not None:
            return self._final

        self.flush_text()
        self._finalize_sources()
        self.done = True
        stats = self._usage.to_stats(fallback_execution_time_ms=self.elapsed_ms())
        self._final = self._build_message(stats=stats, interrupted=False)
        return self._final

    def finalize_interrupted(self) -> Message:
        """
        Terminal transition on user cancellation.

        Tool calls still in flight are closed with an error marker so the
        partial trajectory can be saved.
        """
        if self._final is not None:
            return self._final

        self.flush_text()
        self._finalize_sources()
        self._close_open_tools(INTERRUPTED_CONTENT)
        self._final = self._build_message(stats=None, interrupted=True)
        return self._final

    def finalize_failed(self) -> Message | None:
        """
        Terminal transition when the stream fails.

        Keeps the partial trajectory; returns None when nothing was received.
        """
        if self._final is not None:
            return self._final

        self.flush_text()
        if not self._parts:
            return None
        self._finalize_sources()
        self._close_open_tools(self.error or "")
        self._final = self._build_message(stats=None, interrupted=False)
        return self._final

    def _close_open_tools(self, content: str) -> None:
        for part in self._parts:
            if isinstance(part, (ToolPart, AgentToolPart)) and part.status != "completed":
                part.status = "error"
                if content:
                    part.content = content

    def _build_message(self, stats: MessageStats | None, interrupted: bool) -> Message:
        parts = list(self._parts)
        return Message(
            id=self.message_id,
            role="assistant",
            parts=parts,
            raw_content=build_raw_content(parts),
            stats=stats,
            agent=self.agent,
            interrupted=interrupted,
            iterations=list(self._iterations) or None,
            raw_payload=self._raw_payload,
        )
