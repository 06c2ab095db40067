"""
Chat Client Data Models

Data structures for the streaming conversation client: wire events pushed by
the agent backend, message parts, per-message and cumulative token stats,
and the internal polling state.
All strongly typed with Pydantic for validation and type safety.
"""

from __future__ import annotations

import asyncio
import uuid
from datetime import UTC, datetime
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

# ==============================================================================
# TYPE DEFINITIONS
# ==============================================================================

Role = Literal["user", "assistant"]
AgentKind = Literal["task", "skill"]
ChatMode = Literal["task", "codify-skill"]
ChatStatus = Literal["ready", "streaming", "error"]
SandboxStatus = Literal["disconnected", "connected"]
ToolStatus = Literal["queued", "running", "completed", "error"]
AgentToolStatus = Literal["running", "completed", "error"]
StatsStatus = Literal["pending", "resolved", "unavailable", "failed"]

TERMINAL_STATS_STATUSES: frozenset[str] = frozenset({"resolved", "unavailable", "failed"})
INTERRUPTED_CONTENT = "Interrupted"


def generate_message_id() -> str:
    """Generate a short opaque message id."""
    return uuid.uuid4().hex[:13]


class WireModel(BaseModel):
    """Base for models exchanged with the backend (camelCase on the wire)."""

    model_config = ConfigDict(populate_by_name=True)


# ==============================================================================
# MESSAGE PARTS
# ==============================================================================


class Source(WireModel):
    """A grounding citation."""

    id: str
    url: str = ""
    title: str = ""


class TextPart(WireModel):
    type: Literal["text"] = "text"
    content: str


class ReasoningPart(WireModel):
    type: Literal["reasoning"] = "reasoning"
    content: str = ""


class ToolPart(WireModel):
    """Shell tool invocation, addressed by command_id."""

    type: Literal["tool"] = "tool"
    command: str = ""
    command_id: str = Field(alias="commandId")
    content: str = ""
    status: ToolStatus = "queued"


class AgentToolPart(WireModel):
    """Grounded/search-style tool call, addressed by tool_call_id."""

    type: Literal["agent-tool"] = "agent-tool"
    tool_name: str = Field(default="", alias="toolName")
    tool_args: dict[str, Any] = Field(default_factory=dict, alias="toolArgs")
    tool_call_id: str = Field(alias="toolCallId")
    content: str = ""
    status: AgentToolStatus = "running"
    sources: list[Source] | None = None


class SourcesPart(WireModel):
    type: Literal["sources"] = "sources"
    sources: list[Source] = Field(default_factory=list)


MessagePart = Annotated[
    TextPart | ReasoningPart | ToolPart | AgentToolPart | SourcesPart,
    Field(discriminator="type"),
]


# ==============================================================================
# STATS
# ==============================================================================


class MessageStats(WireModel):
    """Token and timing statistics for one assistant message."""

    prompt_tokens: int | None = Field(default=None, alias="promptTokens")
    completion_tokens: int | None = Field(default=None, alias="completionTokens")
    cached_tokens: int | None = Field(default=None, alias="cachedTokens")
    reasoning_tokens: int | None = Field(default=None, alias="reasoningTokens")
    execution_time_ms: float | None = Field(default=None, alias="executionTimeMs")
    tokens_unavailable: bool = Field(default=False, alias="tokensUnavailable")
    stats_status: StatsStatus | None = Field(default=None, alias="statsStatus")
    root_span_id: str | None = Field(default=None, alias="rootSpanId")

    @property
    def is_terminal(self) -> bool:
        return self.stats_status in TERMINAL_STATS_STATUSES

    @property
    def tokens_countable(self) -> bool:
        """Whether the token fields may be added to conversation totals."""
        return self.stats_status == "resolved" and not self.tokens_unavailable


class TraceStats(WireModel):
    """Token stats as reported by the stats endpoint."""

    prompt_tokens: int = Field(default=0, alias="promptTokens")
    completion_tokens: int = Field(default=0, alias="completionTokens")
    cached_tokens: int = Field(default=0, alias="cachedTokens")
    reasoning_tokens: int = Field(default=0, alias="reasoningTokens")

    def token_signature(self) -> tuple[int, int, int, int]:
        return (
            self.prompt_tokens,
            self.completion_tokens,
            self.cached_tokens,
            self.reasoning_tokens,
        )


class StatsResponse(WireModel):
    """Body of GET <stats-endpoint>/{rootSpanId}."""

    status: Literal["resolved", "pending"]
    stats: TraceStats | None = None


class CumulativeStats(BaseModel):
    """Running totals across a conversation."""

    model_config = ConfigDict(frozen=True)

    total_prompt_tokens: int = 0
    total_completion_tokens: int = 0
    total_cached_tokens: int = 0
    total_reasoning_tokens: int = 0
    total_execution_time_ms: float = 0
    message_count: int = 0
    tokens_unavailable_count: int = 0


# ==============================================================================
# MESSAGES
# ==============================================================================


class AgentIteration(WireModel):
    """Raw model output of one agent loop step plus its tool output."""

    raw_content: str = Field(default="", alias="rawContent")
    tool_output: str | None = Field(default=None, alias="toolOutput")


class Message(WireModel):
    """One turn in a conversation."""

    id: str = Field(default_factory=generate_message_id)
    role: Role
    parts: list[MessagePart] = Field(default_factory=list)
    raw_content: str = Field(default="", alias="rawContent")
    stats: MessageStats | None = None
    agent: AgentKind = "task"
    interrupted: bool = False
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))
    iterations: list[AgentIteration] | None = None
    raw_payload: list[Any] | None = Field(default=None, alias="rawPayload")

    def text(self) -> str:
        """Concatenated text parts, for display."""
        return "\n\n".join(p.content for p in self.parts if isinstance(p, TextPart))

    def to_api_dict(self) -> dict[str, Any]:
        """Format used as conversational context in the session request body."""
        payload: dict[str, Any] = {
            "role": self.role,
            "rawContent": self.raw_content,
            "parts": [p.model_dump(by_alias=True, exclude_none=True) for p in self.parts],
        }
        if self.iterations:
            payload["iterations"] = [
                it.model_dump(by_alias=True, exclude_none=True) for it in self.iterations
            ]
        return payload


def create_user_message(content: str, agent: AgentKind, message_id: str | None = None) -> Message:
    """Create a user message; user content is already raw."""
    return Message(
        id=message_id or generate_message_id(),
        role="user",
        parts=[TextPart(content=content)],
        raw_content=content,
        agent=agent,
    )


def agent_for_mode(mode: ChatMode) -> AgentKind:
    return "skill" if mode == "codify-skill" else "task"


# ==============================================================================
# STREAM EVENTS (wire types)
# ==============================================================================


class TextEvent(WireModel):
    type: Literal["text"]
    content: str = ""


class ReasoningEvent(WireModel):
    type: Literal["reasoning"]
    content: str = ""


class ToolCallEvent(WireModel):
    type: Literal["tool-call"]
    command: str = ""
    command_id: str | None = Field(default=None, alias="commandId")
    has_more_commands: bool | None = Field(default=None, alias="hasMoreCommands")


class ToolStartEvent(WireModel):
    type: Literal["tool-start"]
    command_id: str | None = Field(default=None, alias="commandId")


class ToolResultEvent(WireModel):
    type: Literal["tool-result"]
    command_id: str | None = Field(default=None, alias="commandId")
    result: str = ""


class AgentToolCallEvent(WireModel):
    type: Literal["agent-tool-call"]
    tool_name: str = Field(default="", alias="toolName")
    tool_args: dict[str, Any] = Field(default_factory=dict, alias="toolArgs")
    tool_call_id: str | None = Field(default=None, alias="toolCallId")


class AgentToolResultEvent(WireModel):
    type: Literal["agent-tool-result"]
    tool_call_id: str | None = Field(default=None, alias="toolCallId")
    result: str = ""


class SourceEvent(WireModel):
    type: Literal["source"]
    source_id: str | None = Field(default=None, alias="sourceId")
    source_url: str = Field(default="", alias="sourceUrl")
    source_title: str = Field(default="", alias="sourceTitle")


class UsagePayload(WireModel):
    prompt_tokens: int | None = Field(default=None, alias="promptTokens")
    completion_tokens: int | None = Field(default=None, alias="completionTokens")
    cached_content_token_count: int | None = Field(default=None, alias="cachedContentTokenCount")
    reasoning_tokens: int | None = Field(default=None, alias="reasoningTokens")


class UsageEvent(WireModel):
    """Usage increment; usage=None means the observability source is unreachable."""

    type: Literal["usage"]
    usage: UsagePayload | None = None
    execution_time_ms: float | None = Field(default=None, alias="executionTimeMs")
    agent: AgentKind | None = None
    root_span_id: str | None = Field(default=None, alias="rootSpanId")
    status: Literal["resolved", "pending", "unavailable"] | None = None


class SandboxActiveEvent(WireModel):
    type: Literal["sandbox_active"]
    sandbox_id: str | None = Field(default=None, alias="sandboxId")


class SandboxTerminatedEvent(WireModel):
    type: Literal["sandbox_terminated"]
    sandbox_id: str | None = Field(default=None, alias="sandboxId")


class SandboxTimeoutEvent(WireModel):
    type: Literal["sandbox_timeout"]
    content: str | None = None


class RawContentEvent(WireModel):
    type: Literal["raw-content"]
    raw_content: str = Field(default="", alias="rawContent")


class ToolOutputEvent(WireModel):
    type: Literal["tool-output"]
    tool_output: str | None = Field(default=None, alias="toolOutput")


class IterationEndEvent(WireModel):
    type: Literal["iteration-end"]


class RawPayloadEvent(WireModel):
    type: Literal["raw_payload"]
    raw_payload: list[Any] | None = Field(default=None, alias="rawPayload")


class ToolProgressEvent(WireModel):
    """Streaming output of a running tool; transient, never part of a message."""

    type: Literal["tool-progress"]
    tool_name: str = Field(alias="toolName")
    status: Literal["streaming", "complete"]
    delta: str | None = None
    text: str | None = None


class DoneEvent(WireModel):
    type: Literal["done"]


class ErrorEvent(WireModel):
    type: Literal["error"]
    content: str | None = None


class UnknownEvent(WireModel):
    """Any record whose type is not understood by this client."""

    model_config = ConfigDict(extra="allow")

    type: str


KnownEvent = Annotated[
    TextEvent
    | ReasoningEvent
    | ToolCallEvent
    | ToolStartEvent
    | ToolResultEvent
    | AgentToolCallEvent
    | AgentToolResultEvent
    | SourceEvent
    | UsageEvent
    | SandboxActiveEvent
    | SandboxTerminatedEvent
    | SandboxTimeoutEvent
    | RawContentEvent
    | ToolOutputEvent
    | IterationEndEvent
    | RawPayloadEvent
    | ToolProgressEvent
    | DoneEvent
    | ErrorEvent,
    Field(discriminator="type"),
]

StreamEvent = KnownEvent | UnknownEvent

KNOWN_EVENT_TYPES: frozenset[str] = frozenset(
    {
        "text",
        "reasoning",
        "tool-call",
        "tool-start",
        "tool-result",
        "agent-tool-call",
        "agent-tool-result",
        "source",
        "usage",
        "sandbox_active",
        "sandbox_terminated",
        "sandbox_timeout",
        "raw-content",
        "tool-output",
        "iteration-end",
        "raw_payload",
        "tool-progress",
        "done",
        "error",
    }
)

known_event_adapter: TypeAdapter[Any] = TypeAdapter(KnownEvent)


# ==============================================================================
# REQUEST / POLLING MODELS
# ==============================================================================


class SessionRequest(WireModel):
    """Body posted to the agent endpoint to open one stream."""

    messages: list[dict[str, Any]]
    mode: ChatMode = "task"
    conversation_id: str | None = Field(default=None, alias="conversationId")
    env: dict[str, str] | None = None
    sandbox_id: str | None = Field(default=None, alias="sandboxId")


class PollRequest(BaseModel):
    """What the poller needs to resolve one message's stats."""

    root_span_id: str
    message_id: str
    conversation_id: str


class PollState(BaseModel):
    """Per-message polling state; owned exclusively by the StatsPoller."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    attempt: int = 0
    consecutive_matches: int = 0
    last_stats: TraceStats | None = None
    aborted: bool = False
    task: asyncio.Task | None = None
