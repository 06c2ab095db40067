"""
Chat Session

Public facade over one conversation: sends user turns to the agent, streams
the reply through the message builder, persists finalized messages through
the completion callback, and keeps per-message and cumulative stats
consistent as late stats resolve.

Status moves ready → streaming → ready (or error). Only one turn streams at
a time; a send while streaming is rejected.
"""

from __future__ import annotations

import asyncio
import contextlib
import inspect
import logging
import uuid
from collections.abc import Awaitable, Callable, Iterable
from typing import TYPE_CHECKING, Any

from tsugi_client.chat.logging_utils import (
    log_performance,
    log_stream_event,
    should_log_feature,
)
from tsugi_client.chat.message_builder import MessageBuilder
from tsugi_client.chat.models import (
    AgentKind,
    ChatMode,
    ChatStatus,
    CumulativeStats,
    Message,
    MessageStats,
    PollRequest,
    SandboxActiveEvent,
    SandboxStatus,
    SandboxTerminatedEvent,
    SandboxTimeoutEvent,
    SessionRequest,
    StreamEvent,
    ToolProgressEvent,
    agent_for_mode,
    create_user_message,
)
from tsugi_client.chat.sandbox import SandboxTracker
from tsugi_client.chat.sse import parse_event_stream
from tsugi_client.chat.stats_poller import StatsPoller, StatsSource
from tsugi_client.chat.stats_utils import (
    calculate_cumulative_stats,
    create_empty_stats,
    merge_message_stats,
    update_cumulative_stats,
)
from tsugi_client.errors import AgentStreamError, StreamClosedError
from tsugi_client.history.repository import visible_to_agent

if TYPE_CHECKING:
    from tsugi_client.clients.agent_client import AgentClient

logger = logging.getLogger(__name__)

MessageCompleteCallback = Callable[[Message, int], Awaitable[None] | None]
UpdateCallback = Callable[[Message], Awaitable[None] | None]
StatsCallback = Callable[[str, MessageStats], Awaitable[None] | None]


async def _invoke(callback: Callable[..., Any] | None, *args: Any) -> None:
    """Call a sync or async callback."""
    if callback is None:
        return
    result = callback(*args)
    if inspect.isawaitable(result):
        await result


class ChatSession:
    """
    One conversation with the agent backend.

    Messages and cumulative stats are replaced on every change, never
    mutated in place, so snapshots handed out stay valid.
    """

    def __init__(
        self,
        agent_client: AgentClient,
        stats_source: StatsSource | None = None,
        conversation_id: str | None = None,
        polling_config: dict[str, Any] | None = None,
        on_message_complete: MessageCompleteCallback | None = None,
        on_update: UpdateCallback | None = None,
        on_stats_resolved: StatsCallback | None = None,
    ) -> None:
        self.agent_client = agent_client
        self.conversation_id = conversation_id or uuid.uuid4().hex
        self.on_message_complete = on_message_complete
        self.on_update = on_update
        self.on_stats_resolved = on_stats_resolved

        self._poller: StatsPoller | None = None
        if stats_source is not None:
            self._poller = StatsPoller(
                stats_source,
                on_stats_resolved=self._handle_stats_resolved,
                **(polling_config or {}),
            )

        self._messages: tuple[Message, ...] = ()
        self._status: ChatStatus = "ready"
        self._error: str | None = None
        self._cumulative_stats = create_empty_stats()
        self._sandbox = SandboxTracker()
        self._tool_progress: dict[str, str] = {}
        self._stream_task: asyncio.Task[Message | None] | None = None

    # ------------------------------------------------------------------
    # Read-only state
    # ------------------------------------------------------------------

    @property
    def status(self) -> ChatStatus:
        return self._status

    @property
    def error(self) -> str | None:
        return self._error

    @property
    def messages(self) -> tuple[Message, ...]:
        return self._messages

    @property
    def cumulative_stats(self) -> CumulativeStats:
        return self._cumulative_stats

    @property
    def sandbox_id(self) -> str | None:
        return self._sandbox.sandbox_id

    @property
    def sandbox_status(self) -> SandboxStatus:
        return self._sandbox.status

    @property
    def sandbox_timeout_message(self) -> str | None:
        return self._sandbox.timeout_message

    @property
    def tool_progress(self) -> dict[str, str]:
        """Streaming output of running tools, keyed by tool name."""
        return dict(self._tool_progress)

    @property
    def stats_poller(self) -> StatsPoller | None:
        return self._poller

    def clear_sandbox_timeout(self) -> None:
        self._sandbox.clear_timeout()

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def send(
        self,
        content: str,
        mode: ChatMode = "task",
        conversation_id: str | None = None,
        env: dict[str, str] | None = None,
    ) -> Message | None:
        """
        Send one user turn and stream the reply.

        Returns the finalized assistant message (interrupted if stop() was
        called), or None when the send was rejected or the stream failed
        before producing anything.
        """
        if self._status == "streaming":
            logger.warning("Send rejected: a response is already streaming")
            return None
        if mode not in ("task", "codify-skill"):
            raise ValueError(f"Unknown chat mode '{mode}'")
        if conversation_id:
            self.conversation_id = conversation_id

        agent = agent_for_mode(mode)
        self._error = None
        self._status = "streaming"
        self._tool_progress = {}
        await self._append_message(create_user_message(content, agent))
        request = self._build_request(mode, agent, env)

        builder = MessageBuilder(agent=agent)
        task = asyncio.create_task(self._run_stream(builder, request))
        self._stream_task = task
        try:
            await asyncio.wait({task})
        except asyncio.CancelledError:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
            raise
        finally:
            if self._stream_task is task:
                self._stream_task = None
            if task.cancelled():
                # Cancelled before the stream task got to record the interruption
                await self._finish_interrupted(builder)
            elif self._status == "streaming":
                # The stream task died on an unexpected exception
                self._status = "error"

        if task.cancelled():
            return builder.finalize_interrupted()
        return task.result()

    async def stop(self) -> None:
        """Abort the active stream; the partial reply is kept as interrupted."""
        task = self._stream_task
        if task is None or task.done():
            return
        logger.info("→ Agent: stop requested")
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    async def clear(self) -> None:
        """Reset the conversation state and stop every stats poll."""
        await self.stop()
        if self._poller is not None:
            await self._poller.stop_all()
        self._messages = ()
        self._error = None
        self._status = "ready"
        self._cumulative_stats = create_empty_stats()
        self._sandbox.reset()
        self._tool_progress = {}

    async def load(self, messages: Iterable[Message], conversation_id: str | None = None) -> None:
        """
        Replace the history with stored messages.

        Totals are recomputed from scratch; messages whose stats were still
        pending when stored resume polling.
        """
        await self.clear()
        if conversation_id:
            self.conversation_id = conversation_id
        self._messages = tuple(messages)
        self._cumulative_stats = calculate_cumulative_stats(self._messages)

        for message in self._messages:
            stats = message.stats
            if stats is not None and stats.stats_status == "pending" and stats.root_span_id:
                self._start_polling(message, stats.root_span_id)

        logger.info(
            f"Loaded {len(self._messages)} messages into conversation {self.conversation_id}"
        )

    async def close(self) -> None:
        """Teardown: stop streaming and polling."""
        await self.stop()
        if self._poller is not None:
            await self._poller.stop_all()

    async def __aenter__(self) -> ChatSession:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: object,
    ) -> None:
        await self.close()

    # ------------------------------------------------------------------
    # Streaming
    # ------------------------------------------------------------------

    def _build_request(
        self, mode: ChatMode, agent: AgentKind, env: dict[str, str] | None
    ) -> SessionRequest:
        context = [m for m in self._messages if visible_to_agent(m, agent)]
        return SessionRequest(
            messages=[m.to_api_dict() for m in context],
            mode=mode,
            conversation_id=self.conversation_id,
            env=env,
            sandbox_id=self._sandbox.sandbox_id,
        )

    async def _run_stream(self, builder: MessageBuilder, request: SessionRequest) -> Message | None:
        try:
            async with log_performance(f"Agent stream {builder.message_id}"):
                async with self.agent_client.stream(request) as stream:
                    if stream.sandbox_id:
                        self._sandbox.connect(stream.sandbox_id)

                    async with contextlib.aclosing(parse_event_stream(stream.chunks())) as events:
                        async for event in events:
                            log_stream_event(event)
                            await self._handle_event(builder, event)
                            if builder.finished or builder.error is not None:
                                break

            if builder.error is not None:
                raise AgentStreamError(builder.error)
            if not builder.finished:
                raise StreamClosedError()

            message = builder.finalize()
            self._tool_progress = {}
            self._status = "ready"
            await self._append_message(message)
            await self._route_stats(message)
            return message

        except asyncio.CancelledError:
            await self._finish_interrupted(builder)
            raise

        except AgentStreamError as e:
            logger.error(f"Agent stream failed: {e}")
            self._tool_progress = {}
            self._error = str(e)
            self._status = "error"
            partial = builder.finalize_failed()
            if partial is not None:
                await self._append_message(partial)
            return None

    async def _finish_interrupted(self, builder: MessageBuilder) -> Message:
        """Finalize and persist the in-flight reply as interrupted, once."""
        message = builder.finalize_interrupted()
        self._tool_progress = {}
        self._status = "ready"
        # Already persisted when cancelled after done, or by an earlier call
        if not self._messages or self._messages[-1].id != message.id:
            logger.info(f"← Agent: message {message.id} interrupted by user")
            await self._append_message(message)
        return message

    async def _handle_event(self, builder: MessageBuilder, event: StreamEvent) -> None:
        match event:
            case SandboxActiveEvent() | SandboxTerminatedEvent() | SandboxTimeoutEvent():
                self._sandbox.apply(event)
            case ToolProgressEvent(tool_name=tool_name, status="streaming", delta=delta):
                if delta:
                    self._tool_progress = {
                        **self._tool_progress,
                        tool_name: self._tool_progress.get(tool_name, "") + delta,
                    }
            case ToolProgressEvent(tool_name=tool_name, status="complete"):
                self._tool_progress = {
                    k: v for k, v in self._tool_progress.items() if k != tool_name
                }
            case _:
                if builder.apply(event) and not builder.finished:
                    await self._publish_snapshot(builder)

    async def _publish_snapshot(self, builder: MessageBuilder) -> None:
        if self.on_update is None:
            return
        snapshot = builder.snapshot()
        if should_log_feature("chat", "snapshots"):
            logger.info(f"Snapshot {snapshot.id}: {len(snapshot.parts)} parts")
        await _invoke(self.on_update, snapshot)

    async def _append_message(self, message: Message) -> None:
        index = len(self._messages)
        self._messages = (*self._messages, message)
        await _invoke(self.on_message_complete, message, index)

    # ------------------------------------------------------------------
    # Stats
    # ------------------------------------------------------------------

    async def _route_stats(self, message: Message) -> None:
        stats = message.stats
        if stats is None:
            return
        if stats.is_terminal:
            self._cumulative_stats = update_cumulative_stats(self._cumulative_stats, stats)
            return
        if stats.root_span_id and self._poller is not None:
            self._start_polling(message, stats.root_span_id)
            return

        # Nothing can resolve these tokens; settle on unavailable
        logger.warning(f"No stats source configured; message {message.id} stats unavailable")
        await self._apply_stats(
            message.id,
            stats.model_copy(update={"stats_status": "unavailable", "tokens_unavailable": True}),
        )

    def _start_polling(self, message: Message, root_span_id: str) -> None:
        if self._poller is None:
            return
        self._poller.start_polling(
            PollRequest(
                root_span_id=root_span_id,
                message_id=message.id,
                conversation_id=self.conversation_id,
            )
        )

    async def _handle_stats_resolved(self, message_id: str, stats: MessageStats) -> None:
        applied = await self._apply_stats(message_id, stats)
        if applied is not None and applied.stats_status == "resolved":
            await _invoke(self.on_stats_resolved, message_id, applied)

    async def _apply_stats(self, message_id: str, stats: MessageStats) -> MessageStats | None:
        """Merge terminal stats into a message and fold them into the totals once."""
        for i, message in enumerate(self._messages):
            if message.id != message_id:
                continue
            if message.stats is not None and message.stats.is_terminal:
                logger.debug(f"Stats for message {message_id} already terminal, update ignored")
                return None

            merged = merge_message_stats(message.stats, stats)
            updated = message.model_copy(update={"stats": merged})
            self._messages = (*self._messages[:i], updated, *self._messages[i + 1 :])
            self._cumulative_stats = update_cumulative_stats(self._cumulative_stats, merged)
            return merged

        logger.debug(f"Stats resolved for unknown message {message_id}")
        return None
