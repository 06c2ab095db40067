"""
Stats Poller

Resolves token stats that the observability backend only reports after it
catches up with the trace. One asyncio task per message polls a StatsSource
at a fixed interval until the same token counts are observed on enough
consecutive polls, or the attempt budget runs out.

Every started poll ends in exactly one terminal outcome (resolved or failed)
unless it is aborted, in which case no callback fires.
"""

from __future__ import annotations

import asyncio
import contextlib
import inspect
import logging
from collections.abc import Awaitable, Callable
from typing import Protocol

import httpx
from pydantic import ValidationError

from tsugi_client.chat.logging_utils import log_poll_attempt, log_stats_resolution
from tsugi_client.chat.models import MessageStats, PollRequest, PollState, StatsResponse
from tsugi_client.chat.stats_utils import stats_from_trace
from tsugi_client.errors import StatsNotFoundError

logger = logging.getLogger(__name__)

DEFAULT_MAX_ATTEMPTS = 8
DEFAULT_BASE_INTERVAL = 2.0
DEFAULT_CONSECUTIVE_MATCHES_REQUIRED = 3

StatsResolvedCallback = Callable[[str, MessageStats], Awaitable[None] | None]


class StatsSource(Protocol):
    """Anything that can report the current token stats of a trace."""

    async def fetch_stats(self, root_span_id: str, conversation_id: str) -> StatsResponse:
        """Raise StatsNotFoundError when the trace will never have stats."""
        ...


class StatsPoller:
    """Registry of per-message polls keyed by message id."""

    def __init__(
        self,
        source: StatsSource,
        on_stats_resolved: StatsResolvedCallback | None = None,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        base_interval: float = DEFAULT_BASE_INTERVAL,
        consecutive_matches_required: int = DEFAULT_CONSECUTIVE_MATCHES_REQUIRED,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if base_interval <= 0:
            raise ValueError("base_interval must be > 0")
        if consecutive_matches_required < 1:
            raise ValueError("consecutive_matches_required must be >= 1")

        self.source = source
        self.on_stats_resolved = on_stats_resolved
        self.max_attempts = max_attempts
        self.base_interval = base_interval
        self.consecutive_matches_required = consecutive_matches_required
        self._polls: dict[str, PollState] = {}

    @classmethod
    def from_config(
        cls,
        source: StatsSource,
        polling_config: dict[str, float | int],
        on_stats_resolved: StatsResolvedCallback | None = None,
    ) -> StatsPoller:
        return cls(
            source,
            on_stats_resolved=on_stats_resolved,
            max_attempts=int(polling_config["max_attempts"]),
            base_interval=float(polling_config["base_interval"]),
            consecutive_matches_required=int(polling_config["consecutive_matches_required"]),
        )

    @property
    def active_count(self) -> int:
        return len(self._polls)

    def is_polling(self, message_id: str) -> bool:
        return message_id in self._polls

    def start_polling(self, request: PollRequest) -> bool:
        """
        Start polling stats for one message.

        Idempotent while a poll for the same message is active. Returns True
        when a new poll was started.
        """
        if request.message_id in self._polls:
            logger.debug("Stats poll already active for message %s", request.message_id)
            return False

        state = PollState()
        self._polls[request.message_id] = state
        state.task = asyncio.create_task(self._run(request, state))
        logger.info(
            "→ Stats: polling message %s (root span %s)",
            request.message_id,
            request.root_span_id,
        )
        return True

    async def stop_polling(self, message_id: str) -> None:
        """Abort one poll. No callback fires afterwards."""
        state = self._polls.pop(message_id, None)
        if state is None:
            return
        await self._abort(state)
        logger.debug("Stopped stats poll for message %s", message_id)

    async def stop_all(self) -> None:
        """Abort every active poll (session teardown or clear)."""
        states = list(self._polls.values())
        self._polls.clear()
        for state in states:
            await self._abort(state)
        if states:
            logger.info("Stopped %d stats poll(s)", len(states))

    async def _abort(self, state: PollState) -> None:
        state.aborted = True
        task = state.task
        if task is None or task.done() or task is asyncio.current_task():
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    async def _run(self, request: PollRequest, state: PollState) -> None:
        try:
            while not state.aborted:
                state.attempt += 1
                outcome = await self._poll_once(request, state)
                if state.aborted:
                    return
                if outcome is None and state.attempt >= self.max_attempts:
                    # Best effort: keep the last observation, tagged failed
                    outcome = stats_from_trace(state.last_stats, "failed", request.root_span_id)
                    log_poll_attempt(request.message_id, state.attempt, self.max_attempts, "exhausted")
                if outcome is not None:
                    await self._resolve(request, state, outcome)
                    return
                await asyncio.sleep(self.base_interval)
        finally:
            if self._polls.get(request.message_id) is state:
                del self._polls[request.message_id]

    async def _poll_once(self, request: PollRequest, state: PollState) -> MessageStats | None:
        """Run one attempt; return terminal stats or None to keep polling."""
        try:
            response = await self.source.fetch_stats(request.root_span_id, request.conversation_id)
        except StatsNotFoundError:
            log_poll_attempt(request.message_id, state.attempt, self.max_attempts, "not found")
            return stats_from_trace(state.last_stats, "failed", request.root_span_id)
        except (httpx.HTTPError, ValidationError, ValueError) as e:
            logger.warning(
                "Stats poll %d/%d for message %s failed: %s",
                state.attempt,
                self.max_attempts,
                request.message_id,
                e,
            )
            return None

        if response.status != "resolved" or response.stats is None:
            log_poll_attempt(request.message_id, state.attempt, self.max_attempts, "pending")
            return None

        observed = response.stats
        if (
            state.last_stats is not None
            and state.last_stats.token_signature() == observed.token_signature()
        ):
            state.consecutive_matches += 1
        else:
            state.consecutive_matches = 1
            state.last_stats = observed

        log_poll_attempt(
            request.message_id,
            state.attempt,
            self.max_attempts,
            f"match {state.consecutive_matches}/{self.consecutive_matches_required}",
        )
        if state.consecutive_matches >= self.consecutive_matches_required:
            return stats_from_trace(observed, "resolved", request.root_span_id)
        return None

    async def _resolve(self, request: PollRequest, state: PollState, stats: MessageStats) -> None:
        if self._polls.get(request.message_id) is state:
            del self._polls[request.message_id]
        log_stats_resolution(request.message_id, stats)

        if self.on_stats_resolved is None:
            return
        try:
            result = self.on_stats_resolved(request.message_id, stats)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            logger.error(f"Stats resolution callback failed for message {request.message_id}: {e}")
