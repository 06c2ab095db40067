"""
Cumulative stats reducers.

Pure functions folding per-message stats into conversation totals. A message
contributes once, when its stats become terminal; pending stats are skipped
here and folded later by whoever resolves them.
"""

from __future__ import annotations

from collections.abc import Iterable

from tsugi_client.chat.models import (
    CumulativeStats,
    Message,
    MessageStats,
    StatsStatus,
    TraceStats,
)


def create_empty_stats() -> CumulativeStats:
    return CumulativeStats()


def update_cumulative_stats(current: CumulativeStats, stats: MessageStats) -> CumulativeStats:
    """
    Fold one message's terminal stats into the running totals.

    Token fields are added only when they are countable; otherwise the
    unavailable counter is bumped. Execution time is always added.
    """
    if not stats.is_terminal:
        return current

    execution_time_ms = stats.execution_time_ms or 0
    if not stats.tokens_countable:
        return current.model_copy(
            update={
                "total_execution_time_ms": current.total_execution_time_ms + execution_time_ms,
                "message_count": current.message_count + 1,
                "tokens_unavailable_count": current.tokens_unavailable_count + 1,
            }
        )

    return current.model_copy(
        update={
            "total_prompt_tokens": current.total_prompt_tokens + (stats.prompt_tokens or 0),
            "total_completion_tokens": current.total_completion_tokens
            + (stats.completion_tokens or 0),
            "total_cached_tokens": current.total_cached_tokens + (stats.cached_tokens or 0),
            "total_reasoning_tokens": current.total_reasoning_tokens
            + (stats.reasoning_tokens or 0),
            "total_execution_time_ms": current.total_execution_time_ms + execution_time_ms,
            "message_count": current.message_count + 1,
        }
    )


def calculate_cumulative_stats(messages: Iterable[Message]) -> CumulativeStats:
    """Recompute totals from scratch over assistant messages with terminal stats."""
    totals = create_empty_stats()
    for message in messages:
        if message.role != "assistant" or message.stats is None:
            continue
        totals = update_cumulative_stats(totals, message.stats)
    return totals


def stats_from_trace(
    trace: TraceStats | None,
    status: StatsStatus,
    root_span_id: str | None = None,
) -> MessageStats:
    """
    Build message stats from a poll outcome.

    Only a resolved outcome yields countable tokens; a failed one keeps the
    last observation (if any) for display.
    """
    stats = MessageStats(
        stats_status=status,
        tokens_unavailable=status != "resolved",
        root_span_id=root_span_id,
    )
    if trace is None:
        return stats
    return stats.model_copy(
        update={
            "prompt_tokens": trace.prompt_tokens,
            "completion_tokens": trace.completion_tokens,
            "cached_tokens": trace.cached_tokens,
            "reasoning_tokens": trace.reasoning_tokens,
        }
    )


def merge_message_stats(current: MessageStats | None, incoming: MessageStats) -> MessageStats:
    """
    Merge a poll outcome into a message's existing stats.

    Resolved stats are final: once a message is resolved, later updates are
    refused and the current value is returned unchanged. Token fields missing
    from the outcome keep their streamed values.
    """
    if current is None:
        return incoming
    if current.stats_status == "resolved":
        return current

    def pick(field: str) -> int | None:
        value = getattr(incoming, field)
        return value if value is not None else getattr(current, field)

    return current.model_copy(
        update={
            "prompt_tokens": pick("prompt_tokens"),
            "completion_tokens": pick("completion_tokens"),
            "cached_tokens": pick("cached_tokens"),
            "reasoning_tokens": pick("reasoning_tokens"),
            "tokens_unavailable": incoming.tokens_unavailable,
            "stats_status": incoming.stats_status,
            "execution_time_ms": current.execution_time_ms or incoming.execution_time_ms,
            "root_span_id": current.root_span_id or incoming.root_span_id,
        }
    )
