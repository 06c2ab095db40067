"""
Chat Client Logging Utilities

Shared logging functionality with feature control.
"""

from __future__ import annotations

import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from tsugi_client.chat.models import MessageStats, StreamEvent

logger = logging.getLogger(__name__)

# Feature flags per module, filled by tsugi_client.main.configure_logging
_module_features: dict[str, dict[str, bool]] = {}


def set_module_features(module: str, features: dict[str, bool]) -> None:
    """Store feature flags for runtime checking."""
    _module_features[module] = dict(features)


def should_log_feature(module: str, feature: str) -> bool:
    """
    Check if a specific logging feature should be enabled.

    Uses cached feature flags instead of repeated config lookups.
    """
    return _module_features.get(module, {}).get(feature, False)


def log_stream_event(event: StreamEvent, truncate_length: int = 200) -> None:
    """
    Log a decoded stream event if the stream_events feature is on.

    Args:
        event: The typed event just decoded from the stream
        truncate_length: Maximum length for the serialized event
    """
    if not should_log_feature("chat", "stream_events"):
        return

    event_str = event.model_dump_json(by_alias=True, exclude_none=True)
    if len(event_str) > truncate_length:
        event_str = event_str[:truncate_length] + "..."

    logger.info("← Agent: %s", event_str)


def log_poll_attempt(message_id: str, attempt: int, max_attempts: int, outcome: str) -> None:
    """Log one stats poll attempt."""
    if not should_log_feature("chat", "poll_attempts"):
        return
    logger.info(
        "← Stats[%s]: attempt %d/%d %s",
        message_id,
        attempt,
        max_attempts,
        outcome,
    )


def log_stats_resolution(message_id: str, stats: MessageStats) -> None:
    """Log the terminal stats of a message."""
    logger.info(
        "← Stats[%s]: %s (prompt=%s, completion=%s, cached=%s, reasoning=%s)",
        message_id,
        stats.stats_status,
        stats.prompt_tokens,
        stats.completion_tokens,
        stats.cached_tokens,
        stats.reasoning_tokens,
    )


def log_http_request(
    method: str,
    url: str,
    status_code: int | None = None,
    duration_ms: float | None = None,
) -> None:
    """Log HTTP request details if the http_requests feature is on."""
    if not should_log_feature("clients", "http_requests"):
        return

    message_parts = [f"🔌 HTTP {method} {url}"]
    if status_code is not None:
        message_parts.append(f"Status: {status_code}")
    if duration_ms is not None:
        message_parts.append(f"Duration: {duration_ms:.2f}ms")

    logging.getLogger("tsugi_client.clients").info(" | ".join(message_parts))


@asynccontextmanager
async def log_performance(operation_name: str) -> AsyncIterator[None]:
    """Context manager to log performance metrics for operations."""
    start_time = time.monotonic()
    try:
        yield
    finally:
        elapsed_ms = (time.monotonic() - start_time) * 1000
        logger.info(f"⏱️ {operation_name} completed in {elapsed_ms:.2f}ms")
