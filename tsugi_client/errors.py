"""Exception types raised by the chat client."""

from __future__ import annotations

UNEXPECTED_CLOSE_MESSAGE = "Connection closed unexpectedly. The API may have returned an error."


class TsugiClientError(Exception):
    """Base class for all client errors."""


class AgentStreamError(TsugiClientError):
    """The agent stream failed: transport error, non-2xx status or an error event."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class StreamClosedError(AgentStreamError):
    """The stream ended without a done event."""

    def __init__(self, message: str = UNEXPECTED_CLOSE_MESSAGE) -> None:
        super().__init__(message)


class StatsNotFoundError(TsugiClientError):
    """The stats backend has no record for a root span; retrying is pointless."""

    def __init__(self, root_span_id: str) -> None:
        super().__init__(f"No stats record for root span {root_span_id}")
        self.root_span_id = root_span_id
