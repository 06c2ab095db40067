"""
Sandbox lifecycle tracking

The agent executes shell commands in a remote sandbox that outlives a single
turn. The stream announces its lifecycle; the session re-sends the active
sandbox id with the next request so the backend can reuse it.
"""

from __future__ import annotations

import logging

from tsugi_client.chat.models import (
    SandboxActiveEvent,
    SandboxStatus,
    SandboxTerminatedEvent,
    SandboxTimeoutEvent,
)

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_MESSAGE = "Sandbox timed out due to inactivity."

SandboxEvent = SandboxActiveEvent | SandboxTerminatedEvent | SandboxTimeoutEvent


class SandboxTracker:
    """Current sandbox id/status plus the last timeout notice."""

    def __init__(self) -> None:
        self.sandbox_id: str | None = None
        self.status: SandboxStatus = "disconnected"
        self.timeout_message: str | None = None

    def connect(self, sandbox_id: str) -> None:
        if sandbox_id != self.sandbox_id:
            logger.info("← Agent: sandbox %s active", sandbox_id)
        self.sandbox_id = sandbox_id
        self.status = "connected"

    def disconnect(self) -> None:
        self.sandbox_id = None
        self.status = "disconnected"

    def apply(self, event: SandboxEvent) -> None:
        match event:
            case SandboxActiveEvent(sandbox_id=sandbox_id):
                # An active event without an id carries no usable state
                if sandbox_id:
                    self.connect(sandbox_id)
            case SandboxTerminatedEvent():
                logger.info("← Agent: sandbox %s terminated", self.sandbox_id)
                self.disconnect()
            case SandboxTimeoutEvent(content=content):
                logger.warning("← Agent: sandbox %s timed out", self.sandbox_id)
                self.timeout_message = content or DEFAULT_TIMEOUT_MESSAGE
                self.disconnect()

    def clear_timeout(self) -> None:
        self.timeout_message = None

    def reset(self) -> None:
        self.disconnect()
        self.timeout_message = None
