"""
Message History Module

Persistence targets for finalized messages.
"""

from __future__ import annotations

from .memory_repo import InMemoryMessageRepo
from .repository import MessageRepository, visible_to_agent

__all__ = [
    "InMemoryMessageRepo",
    "MessageRepository",
    "visible_to_agent",
]
