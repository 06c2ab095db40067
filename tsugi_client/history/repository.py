"""
Message Repository Interface and Utilities

This module defines the repository protocol used as the persistence callback
target, plus the context filter applied when building a session request.
"""

from __future__ import annotations

from typing import Protocol

from tsugi_client.chat.models import AgentKind, Message, MessageStats


def visible_to_agent(message: Message, agent: AgentKind) -> bool:
    """
    Check if a message belongs in the context of the given agent.

    Task mode sees task messages (legacy messages default to task); skill
    mode sees only skill messages.
    """
    return message.agent == agent


# ---------- Repository interface ----------


class MessageRepository(Protocol):
    """Protocol defining the interface for message storage backends."""

    async def save_message(self, conversation_id: str, message: Message, index: int) -> None:
        """Store a finalized message at its position in the conversation."""
        ...

    async def update_stats(self, conversation_id: str, message_id: str, stats: MessageStats) -> bool:
        """Merge late-resolved stats into a stored message. False if unknown."""
        ...

    async def get_messages(self, conversation_id: str) -> list[Message]: ...

    async def list_conversations(self) -> list[str]: ...

    async def clear_conversation(self, conversation_id: str) -> bool: ...
