"""
In-Memory Message Repository Implementation

Session-only storage used by the CLI and tests; all data is lost on exit.
"""

from __future__ import annotations

import logging

from tsugi_client.chat.models import Message, MessageStats
from tsugi_client.chat.stats_utils import merge_message_stats

from .repository import MessageRepository

logger = logging.getLogger(__name__)


class InMemoryMessageRepo(MessageRepository):
    """Messages per conversation, kept in arrival order."""

    def __init__(self) -> None:
        self._conversations: dict[str, list[Message]] = {}

    async def save_message(self, conversation_id: str, message: Message, index: int) -> None:
        messages = self._conversations.setdefault(conversation_id, [])
        stored = message.model_copy(deep=True)

        if index < len(messages):
            messages[index] = stored
        else:
            if index > len(messages):
                logger.warning(
                    f"Message {message.id} saved at index {index} but conversation "
                    f"{conversation_id} only has {len(messages)} messages"
                )
            messages.append(stored)
        logger.debug(f"Saved {message.role} message {message.id} to {conversation_id}")

    async def update_stats(self, conversation_id: str, message_id: str, stats: MessageStats) -> bool:
        for i, message in enumerate(self._conversations.get(conversation_id, [])):
            if message.id == message_id:
                merged = merge_message_stats(message.stats, stats)
                self._conversations[conversation_id][i] = message.model_copy(update={"stats": merged})
                return True
        logger.debug(f"Stats update for unknown message {message_id} in {conversation_id}")
        return False

    async def get_messages(self, conversation_id: str) -> list[Message]:
        return list(self._conversations.get(conversation_id, []))

    async def list_conversations(self) -> list[str]:
        return list(self._conversations.keys())

    async def clear_conversation(self, conversation_id: str) -> bool:
        return self._conversations.pop(conversation_id, None) is not None
