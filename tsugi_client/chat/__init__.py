"""
Chat Module

Streaming message reconstruction and stats reconciliation.
"""

from .message_builder import MessageBuilder, strip_shell_tags
from .models import CumulativeStats, Message, MessageStats
from .session import ChatSession
from .stats_poller import StatsPoller, StatsSource

__all__ = [
    "ChatSession",
    "CumulativeStats",
    "Message",
    "MessageBuilder",
    "MessageStats",
    "StatsPoller",
    "StatsSource",
    "strip_shell_tags",
]
