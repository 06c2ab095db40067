"""Clients package containing the agent stream and stats clients."""

from __future__ import annotations

from .agent_client import AgentClient, AgentStream
from .braintrust_client import BraintrustClient
from .stats_client import StatsClient

__all__ = ["AgentClient", "AgentStream", "BraintrustClient", "StatsClient"]
