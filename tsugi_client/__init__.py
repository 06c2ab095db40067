"""
Tsugi chat client.

Streams agent turns, rebuilds them into structured messages, and resolves
late token stats from the observability backend.
"""

from __future__ import annotations

__version__ = "0.1.0"
