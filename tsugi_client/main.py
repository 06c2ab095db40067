"""
Command line entry point - sends one prompt and prints the streamed reply.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys
from typing import Any

from tsugi_client.chat import ChatSession
from tsugi_client.chat.logging_utils import set_module_features
from tsugi_client.chat.models import Message, MessageStats, TextPart, ToolPart
from tsugi_client.chat.stats_poller import StatsSource
from tsugi_client.clients import AgentClient, BraintrustClient, StatsClient
from tsugi_client.config import Configuration
from tsugi_client.history import InMemoryMessageRepo


def configure_logging(logging_config: dict[str, Any]) -> None:
    """
    Logging configuration with hierarchical loggers and feature control.

    Levels are set on parent loggers so module loggers inherit them; feature
    flags are stored for should_log_feature.
    """
    level_map = {
        "DEBUG": logging.DEBUG,
        "INFO": logging.INFO,
        "WARNING": logging.WARNING,
        "ERROR": logging.ERROR,
        "CRITICAL": logging.CRITICAL,
    }

    global_level = logging_config.get("level", "WARNING")
    logging.getLogger().setLevel(level_map.get(global_level, logging.WARNING))

    if "format" in logging_config:
        for handler in logging.getLogger().handlers:
            if isinstance(handler, logging.StreamHandler):
                handler.setFormatter(logging.Formatter(logging_config["format"]))

    module_logger_map = {
        "chat": {
            "loggers": ["tsugi_client.chat"],
            "default_level": "INFO",
        },
        "clients": {
            "loggers": ["tsugi_client.clients"],
            "default_level": "WARNING",
        },
    }

    for module_name, module_config in logging_config.get("modules", {}).items():
        if not isinstance(module_config, dict):
            continue

        module_level = module_config.get(
            "level", module_logger_map.get(module_name, {}).get("default_level", global_level)
        )
        level_value = level_map.get(module_level, logging.WARNING)
        for logger_name in module_logger_map.get(module_name, {}).get("loggers", []):
            logging.getLogger(logger_name).setLevel(level_value)

        set_module_features(module_name, module_config.get("enable_features", {}))


def create_stats_source(config: Configuration) -> StatsSource:
    """Stats source selected by stats.source."""
    if config.get_stats_config()["source"] == "braintrust":
        return BraintrustClient.from_config(config)
    return StatsClient.from_config(config)


def _format_stats(stats: MessageStats | None) -> str:
    if stats is None:
        return "no stats"
    if stats.tokens_unavailable:
        return f"{stats.stats_status}, tokens unavailable, {stats.execution_time_ms or 0:.0f}ms"
    return (
        f"{stats.stats_status}, prompt={stats.prompt_tokens} completion={stats.completion_tokens} "
        f"cached={stats.cached_tokens} reasoning={stats.reasoning_tokens}, "
        f"{stats.execution_time_ms or 0:.0f}ms"
    )


def _print_message(message: Message) -> None:
    for part in message.parts:
        if isinstance(part, TextPart):
            print(part.content)
        elif isinstance(part, ToolPart):
            print(f"$ {part.command}  [{part.status}]")
            if part.content:
                print(part.content)
    if message.interrupted:
        print("[interrupted]")


async def main(prompt: str, mode: str, conversation_id: str | None) -> int:
    """Run one turn against the configured agent."""
    config = Configuration()
    configure_logging(config.get_logging_config())

    polling_config = config.get_polling_config()
    repo = InMemoryMessageRepo()
    agent_client = AgentClient.from_config(config)
    stats_source = create_stats_source(config)

    session = ChatSession(
        agent_client,
        stats_source=stats_source,
        conversation_id=conversation_id,
        polling_config=polling_config,
        on_message_complete=lambda message, index: repo.save_message(
            session.conversation_id, message, index
        ),
        on_stats_resolved=lambda message_id, stats: repo.update_stats(
            session.conversation_id, message_id, stats
        ),
    )

    loop = asyncio.get_running_loop()
    if sys.platform != "win32":
        loop.add_signal_handler(signal.SIGINT, lambda: asyncio.ensure_future(session.stop()))

    try:
        message = await session.send(prompt, mode=mode)  # type: ignore[arg-type]
        if message is None:
            print(f"Error: {session.error}", file=sys.stderr)
            return 1
        _print_message(message)

        # Worst case: every attempt used, one interval apart
        poller = session.stats_poller
        if poller is not None and poller.is_polling(message.id):
            window = polling_config["max_attempts"] * polling_config["base_interval"] + 1
            deadline = loop.time() + window
            while poller.is_polling(message.id) and loop.time() < deadline:
                await asyncio.sleep(0.1)

        final = next((m for m in session.messages if m.id == message.id), message)
        totals = session.cumulative_stats
        print(f"\nStats: {_format_stats(final.stats)}")
        print(
            f"Conversation: {totals.message_count} message(s), "
            f"{totals.total_prompt_tokens + totals.total_completion_tokens} tokens, "
            f"{totals.tokens_unavailable_count} unavailable"
        )
        return 0
    finally:
        await session.close()
        await agent_client.close()
        await stats_source.close()  # type: ignore[attr-defined]


def cli_main() -> None:
    """Synchronous CLI entrypoint that runs the async main."""
    parser = argparse.ArgumentParser(prog="tsugi-chat", description="Send one prompt to the agent")
    parser.add_argument("prompt", help="User message to send")
    parser.add_argument("--mode", choices=["task", "codify-skill"], default="task")
    parser.add_argument("--conversation-id", default=None)
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO, format="%(asctime)s - %(levelname)s - %(message)s")
    sys.exit(asyncio.run(main(args.prompt, args.mode, args.conversation_id)))


if __name__ == "__main__":
    cli_main()
