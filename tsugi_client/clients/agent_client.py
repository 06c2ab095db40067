"""
Agent stream HTTP client.

Opens the server-pushed event stream of one agent turn: a POST of the session
request answered with text/event-stream. The body is handed out as raw byte
chunks; frame decoding happens in tsugi_client.chat.sse.
"""

from __future__ import annotations

import logging
import time
from collections.abc import AsyncGenerator, AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

import httpx

from tsugi_client.chat.logging_utils import log_http_request
from tsugi_client.chat.models import SessionRequest
from tsugi_client.config import Configuration
from tsugi_client.errors import AgentStreamError

logger = logging.getLogger(__name__)

SANDBOX_ID_HEADER = "X-Sandbox-Id"


class AgentStream:
    """An open agent response: headers plus a lazily consumed body."""

    def __init__(self, response: httpx.Response) -> None:
        self.response = response

    @property
    def sandbox_id(self) -> str | None:
        """Sandbox announced by the backend before any event arrives."""
        return self.response.headers.get(SANDBOX_ID_HEADER) or None

    async def chunks(self) -> AsyncGenerator[bytes]:
        """Yield body chunks; transport failures surface as AgentStreamError."""
        try:
            async for chunk in self.response.aiter_bytes():
                yield chunk
        except httpx.HTTPError as e:
            logger.error(f"HTTP error during agent stream: {e}")
            raise AgentStreamError(f"HTTP error: {e!s}") from e


class AgentClient:
    """HTTP client for the agent endpoint with configurable connection pooling."""

    def __init__(
        self,
        base_url: str,
        path: str = "/api/chat",
        headers: dict[str, str] | None = None,
        pool_config: dict[str, Any] | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self.path = path
        self._owns_client = http_client is None

        if http_client is not None:
            self.client = http_client
        else:
            pool = pool_config or {}
            self.client = httpx.AsyncClient(
                base_url=base_url,
                headers={"Content-Type": "application/json", **(headers or {})},
                timeout=httpx.Timeout(
                    pool.get("request_timeout_seconds", 300.0),
                    connect=pool.get("connect_timeout_seconds", 10.0),
                ),
                http2=pool.get("http2", True),
                limits=httpx.Limits(
                    max_connections=pool.get("max_connections", 10),
                    max_keepalive_connections=pool.get("max_keepalive_connections", 5),
                    keepalive_expiry=pool.get("keepalive_expiry_seconds", 30.0),
                ),
                trust_env=False,
            )
            logger.info(f"Agent client initialized for {base_url}{path}")

    @classmethod
    def from_config(cls, configuration: Configuration) -> AgentClient:
        agent_config = configuration.get_agent_config()
        return cls(
            base_url=agent_config["base_url"],
            path=agent_config["path"],
            headers=agent_config.get("headers"),
            pool_config=configuration.get_connection_pool_config(),
        )

    @asynccontextmanager
    async def stream(self, request: SessionRequest) -> AsyncIterator[AgentStream]:
        """
        Open one agent stream.

        Raises AgentStreamError when the connection fails or the backend
        answers with a non-success status. The response is closed when the
        context exits, which also aborts an in-flight body on cancellation.
        """
        payload = request.model_dump(by_alias=True, exclude_none=True)
        start_time = time.monotonic()
        logger.info("→ Agent: POST %s (%d messages, mode=%s)", self.path, len(request.messages), request.mode)

        try:
            async with self.client.stream(
                "POST",
                self.path,
                json=payload,
                headers={"Accept": "text/event-stream", "Accept-Encoding": "identity"},
            ) as response:
                duration_ms = (time.monotonic() - start_time) * 1000
                log_http_request("POST", self.path, response.status_code, duration_ms)

                if not response.is_success:
                    error_text = (await response.aread()).decode("utf-8", errors="replace")
                    raise AgentStreamError(
                        f"Agent API error {response.status_code}: {error_text[:500]}",
                        status_code=response.status_code,
                    )

                content_type = response.headers.get("content-type", "")
                if "text/event-stream" not in content_type:
                    logger.warning(f"Unexpected content-type: {content_type}, proceeding anyway")

                yield AgentStream(response)
        except httpx.HTTPError as e:
            logger.error(f"HTTP error opening agent stream: {e}")
            raise AgentStreamError(f"HTTP error: {e!s}") from e

    async def close(self) -> None:
        """Close the HTTP client if this instance created it."""
        if self._owns_client:
            await self.client.aclose()

    async def __aenter__(self) -> AgentClient:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: object,
    ) -> None:
        await self.close()
