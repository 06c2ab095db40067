"""HTTP client for the stats endpoint polled by the StatsPoller."""

from __future__ import annotations

import logging
import time
from typing import Any

import httpx

from tsugi_client.chat.logging_utils import log_http_request
from tsugi_client.chat.models import StatsResponse
from tsugi_client.config import Configuration
from tsugi_client.errors import StatsNotFoundError

logger = logging.getLogger(__name__)

HTTP_NOT_FOUND = 404


class StatsClient:
    """
    Queries GET {path}/{rootSpanId}?conversationId=<id>.

    Answers are {"status": "resolved", "stats": {...}} or {"status": "pending"};
    a 404 means the trace will never have stats.
    """

    def __init__(
        self,
        base_url: str,
        path: str = "/api/stats",
        timeout: float = 10.0,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self.path = path.rstrip("/")
        self._owns_client = http_client is None
        self.client = http_client or httpx.AsyncClient(base_url=base_url, timeout=timeout, trust_env=False)

    @classmethod
    def from_config(cls, configuration: Configuration) -> StatsClient:
        stats_config = configuration.get_stats_config()
        return cls(
            base_url=stats_config["base_url"],
            path=stats_config["path"],
            timeout=stats_config["timeout_seconds"],
        )

    async def fetch_stats(self, root_span_id: str, conversation_id: str) -> StatsResponse:
        url = f"{self.path}/{root_span_id}"
        params: dict[str, Any] = {"conversationId": conversation_id}

        start_time = time.monotonic()
        response = await self.client.get(url, params=params)
        log_http_request("GET", url, response.status_code, (time.monotonic() - start_time) * 1000)

        if response.status_code == HTTP_NOT_FOUND:
            raise StatsNotFoundError(root_span_id)
        response.raise_for_status()
        return StatsResponse.model_validate(response.json())

    async def close(self) -> None:
        if self._owns_client:
            await self.client.aclose()

    async def __aenter__(self) -> StatsClient:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: object,
    ) -> None:
        await self.close()
