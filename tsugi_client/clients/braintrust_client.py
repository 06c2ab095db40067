"""
Braintrust trace stats client.

Queries aggregated token metrics of one trace directly through the BTQL API.
The root agent span aggregates the metrics of its children, so the span with
the highest token count is taken as the trace total. Braintrust ingests spans
asynchronously, which is why callers poll until the numbers settle.
"""

from __future__ import annotations

import logging
import re
import time

import httpx

from tsugi_client.chat.logging_utils import log_http_request
from tsugi_client.chat.models import StatsResponse, TraceStats
from tsugi_client.config import Configuration
from tsugi_client.errors import StatsNotFoundError

logger = logging.getLogger(__name__)

DEFAULT_API_URL = "https://api.braintrust.dev"

# Span ids are interpolated into the query text
_SPAN_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-]+$")

TRACE_STATS_QUERY = """
SELECT
  COALESCE(metrics.prompt_tokens, 0) as prompt_tokens,
  COALESCE(metrics.completion_tokens, 0) as completion_tokens,
  COALESCE(metrics.prompt_cached_tokens, 0) as cached_tokens,
  COALESCE(metrics.completion_reasoning_tokens, 0) as reasoning_tokens
FROM project_logs('{project_id}', shape => 'spans')
WHERE root_span_id = '{root_span_id}'
ORDER BY (COALESCE(metrics.prompt_tokens, 0) + COALESCE(metrics.completion_tokens, 0)) DESC
LIMIT 1
"""


class BraintrustClient:
    """StatsSource backed by the Braintrust REST and BTQL APIs."""

    def __init__(
        self,
        api_key: str,
        project_name: str,
        api_url: str = DEFAULT_API_URL,
        timeout: float = 10.0,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self.api_key = api_key
        self.project_name = project_name
        self._project_id: str | None = None
        self._owns_client = http_client is None
        self.client = http_client or httpx.AsyncClient(
            base_url=api_url,
            headers={"Authorization": f"Bearer {api_key}"},
            timeout=timeout,
            trust_env=False,
        )

    @classmethod
    def from_config(cls, configuration: Configuration) -> BraintrustClient:
        braintrust_config = configuration.get_braintrust_config()
        return cls(
            api_key=braintrust_config["api_key"],
            project_name=braintrust_config["project_name"],
            api_url=braintrust_config["api_url"],
            timeout=braintrust_config["timeout_seconds"],
        )

    @property
    def project_id(self) -> str | None:
        return self._project_id

    async def resolve_project_id(self) -> str | None:
        """
        Resolve the configured project name to its id.

        BTQL addresses projects by id. A successful lookup is cached for the
        lifetime of this client; a failed one is retried on the next call.
        """
        if self._project_id:
            return self._project_id

        start_time = time.monotonic()
        response = await self.client.get("/v1/project")
        log_http_request("GET", "/v1/project", response.status_code, (time.monotonic() - start_time) * 1000)
        response.raise_for_status()

        for project in response.json().get("objects") or []:
            if project.get("name") == self.project_name:
                self._project_id = project["id"]
                logger.info(f"Resolved Braintrust project '{self.project_name}' to {self._project_id}")
                return self._project_id

        logger.error(f"Braintrust project not found: {self.project_name}")
        return None

    async def fetch_trace_stats(self, root_span_id: str) -> TraceStats | None:
        """Aggregated token stats of a trace, or None if not ingested yet."""
        if not _SPAN_ID_PATTERN.match(root_span_id):
            raise StatsNotFoundError(root_span_id)

        project_id = await self.resolve_project_id()
        if project_id is None:
            return None

        query = TRACE_STATS_QUERY.format(project_id=project_id, root_span_id=root_span_id)
        start_time = time.monotonic()
        response = await self.client.post(
            "/btql",
            json={"query": query, "fmt": "json"},
            headers={"Content-Type": "application/json"},
        )
        log_http_request("POST", "/btql", response.status_code, (time.monotonic() - start_time) * 1000)
        response.raise_for_status()

        rows = response.json().get("data") or []
        if not rows:
            logger.debug("No Braintrust data yet for root span %s", root_span_id)
            return None

        row = rows[0]
        return TraceStats(
            prompt_tokens=row.get("prompt_tokens") or 0,
            completion_tokens=row.get("completion_tokens") or 0,
            cached_tokens=row.get("cached_tokens") or 0,
            reasoning_tokens=row.get("reasoning_tokens") or 0,
        )

    async def fetch_stats(self, root_span_id: str, conversation_id: str) -> StatsResponse:
        stats = await self.fetch_trace_stats(root_span_id)
        if stats is None:
            return StatsResponse(status="pending")
        return StatsResponse(status="resolved", stats=stats)

    async def close(self) -> None:
        if self._owns_client:
            await self.client.aclose()

    async def __aenter__(self) -> BraintrustClient:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: object,
    ) -> None:
        await self.close()
