#!/usr/bin/env python3
"""
Tests for the HTTP clients: agent stream, stats endpoint and Braintrust.
"""

import json

import httpx
import pytest

from tsugi_client.chat.models import SessionRequest
from tsugi_client.clients import AgentClient, BraintrustClient, StatsClient
from tsugi_client.errors import AgentStreamError, StatsNotFoundError


def _mock_client(handler, base_url: str) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url=base_url)


# ---------- Agent client ----------


async def test_agent_stream_yields_body_and_sandbox_header():
    seen: dict = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["path"] = request.url.path
        seen["accept"] = request.headers["accept"]
        seen["body"] = json.loads(request.content)
        return httpx.Response(
            200,
            headers={"content-type": "text/event-stream", "X-Sandbox-Id": "sbx-1"},
            content=b'data: {"type":"done"}\n\n',
        )

    client = AgentClient(base_url="http://agent", http_client=_mock_client(handler, "http://agent"))
    request = SessionRequest(messages=[{"role": "user", "rawContent": "hi", "parts": []}], conversation_id="c1")

    async with client.stream(request) as stream:
        assert stream.sandbox_id == "sbx-1"
        body = b"".join([chunk async for chunk in stream.chunks()])

    assert body == b'data: {"type":"done"}\n\n'
    assert seen["path"] == "/api/chat"
    assert seen["accept"] == "text/event-stream"
    assert seen["body"] == {
        "messages": [{"role": "user", "rawContent": "hi", "parts": []}],
        "mode": "task",
        "conversationId": "c1",
    }


async def test_agent_stream_non_success_status_raises():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(401, text="bad key")

    client = AgentClient(base_url="http://agent", http_client=_mock_client(handler, "http://agent"))

    with pytest.raises(AgentStreamError) as exc_info:
        async with client.stream(SessionRequest(messages=[])):
            pass

    assert exc_info.value.status_code == 401
    assert "bad key" in str(exc_info.value)


async def test_agent_stream_accepts_any_2xx_status():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            201,
            headers={"content-type": "text/event-stream"},
            content=b'data: {"type":"done"}\n\n',
        )

    client = AgentClient(base_url="http://agent", http_client=_mock_client(handler, "http://agent"))

    async with client.stream(SessionRequest(messages=[])) as stream:
        body = b"".join([chunk async for chunk in stream.chunks()])

    assert body == b'data: {"type":"done"}\n\n'


async def test_agent_stream_connection_error_is_wrapped():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    client = AgentClient(base_url="http://agent", http_client=_mock_client(handler, "http://agent"))

    with pytest.raises(AgentStreamError):
        async with client.stream(SessionRequest(messages=[])):
            pass


# ---------- Stats endpoint client ----------


async def test_stats_client_resolved_response():
    seen: dict = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = request.url
        return httpx.Response(
            200,
            json={
                "status": "resolved",
                "stats": {"promptTokens": 12, "completionTokens": 3, "cachedTokens": 1, "reasoningTokens": 0},
            },
        )

    client = StatsClient(base_url="http://app", http_client=_mock_client(handler, "http://app"))
    response = await client.fetch_stats("span-1", "conv-1")

    assert seen["url"].path == "/api/stats/span-1"
    assert seen["url"].params["conversationId"] == "conv-1"
    assert response.status == "resolved"
    assert response.stats.prompt_tokens == 12


async def test_stats_client_pending_response():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"status": "pending", "stats": None})

    client = StatsClient(base_url="http://app", http_client=_mock_client(handler, "http://app"))
    response = await client.fetch_stats("span-1", "conv-1")

    assert response.status == "pending"
    assert response.stats is None


async def test_stats_client_not_found():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(404, json={"error": "Not found"})

    client = StatsClient(base_url="http://app", http_client=_mock_client(handler, "http://app"))

    with pytest.raises(StatsNotFoundError):
        await client.fetch_stats("span-1", "conv-1")


async def test_stats_client_server_error_is_http_error():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(503)

    client = StatsClient(base_url="http://app", http_client=_mock_client(handler, "http://app"))

    with pytest.raises(httpx.HTTPStatusError):
        await client.fetch_stats("span-1", "conv-1")


# ---------- Braintrust client ----------


class BraintrustHandler:
    def __init__(self, rows: list[dict] | None = None):
        self.rows = rows or []
        self.project_lookups = 0
        self.queries: list[str] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        if request.url.path == "/v1/project":
            self.project_lookups += 1
            return httpx.Response(
                200,
                json={"objects": [{"id": "p-other", "name": "other"}, {"id": "p-123", "name": "tsugi"}]},
            )
        if request.url.path == "/btql":
            self.queries.append(json.loads(request.content)["query"])
            return httpx.Response(200, json={"data": self.rows})
        return httpx.Response(404)


def _braintrust(handler: BraintrustHandler) -> BraintrustClient:
    return BraintrustClient(
        api_key="key",
        project_name="tsugi",
        http_client=_mock_client(handler, "https://api.braintrust.dev"),
    )


async def test_braintrust_resolves_project_once_and_queries_trace():
    handler = BraintrustHandler(
        rows=[{"prompt_tokens": 40, "completion_tokens": 8, "cached_tokens": 4, "reasoning_tokens": 2}]
    )
    client = _braintrust(handler)

    first = await client.fetch_stats("span-1", "conv-1")
    second = await client.fetch_stats("span-1", "conv-1")

    assert handler.project_lookups == 1
    assert client.project_id == "p-123"
    assert "project_logs('p-123'" in handler.queries[0]
    assert "root_span_id = 'span-1'" in handler.queries[0]
    assert first.status == "resolved"
    assert first.stats.prompt_tokens == 40
    assert first.stats.cached_tokens == 4
    assert second == first


async def test_braintrust_no_rows_is_pending():
    client = _braintrust(BraintrustHandler(rows=[]))

    response = await client.fetch_stats("span-1", "conv-1")

    assert response.status == "pending"


async def test_braintrust_rejects_unsafe_span_id():
    handler = BraintrustHandler()
    client = _braintrust(handler)

    with pytest.raises(StatsNotFoundError):
        await client.fetch_stats("x' OR 1=1 --", "conv-1")
    assert handler.queries == []
