"""
Service-level tests for the PostgREST client.

Requests go through httpx.MockTransport, so the real query-string and
header handling is exercised without a running Supabase instance.
"""

import asyncio

import httpx
import pytest
from loguru import logger

from dashboard.utils.postgrest_client import (
    PostgrestClient,
    build_params,
    parse_content_range,
)
from domains.document_pool.cancellation import CancellationToken
from domains.document_pool.errors import SourceTimeout, SourceUnavailable
from domains.document_pool.models import DocumentFilter, ProcessingState, SourceId
from domains.document_pool.sources.base import Condition, RowQuery
from domains.document_pool.sources.pipelines import PipelineAdapter
from tests.fakes import pipeline_row


def make_client(handler) -> PostgrestClient:
    return PostgrestClient(
        base_url="http://supabase.test/rest/v1",
        api_key="service-key",
        timeout=5.0,
        transport=httpx.MockTransport(handler),
    )


def test_build_params_with_anti_join():
    query = RowQuery(
        conditions=(
            Condition("status", "in", ("chunked", "processing")),
            Condition("file_name", "ilike", "*report*"),
        ),
        descending=False,
        missing_relation="pipeline_a_chunks_raw",
    )

    assert build_params(query) == [
        ("select", "*,pipeline_a_chunks_raw(id)"),
        ("status", 'in.("chunked","processing")'),
        ("file_name", "ilike.*report*"),
        ("pipeline_a_chunks_raw", "is.null"),
        ("order", "created_at.asc"),
    ]


def test_parse_content_range():
    assert parse_content_range("0-0/37") == 37
    assert parse_content_range("*/0") == 0
    with pytest.raises(ValueError):
        parse_content_range("0-9/*")
    with pytest.raises(ValueError):
        parse_content_range(None)


@pytest.mark.asyncio
async def test_count_uses_head_and_exact_count():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(206, headers={"Content-Range": "0-0/37"})

    client = make_client(handler)
    await client.connect()
    total = await client.count("pipeline_a_documents", RowQuery((Condition("status", "eq", "ready"),)))
    await client.close()

    request = seen[0]
    assert total == 37
    assert request.method == "HEAD"
    assert request.url.path == "/rest/v1/pipeline_a_documents"
    assert request.url.params["status"] == "eq.ready"
    assert request.headers["Prefer"] == "count=exact"
    assert request.headers["apikey"] == "service-key"
    assert request.headers["Authorization"] == "Bearer service-key"


@pytest.mark.asyncio
async def test_select_pages_and_strips_relation():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json=[{"id": "a", "pipeline_a_chunks_raw": []}])

    client = make_client(handler)
    await client.connect()
    rows = await client.select(
        "pipeline_a_documents", RowQuery(missing_relation="pipeline_a_chunks_raw"), 50, 25
    )
    await client.close()

    params = seen[0].url.params
    assert rows == [{"id": "a"}]
    assert params["offset"] == "50"
    assert params["limit"] == "25"
    assert params["order"] == "created_at.desc"
    assert params["pipeline_a_chunks_raw"] == "is.null"


@pytest.mark.asyncio
async def test_delete_by_ids():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json=[{"id": "a"}, {"id": "b"}])

    client = make_client(handler)
    await client.connect()
    removed = await client.delete_by_ids("knowledge_documents", ["a", "b"])
    nothing = await client.delete_by_ids("knowledge_documents", [])
    await client.close()

    assert removed == 2
    assert nothing == 0
    assert len(seen) == 1
    assert seen[0].method == "DELETE"
    assert seen[0].url.params["id"] == 'in.("a","b")'


@pytest.mark.asyncio
async def test_adapter_over_http_normalizes_rows():
    def handler(request: httpx.Request) -> httpx.Response:
        if request.method == "HEAD":
            return httpx.Response(206, headers={"Content-Range": "0-0/2"})
        return httpx.Response(200, json=[
            pipeline_row("a", status="processing"),
            pipeline_row("b", status="chunked", minutes_ago=3),
        ])

    client = make_client(handler)
    await client.connect()
    adapter = PipelineAdapter(SourceId.PIPELINE_A, client.table("pipeline_a_documents", 1.0))
    doc_filter = DocumentFilter(processing_states=frozenset({ProcessingState.PROCESSING}))

    total = await adapter.count(CancellationToken(), doc_filter)
    docs = await adapter.fetch_range(CancellationToken(), 0, 10, doc_filter)
    await client.close()

    assert total == 2
    assert [d.processing_state for d in docs] == [ProcessingState.PROCESSING] * 2


@pytest.mark.asyncio
async def test_http_errors_map_to_source_errors():
    def server_error(request: httpx.Request) -> httpx.Response:
        return httpx.Response(500, json={"message": "boom"})

    def timeout(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("timed out", request=request)

    for handler, expected in ((server_error, SourceUnavailable), (timeout, SourceTimeout)):
        client = make_client(handler)
        await client.connect()
        adapter = PipelineAdapter(SourceId.PIPELINE_B, client.table("pipeline_b_documents", 1.0))
        with pytest.raises(expected):
            await adapter.fetch_range(CancellationToken(), 0, 10)
        await client.close()


@pytest.mark.asyncio
async def test_change_watcher_fires_when_fingerprint_changes():
    state = {"count": 1}

    def handler(request: httpx.Request) -> httpx.Response:
        if request.method == "HEAD":
            total = state["count"]
            return httpx.Response(206, headers={"Content-Range": f"0-0/{total}"})
        return httpx.Response(200, json=[{"updated_at": "2024-05-01T12:00:00Z"}])

    client = make_client(handler)
    await client.connect()
    table = client.table("pipeline_c_documents", poll_interval=0.01)
    changed = asyncio.Event()
    payloads = []

    def on_change(payload):
        payloads.append(payload)
        changed.set()

    unsubscribe = table.subscribe_to_changes(on_change)
    await asyncio.sleep(0.05)
    assert payloads == []

    state["count"] = 2
    await asyncio.wait_for(changed.wait(), timeout=2.0)
    unsubscribe()
    await client.close()

    assert payloads[0]["table"] == "pipeline_c_documents"
    assert payloads[0]["count"] == 2


@pytest.mark.asyncio
async def test_ping_and_lifecycle():
    client = make_client(lambda request: httpx.Response(200, json={}))

    assert await client.ping() is False
    with pytest.raises(RuntimeError):
        _ = client.client

    await client.connect()
    assert await client.ping() is True
    await client.close()
    assert await client.ping() is False


@pytest.mark.asyncio
async def test_fingerprint_falls_back_to_created_at():
    rejected = []

    def handler(request: httpx.Request) -> httpx.Response:
        if request.method == "HEAD":
            return httpx.Response(206, headers={"Content-Range": "0-0/3"})
        if request.url.params["order"].startswith("updated_at"):
            rejected.append(request)
            return httpx.Response(400, json={"message": "column updated_at does not exist"})
        return httpx.Response(200, json=[{"created_at": "2024-05-01T11:00:00Z"}])

    client = make_client(handler)
    await client.connect()
    table = client.table("pipeline_b_documents", poll_interval=1.0)

    first = await table.fingerprint()
    second = await table.fingerprint()
    await client.close()

    assert first == second == (3, "2024-05-01T11:00:00Z")
    assert table.stamp_column == "created_at"
    assert len(rejected) == 1


@pytest.mark.asyncio
async def test_fingerprint_count_is_unordered():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        if request.method == "HEAD":
            return httpx.Response(206, headers={"Content-Range": "0-0/0"})
        return httpx.Response(200, json=[])

    client = make_client(handler)
    await client.connect()
    assert await client.table("folders", poll_interval=1.0).fingerprint() == (0, None)
    await client.close()

    assert "order" not in seen[0].url.params
    assert seen[1].url.params["order"] == "updated_at.desc"


@pytest.mark.asyncio
async def test_change_watcher_warns_once_per_outage():
    state = {"down": True, "polls": 0}
    recovered = asyncio.Event()

    def handler(request: httpx.Request) -> httpx.Response:
        if request.method == "HEAD":
            state["polls"] += 1
            if state["down"]:
                return httpx.Response(503, json={"message": "unavailable"})
            recovered.set()
            return httpx.Response(206, headers={"Content-Range": "0-0/1"})
        return httpx.Response(200, json=[{"updated_at": "2024-05-01T12:00:00Z"}])

    messages = []
    sink = logger.add(lambda m: messages.append((m.record["level"].name, m.record["message"])), level="INFO")
    client = make_client(handler)
    await client.connect()
    unsubscribe = client.table("pipeline_a_documents", poll_interval=0.01).subscribe_to_changes(lambda p: None)
    try:
        while state["polls"] < 3:
            await asyncio.sleep(0.01)
        state["down"] = False
        await asyncio.wait_for(recovered.wait(), timeout=2.0)
        await asyncio.sleep(0.02)
    finally:
        unsubscribe()
        await client.close()
        logger.remove(sink)

    watcher = [(level, text) for level, text in messages if "Change watcher" in text]
    assert [level for level, _ in watcher] == ["WARNING", "INFO"]
    assert watcher[1][1] == "Change watcher for pipeline_a_documents recovered"
