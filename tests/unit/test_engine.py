import asyncio

import httpx
import pytest

from dashboard.utils.config import Settings
from domains.document_pool.engine import SyncEngine, unfiled_documents
from domains.document_pool.errors import SnapshotUnavailable, SourceUnavailable
from domains.document_pool.folders import find_node
from domains.document_pool.health import STUCK_PROCESSING, default_categories
from domains.document_pool.models import SourceId
from domains.document_pool.scheduler import SchedulerState
from domains.document_pool.sources.catalog import FolderCatalog
from domains.document_pool.sources.pipelines import KnowledgeAdapter, PipelineAdapter
from tests.fakes import InMemoryTable, ManualClock, knowledge_row, pipeline_row, settle


def build_engine(pipeline_rows=(), knowledge_rows=(), folder_rows=(), page_size=50):
    clock = ManualClock()
    tables = {
        SourceId.PIPELINE_A: InMemoryTable(pipeline_rows),
        SourceId.KNOWLEDGE: InMemoryTable(knowledge_rows),
    }
    adapters = [
        PipelineAdapter(SourceId.PIPELINE_A, tables[SourceId.PIPELINE_A]),
        KnowledgeAdapter(SourceId.KNOWLEDGE, tables[SourceId.KNOWLEDGE]),
    ]
    folders = InMemoryTable(folder_rows)
    engine = SyncEngine(
        adapters,
        catalog=FolderCatalog(folders),
        categories=default_categories(Settings()),
        deleters=tables,
        clock=clock,
        page_size=page_size,
    )
    return engine, tables, folders, clock


@pytest.mark.asyncio
async def test_initial_load_builds_complete_snapshot():
    engine, _, _, _ = build_engine(
        pipeline_rows=[
            pipeline_row("p1", folder="Legal/Contracts", minutes_ago=3),
            pipeline_row("p2", status="processing", minutes_ago=60),
        ],
        knowledge_rows=[knowledge_row("k1", folder="Legal", minutes_ago=1)],
        folder_rows=[{"id": "f1", "name": "Archive"}],
    )

    engine.start()
    await engine.wait_until_settled()

    page = await engine.get_merged_page(0)
    assert [d.id for d in page.items] == ["k1", "p1", "p2"]
    assert page.total_count == 3

    forest = engine.get_folder_forest()
    assert [n.full_path for n in forest] == ["Archive", "Legal"]
    assert find_node(forest, "Legal").recursive_count == 2
    assert [d.id for d in engine.get_unfiled()] == ["p2"]
    assert [d.id for d in engine.get_folder_documents("Legal")] == ["k1", "p1"]
    with pytest.raises(KeyError):
        engine.get_folder_documents("Legal/Missing")

    health = {c.key: c for c in engine.get_health_snapshot()}
    assert health[STUCK_PROCESSING].count == 1

    status = engine.status()
    assert status["state"] == "idle"
    assert status["subscribed"]
    assert status["loaded_page"] == 0
    await engine.stop()


@pytest.mark.asyncio
async def test_views_raise_before_first_snapshot():
    engine, _, _, _ = build_engine()

    with pytest.raises(SnapshotUnavailable):
        engine.get_folder_forest()
    with pytest.raises(SnapshotUnavailable):
        engine.get_health_snapshot()


@pytest.mark.asyncio
async def test_change_feed_triggers_debounced_reload():
    engine, tables, _, clock = build_engine(pipeline_rows=[pipeline_row("p1")])
    engine.start()
    await engine.wait_until_settled()

    table = tables[SourceId.PIPELINE_A]
    table.rows.append(pipeline_row("p2", minutes_ago=-1))
    table.emit()
    table.emit()
    await settle()
    assert len(engine.snapshot.page.items) == 1

    clock.advance(2.0)
    await settle()
    await engine.wait_until_settled()

    assert [d.id for d in engine.snapshot.page.items] == ["p2", "p1"]
    assert engine.status()["events_forwarded"] == 2
    await engine.stop()


@pytest.mark.asyncio
async def test_other_page_is_loaded_on_demand():
    rows = [pipeline_row(f"p{n}", minutes_ago=n) for n in range(5)]
    engine, _, _, _ = build_engine(pipeline_rows=rows, page_size=2)
    engine.start()
    await engine.wait_until_settled()

    second = await engine.get_merged_page(1)

    assert second.page_index == 1
    assert [d.id for d in second.items] == ["p2", "p3"]
    assert engine.scheduler.page_index == 1
    await engine.stop()


@pytest.mark.asyncio
async def test_failed_load_keeps_last_snapshot():
    engine, tables, _, _ = build_engine(pipeline_rows=[pipeline_row("p1")])
    engine.start()
    await engine.wait_until_settled()
    before = engine.snapshot

    tables[SourceId.KNOWLEDGE].fail_with = httpx.ConnectError("down")
    with pytest.raises(SnapshotUnavailable):
        await engine.get_merged_page(3)

    assert engine.snapshot is before
    assert engine.scheduler.state is SchedulerState.BACKOFF
    assert engine.status()["error_notice"] is not None
    await engine.stop()


@pytest.mark.asyncio
async def test_status_reports_exhausted_retries_during_cooldown():
    engine, tables, _, clock = build_engine(pipeline_rows=[pipeline_row("p1")])
    tables[SourceId.PIPELINE_A].fail_with = httpx.ConnectError("down")

    engine.start()
    await engine.wait_until_settled()
    for step in (1.0, 2.0, 4.0):
        clock.advance(step)
        await engine.wait_until_settled()
    assert engine.scheduler.state is SchedulerState.COOLDOWN
    assert engine.status()["error_notice_exhausted"] is False

    clock.advance(3.0)
    await settle()

    status = engine.status()
    assert status["retry_available"] is True
    assert status["error_notice_exhausted"] is True
    assert "exhausted" in status["error_notice"]
    await engine.stop()


@pytest.mark.asyncio
async def test_folder_catalog_failure_does_not_fail_the_cycle():
    engine, _, folders, _ = build_engine(pipeline_rows=[pipeline_row("p1", folder="Inbox")])
    folders.fail_with = RuntimeError("no folders table")

    engine.start()
    await engine.wait_until_settled()

    assert [n.full_path for n in engine.get_folder_forest()] == ["Inbox"]
    await engine.stop()


@pytest.mark.asyncio
async def test_delete_documents_goes_through_deleter_and_reloads():
    engine, tables, _, _ = build_engine(
        pipeline_rows=[pipeline_row("p1"), pipeline_row("p2")],
        knowledge_rows=[knowledge_row("k1")],
    )
    engine.start()
    await engine.wait_until_settled()

    removed = await engine.delete_documents([(SourceId.PIPELINE_A, "p1"), ("knowledge", "k1")])
    await engine.wait_until_settled()

    assert removed == {"pipeline_a": 1, "knowledge": 1}
    assert tables[SourceId.PIPELINE_A].deleted == ["p1"]
    assert [d.id for d in engine.snapshot.page.items] == ["p2"]
    await engine.stop()


@pytest.mark.asyncio
async def test_delete_for_source_without_deleter_is_refused():
    engine, _, _, _ = build_engine()

    with pytest.raises(SourceUnavailable):
        await engine.delete_documents([(SourceId.PIPELINE_C, "x")])


@pytest.mark.asyncio
async def test_stop_during_load_applies_nothing():
    engine, tables, _, clock = build_engine(pipeline_rows=[pipeline_row("p1")])
    gate = asyncio.Event()
    tables[SourceId.PIPELINE_A].gate = gate

    engine.start()
    await settle()
    await engine.stop()
    gate.set()
    await settle()

    assert engine.snapshot is None
    assert engine.scheduler.state is SchedulerState.CLOSED
    assert tables[SourceId.PIPELINE_A].subscribers == []
    assert clock.pending() == []


def test_unfiled_documents_helper():
    adapter = PipelineAdapter(SourceId.PIPELINE_A, InMemoryTable())
    docs = [
        adapter.normalize(pipeline_row("a", folder=None, minutes_ago=5)),
        adapter.normalize(pipeline_row("b", folder="", minutes_ago=1)),
        adapter.normalize(pipeline_row("c", folder="X")),
    ]

    assert [d.id for d in unfiled_documents(docs)] == ["b", "a"]
