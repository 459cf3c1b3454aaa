"""
Sync engine.

Composes the merger, folder builder, health scanner, reload scheduler and
change bridge. Each load cycle builds a complete PoolSnapshot from scratch;
the engine swaps it in only when the scheduler accepts the cycle.
"""

import asyncio
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from loguru import logger

from domains.document_pool.bridge import ChangeNotificationBridge
from domains.document_pool.cancellation import CancellationToken
from domains.document_pool.clock import Clock
from domains.document_pool.errors import (
    SnapshotUnavailable,
    SourceUnavailable,
    collapse_group,
)
from domains.document_pool.folders import all_documents, build_forest, find_node
from domains.document_pool.health import CategorySpec, HealthScanner, default_categories
from domains.document_pool.merger import CrossSourceMerger, sort_by_recency
from domains.document_pool.models import (
    Document,
    FolderNode,
    HealthCategory,
    MergedPage,
    SourceId,
)
from domains.document_pool.notifier import ErrorNotifier
from domains.document_pool.scheduler import ReloadScheduler, SchedulerConfig
from domains.document_pool.sources.base import SourceAdapter
from domains.document_pool.sources.catalog import FolderCatalog
from domains.document_pool.sources.pipelines import SOURCE_TABLES, build_adapters


@dataclass(frozen=True)
class PoolSnapshot:
    """Everything one successful load cycle produced."""

    page: MergedPage
    forest: Tuple[FolderNode, ...]
    unfiled: Tuple[Document, ...]
    health: Tuple[HealthCategory[Document], ...]
    loaded_at: datetime
    cycle: str
    document_count: int = 0
    declared_folders: int = 0


def unfiled_documents(documents: Iterable[Document]) -> Tuple[Document, ...]:
    """Documents with no folder path, newest first."""
    return tuple(sort_by_recency([d for d in documents if not d.folder_path]))


class SyncEngine:
    """Keeps an up-to-date, consistent view of the document pool."""

    def __init__(
        self,
        adapters: Sequence[SourceAdapter],
        catalog: Optional[FolderCatalog] = None,
        categories: Optional[Sequence[CategorySpec]] = None,
        deleters: Optional[Mapping[SourceId, Any]] = None,
        clock: Optional[Clock] = None,
        scheduler_config: Optional[SchedulerConfig] = None,
        notifier: Optional[ErrorNotifier] = None,
        page_size: int = 50,
        folder_batch_size: int = 1000,
        folder_limit: int = 10000,
        sample_limit: int = 10,
        fallback_seconds: float = 30.0,
        log_events: bool = False,
    ):
        self.adapters = list(adapters)
        self.catalog = catalog
        self.deleters = dict(deleters or {})
        self.clock = clock or Clock()
        self.page_size = page_size
        self.folder_batch_size = folder_batch_size
        self.folder_limit = folder_limit

        if categories is None:
            from dashboard.utils.config import get_settings
            categories = default_categories(get_settings())

        self.merger = CrossSourceMerger(self.adapters)
        self.health = HealthScanner(
            self.adapters, categories, sample_limit=sample_limit, now_fn=self.clock.utcnow
        )
        self.notifier = notifier or ErrorNotifier(self.clock)
        self.scheduler: ReloadScheduler[PoolSnapshot] = ReloadScheduler(
            loader=self._load,
            on_success=self._apply,
            on_error=self.notifier,
            clock=self.clock,
            config=scheduler_config,
        )
        self.bridge = ChangeNotificationBridge(
            self.adapters,
            self.scheduler.notify,
            clock=self.clock,
            fallback_seconds=fallback_seconds,
            log_events=log_events,
        )

        self._snapshot: Optional[PoolSnapshot] = None
        self._listeners: List[Callable[[PoolSnapshot], None]] = []
        self._page_lock = asyncio.Lock()
        self._started = False

    # Lifecycle ------------------------------------------------------------------

    def start(self, page_index: int = 0) -> None:
        """Subscribe to change feeds and start the initial load."""
        if self._started:
            return
        self._started = True
        self.bridge.start()
        self.scheduler.force_reload(page_index)
        logger.info(f"Sync engine started with {len(self.adapters)} sources")

    async def stop(self) -> None:
        """Unsubscribe everything and abort any in-flight load."""
        self.bridge.stop()
        await self.scheduler.close()
        self._started = False
        logger.info("Sync engine stopped")

    async def wait_until_settled(self) -> None:
        await self.scheduler.wait_until_settled()

    # View API -------------------------------------------------------------------

    def add_snapshot_listener(self, listener: Callable[[PoolSnapshot], None]) -> None:
        """Called with every snapshot that gets applied."""
        self._listeners.append(listener)

    @property
    def snapshot(self) -> Optional[PoolSnapshot]:
        return self._snapshot

    async def get_merged_page(self, page_index: int) -> MergedPage:
        """
        Merged page ``page_index`` of the current snapshot.

        A page other than the loaded one triggers an immediate reload of
        that page.

        Raises:
            SnapshotUnavailable: the requested page could not be loaded
        """
        if page_index < 0:
            raise ValueError("page_index must be >= 0")

        async with self._page_lock:
            snapshot = self._snapshot
            if snapshot is not None and snapshot.page.page_index == page_index:
                return snapshot.page

            self.scheduler.force_reload(page_index)
            await self.scheduler.wait_until_settled()

        snapshot = self._snapshot
        if snapshot is None or snapshot.page.page_index != page_index:
            raise SnapshotUnavailable(f"page {page_index} is not available")
        return snapshot.page

    def get_folder_forest(self) -> List[FolderNode]:
        return list(self._require_snapshot().forest)

    def get_unfiled(self) -> List[Document]:
        return list(self._require_snapshot().unfiled)

    def get_folder_documents(self, full_path: str) -> List[Document]:
        """
        Documents filed under ``full_path`` or any of its subfolders, newest first.

        Raises:
            KeyError: the current forest has no such folder
        """
        node = find_node(self._require_snapshot().forest, full_path)
        if node is None:
            raise KeyError(full_path)
        return sort_by_recency(all_documents(node))

    def get_health_snapshot(self) -> List[HealthCategory[Document]]:
        return list(self._require_snapshot().health)

    def force_reload(self) -> None:
        """Explicit user refresh; bypasses debounce, backoff and cooldown."""
        self.scheduler.force_reload()

    async def delete_documents(self, pairs: Iterable[Tuple[SourceId, str]]) -> Dict[str, int]:
        """
        Delete documents through the storage collaborator, then reload.

        Args:
            pairs: ``(source, id)`` pairs already confirmed by the user

        Returns:
            Rows removed per source id
        """
        grouped: Dict[SourceId, List[str]] = defaultdict(list)
        for source, doc_id in pairs:
            grouped[SourceId(source)].append(doc_id)

        removed: Dict[str, int] = {}
        for source, ids in grouped.items():
            deleter = self.deleters.get(source)
            if deleter is None:
                raise SourceUnavailable(source.value, "deletion is not supported")
            try:
                removed[source.value] = await deleter.delete_by_ids(ids)
            except SourceUnavailable:
                raise
            except Exception as e:
                raise SourceUnavailable(source.value, f"delete failed: {e}", e) from e
            logger.info(f"Deleted {removed[source.value]} documents from {source.value}")

        self.force_reload()
        return removed

    def status(self) -> Dict[str, Any]:
        snapshot = self._snapshot
        notice = self.notifier.latest
        return {
            **self.scheduler.status,
            "sources": [a.source_id.value for a in self.adapters],
            "subscribed": self.bridge.running,
            "events_forwarded": self.bridge.events_forwarded,
            "snapshot_cycle": snapshot.cycle if snapshot else None,
            "loaded_at": snapshot.loaded_at if snapshot else None,
            "loaded_page": snapshot.page.page_index if snapshot else None,
            "error_notice": notice.message if notice else None,
            "error_notice_at": notice.raised_at if notice else None,
            "error_notice_exhausted": notice.exhausted if notice else False,
        }

    # Load cycle -----------------------------------------------------------------

    def _require_snapshot(self) -> PoolSnapshot:
        if self._snapshot is None:
            raise SnapshotUnavailable("no successful load yet")
        return self._snapshot

    async def _declared_paths(self, token: CancellationToken) -> List[str]:
        if self.catalog is None:
            return []
        try:
            return await self.catalog.list_paths(token)
        except SourceUnavailable as e:
            logger.warning(f"Declared folders unavailable: {e}")
            return []

    async def _load(self, token: CancellationToken, page_index: int) -> PoolSnapshot:
        try:
            async with asyncio.TaskGroup() as group:
                page = group.create_task(self.merger.merge(page_index, self.page_size, token))
                documents = group.create_task(
                    self.merger.collect_all(token, self.folder_batch_size, self.folder_limit)
                )
                declared = group.create_task(self._declared_paths(token))
                health = group.create_task(self.health.scan(token))
        except BaseExceptionGroup as group_error:
            raise collapse_group(group_error) from None

        token.raise_if_cancelled()
        collected = documents.result()
        declared_paths = declared.result()

        return PoolSnapshot(
            page=page.result(),
            forest=tuple(build_forest(collected, declared_paths)),
            unfiled=unfiled_documents(collected),
            health=tuple(health.result()),
            loaded_at=self.clock.utcnow(),
            cycle=token.label,
            document_count=len(collected),
            declared_folders=len(declared_paths),
        )

    def _apply(self, snapshot: PoolSnapshot) -> None:
        self._snapshot = snapshot
        self.notifier.clear()
        for listener in self._listeners:
            listener(snapshot)
        logger.info(
            f"Snapshot {snapshot.cycle}: page {snapshot.page.page_index} "
            f"({len(snapshot.page.items)}/{snapshot.page.total_count}), "
            f"{snapshot.document_count} documents, {len(snapshot.forest)} root folders"
        )


def create_engine(
    settings, client, clock: Optional[Clock] = None, log_events: bool = False
) -> SyncEngine:
    """
    Wire a SyncEngine against a connected PostgREST client.

    Args:
        settings: Application settings
        client: Client exposing ``table(name, poll_interval)``
        clock: Optional clock override
        log_events: Log every forwarded change notification at info level

    Returns:
        Engine that has not been started yet
    """
    tables = {
        docs_table: client.table(docs_table, settings.change_poll_seconds)
        for docs_table, _ in SOURCE_TABLES.values()
    }
    chunk_tables = {
        chunk_table: client.table(chunk_table, settings.change_poll_seconds)
        for _, chunk_table in SOURCE_TABLES.values()
    }
    adapters = build_adapters(
        tables,
        settings.get_enabled_sources(),
        timeout=settings.request_timeout_seconds,
        chunk_tables=chunk_tables,
    )
    deleters = {a.source_id: a.table for a in adapters}

    return SyncEngine(
        adapters,
        catalog=FolderCatalog(client.table("folders"), limit=settings.folder_scan_limit),
        categories=default_categories(settings),
        deleters=deleters,
        clock=clock,
        scheduler_config=SchedulerConfig.from_settings(settings),
        page_size=settings.page_size,
        folder_batch_size=settings.folder_scan_batch_size,
        folder_limit=settings.folder_scan_limit,
        sample_limit=settings.health_sample_limit,
        fallback_seconds=settings.fallback_poll_seconds,
        log_events=log_events,
    )
