"""
Cross-source merger.

Unions normalized documents from every adapter for one page window and
sorts them by recency. Pagination is approximate across sources: each
source answers its own ``[page * size, page * size + size)`` window and
the union is not re-sliced, so a merged page may hold more or fewer than
``page_size`` items when sources are unevenly filled.
"""

import asyncio
from typing import Dict, List, Sequence

from loguru import logger

from domains.document_pool.cancellation import CancellationToken
from domains.document_pool.errors import collapse_group
from domains.document_pool.models import Document, MergedPage
from domains.document_pool.sources.base import SourceAdapter


def sort_by_recency(documents: Sequence[Document]) -> List[Document]:
    """Newest first; ties broken by source and id for a stable order."""
    return sorted(
        documents,
        key=lambda d: (d.created_at, d.source_id.value, d.id),
        reverse=True,
    )


class CrossSourceMerger:
    """Fail-fast union of all sources."""

    def __init__(self, adapters: Sequence[SourceAdapter]):
        self.adapters = list(adapters)

    async def merge(
        self,
        page_index: int,
        page_size: int,
        token: CancellationToken,
    ) -> MergedPage:
        """
        Build one merged page.

        Args:
            page_index: Zero-based page number
            page_size: Window size requested from every source
            token: Cancellation token shared by all sibling queries

        Returns:
            Merged page with the summed total count

        Raises:
            Cancelled: token was invalidated while queries were running
            SourceUnavailable: any count or fetch failed (no partial result)
        """
        if page_index < 0:
            raise ValueError("page_index must be >= 0")
        offset = page_index * page_size

        counts: Dict[str, asyncio.Task] = {}
        fetches: Dict[str, asyncio.Task] = {}
        try:
            async with asyncio.TaskGroup() as group:
                for adapter in self.adapters:
                    key = adapter.source_id.value
                    counts[key] = group.create_task(adapter.count(token))
                    fetches[key] = group.create_task(
                        adapter.fetch_range(token, offset, page_size)
                    )
        except BaseExceptionGroup as group_error:
            raise collapse_group(group_error) from None

        token.raise_if_cancelled()

        counts_by_source = {key: task.result() for key, task in counts.items()}
        items: List[Document] = []
        for task in fetches.values():
            items.extend(task.result())

        total = sum(counts_by_source.values())
        logger.debug(f"Merged page {page_index}: {len(items)} items, total={total} {counts_by_source}")

        return MergedPage(
            items=tuple(sort_by_recency(items)),
            total_count=total,
            page_index=page_index,
            page_size=page_size,
            counts_by_source=counts_by_source,
        )

    async def collect_all(
        self,
        token: CancellationToken,
        batch_size: int = 1000,
        limit_per_source: int = 10000,
    ) -> List[Document]:
        """
        Read every document from every source, in batches.

        Used for folder aggregation, which needs the full set rather than
        a page. Each source is capped at ``limit_per_source`` documents.
        """
        try:
            async with asyncio.TaskGroup() as group:
                tasks = [
                    group.create_task(
                        self._collect_source(adapter, token, batch_size, limit_per_source)
                    )
                    for adapter in self.adapters
                ]
        except BaseExceptionGroup as group_error:
            raise collapse_group(group_error) from None

        documents: List[Document] = []
        for task in tasks:
            documents.extend(task.result())
        return documents

    async def _collect_source(
        self,
        adapter: SourceAdapter,
        token: CancellationToken,
        batch_size: int,
        limit: int,
    ) -> List[Document]:
        collected: List[Document] = []
        offset = 0
        while offset < limit:
            size = min(batch_size, limit - offset)
            batch = await adapter.fetch_range(token, offset, size)
            collected.extend(batch)
            if len(batch) < size:
                return collected
            offset += size

        if await adapter.fetch_range(token, limit, 1):
            logger.warning(f"{adapter.source_id.value}: folder scan truncated at {limit} documents")
        return collected
