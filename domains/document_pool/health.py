"""
Health scanner.

Each category is an independent query set over every source: a count
query for the true total and a separate oldest-first sample query.
Chunk categories only count rows of the chunk tables. A failing
category degrades to zero instead of aborting the scan.
"""

import asyncio
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Callable, List, Optional, Sequence

from loguru import logger

from domains.document_pool.cancellation import CancellationToken
from domains.document_pool.clock import Clock
from domains.document_pool.errors import Cancelled, PartialCategoryFailure, collapse_group
from domains.document_pool.models import (
    Document,
    DocumentFilter,
    HealthCategory,
    ProcessingState,
    ValidationState,
)
from domains.document_pool.sources.base import SourceAdapter

STUCK_PROCESSING = "stuck_processing"
ACTIVE_PROCESSING = "active_processing"
MISSING_CHUNKS = "missing_chunks"
STUCK_QUEUE = "stuck_queue"
PENDING_VALIDATION = "pending_validation"
FAILED = "failed"
READY_CHUNKS = "ready_chunks"
PENDING_EMBEDDINGS = "pending_embeddings"


@dataclass(frozen=True, slots=True)
class CategorySpec:
    """
    Definition of one indicator.

    Document categories filter the documents tables; a ``chunk_stage``
    turns the category into a count over the chunk tables instead.
    """

    key: str
    threshold_minutes: int
    doc_filter: DocumentFilter = DocumentFilter()
    chunk_stage: Optional[str] = None
    informational: bool = False


@dataclass(frozen=True, slots=True)
class CategoryResult:
    """Outcome of one category scan: exactly one of the fields is set."""

    spec: CategorySpec
    category: Optional[HealthCategory[Document]] = None
    error: Optional[PartialCategoryFailure] = None


def default_categories(settings) -> List[CategorySpec]:
    """Standard categories with thresholds taken from ``settings``."""
    processing = frozenset({ProcessingState.PROCESSING})
    return [
        CategorySpec(
            ACTIVE_PROCESSING,
            0,
            DocumentFilter(processing_states=processing),
            informational=True,
        ),
        CategorySpec(
            STUCK_PROCESSING,
            settings.stuck_processing_minutes,
            DocumentFilter(processing_states=processing),
        ),
        CategorySpec(
            MISSING_CHUNKS,
            settings.missing_chunks_minutes,
            DocumentFilter(
                processing_states=frozenset({ProcessingState.READY_FOR_ASSIGNMENT}),
                missing_dependents=True,
            ),
        ),
        CategorySpec(
            STUCK_QUEUE,
            settings.stuck_queue_minutes,
            DocumentFilter(
                processing_states=frozenset({
                    ProcessingState.DOWNLOADED,
                    ProcessingState.PENDING_PROCESSING,
                })
            ),
        ),
        CategorySpec(
            PENDING_VALIDATION,
            settings.pending_validation_minutes,
            DocumentFilter(
                validation_states=frozenset({ValidationState.PENDING, ValidationState.VALIDATING})
            ),
        ),
        CategorySpec(
            FAILED,
            settings.failed_minutes,
            DocumentFilter(
                processing_states=frozenset({
                    ProcessingState.PROCESSING_FAILED,
                    ProcessingState.VALIDATION_FAILED,
                })
            ),
        ),
        CategorySpec(READY_CHUNKS, 0, chunk_stage="ready", informational=True),
        CategorySpec(PENDING_EMBEDDINGS, 0, chunk_stage="pending", informational=True),
    ]


def fold_results(results: Sequence[CategoryResult]) -> List[HealthCategory[Document]]:
    """Turn per-category results into categories, zeroing the failed ones."""
    categories = []
    for result in results:
        if result.category is not None:
            categories.append(result.category)
            continue

        logger.warning(f"Health category degraded: {result.error}")
        categories.append(
            HealthCategory(
                key=result.spec.key,
                count=0,
                sample_items=(),
                threshold_minutes=result.spec.threshold_minutes,
                degraded=True,
                error=str(result.error.cause) if result.error else None,
                informational=result.spec.informational,
            )
        )
    return categories


class HealthScanner:
    """Scans all sources for stuck, pending and failed documents and chunk backlogs."""

    def __init__(
        self,
        adapters: Sequence[SourceAdapter],
        categories: Sequence[CategorySpec],
        sample_limit: int = 10,
        now_fn: Callable[[], datetime] = None,
    ):
        self.adapters = list(adapters)
        self.categories = list(categories)
        self.sample_limit = sample_limit
        self.now_fn = now_fn or Clock().utcnow

    async def scan(self, token: CancellationToken) -> List[HealthCategory[Document]]:
        """
        Compute every category.

        Raises:
            Cancelled: only cancellation aborts the scan as a whole
        """
        now = self.now_fn()
        try:
            async with asyncio.TaskGroup() as group:
                tasks = [
                    group.create_task(self._scan_category(spec, now, token))
                    for spec in self.categories
                ]
        except BaseExceptionGroup as group_error:
            raise collapse_group(group_error) from None
        results = [task.result() for task in tasks]
        token.raise_if_cancelled()
        return fold_results(results)

    async def _scan_category(
        self,
        spec: CategorySpec,
        now: datetime,
        token: CancellationToken,
    ) -> CategoryResult:
        doc_filter = spec.doc_filter
        if spec.threshold_minutes > 0:
            doc_filter = replace(doc_filter, created_before=now - timedelta(minutes=spec.threshold_minutes))
        samples: List[asyncio.Task] = []
        try:
            async with asyncio.TaskGroup() as group:
                if spec.chunk_stage is not None:
                    counts = [
                        group.create_task(a.count_chunks(token, spec.chunk_stage))
                        for a in self.adapters
                    ]
                else:
                    counts = [group.create_task(a.count(token, doc_filter)) for a in self.adapters]
                    samples = [
                        group.create_task(
                            a.fetch_range(token, 0, self.sample_limit, doc_filter, oldest_first=True)
                        )
                        for a in self.adapters
                    ]
        except BaseExceptionGroup as group_error:
            error = collapse_group(group_error)
            if isinstance(error, Cancelled) or not isinstance(error, Exception):
                raise error from None
            return CategoryResult(spec=spec, error=PartialCategoryFailure(spec.key, error))

        items: List[Document] = []
        for task in samples:
            items.extend(task.result())
        items.sort(key=lambda d: (d.created_at, d.id))

        counts_by_source = {
            adapter.source_id.value: task.result() for adapter, task in zip(self.adapters, counts)
        }
        return CategoryResult(
            spec=spec,
            category=HealthCategory(
                key=spec.key,
                count=sum(counts_by_source.values()),
                sample_items=tuple(items[: self.sample_limit]),
                threshold_minutes=spec.threshold_minutes,
                informational=spec.informational,
                counts_by_source=counts_by_source,
            ),
        )
