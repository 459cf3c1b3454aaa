"""
Source adapter contract.

A source is reached through a capability with three operations
(``count``, ``fetch_range``, ``subscribe_to_changes``) that speak raw rows
and raw row queries. The adapter sits on top of it, translating the shared
``DocumentFilter`` vocabulary into a ``RowQuery`` and raw rows into
``Document`` snapshots.
"""

import asyncio
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, TypeVar

import httpx
from loguru import logger

from domains.document_pool.cancellation import CancellationToken
from domains.document_pool.errors import Cancelled, SourceTimeout, SourceUnavailable
from domains.document_pool.models import Document, DocumentFilter, SourceId

R = TypeVar("R")

ChangeCallback = Callable[[Dict[str, Any]], None]
Unsubscribe = Callable[[], None]


@dataclass(frozen=True, slots=True)
class Condition:
    """Single column predicate: ``eq``, ``in``, ``lt``, ``gte``, ``ilike`` or ``is``."""

    column: str
    op: str
    value: Any


@dataclass(frozen=True, slots=True)
class RowQuery:
    """Raw query understood by a source capability."""

    conditions: tuple[Condition, ...] = ()
    order_by: Optional[str] = "created_at"
    descending: bool = True
    missing_relation: Optional[str] = None


class SourceCapability(Protocol):
    """What the engine needs from one backing table."""

    async def count(self, query: RowQuery) -> int: ...

    async def fetch_range(self, query: RowQuery, offset: int, limit: int) -> List[Dict[str, Any]]: ...

    def subscribe_to_changes(self, callback: ChangeCallback) -> Unsubscribe: ...


class SourceAdapter:
    """
    Normalizes one pipeline's rows into ``Document`` objects.

    Subclasses provide ``translate`` (filter -> query, or None when the
    filter cannot match anything in this source) and ``normalize``.
    """

    source_id: SourceId

    def __init__(
        self,
        source_id: SourceId,
        table: SourceCapability,
        dependent_table: Optional[str] = None,
        timeout: Optional[float] = 10.0,
        chunk_table: Optional[SourceCapability] = None,
    ):
        self.source_id = source_id
        self.table = table
        self.dependent_table = dependent_table
        self.timeout = timeout
        self.chunk_table = chunk_table

    def translate(self, doc_filter: DocumentFilter) -> Optional[List[Condition]]:
        raise NotImplementedError

    def normalize(self, row: Dict[str, Any]) -> Document:
        raise NotImplementedError

    def chunk_conditions(self, stage: str) -> Optional[List[Condition]]:
        """Predicate selecting chunks in ``stage`` (``ready`` or ``pending``), or None."""
        return None

    def build_query(self, doc_filter: Optional[DocumentFilter], oldest_first: bool = False) -> Optional[RowQuery]:
        """Return the row query for ``doc_filter``, or None if nothing can match."""
        doc_filter = doc_filter or DocumentFilter()
        conditions = self.translate(doc_filter)
        if conditions is None:
            return None

        if doc_filter.created_before is not None:
            conditions.append(Condition("created_at", "lt", doc_filter.created_before.isoformat()))

        missing = None
        if doc_filter.missing_dependents:
            if not self.dependent_table:
                return None
            missing = self.dependent_table

        return RowQuery(
            conditions=tuple(conditions),
            order_by="created_at",
            descending=not oldest_first,
            missing_relation=missing,
        )

    async def count(
        self,
        token: CancellationToken,
        doc_filter: Optional[DocumentFilter] = None,
    ) -> int:
        """Total number of documents matching ``doc_filter``."""
        query = self.build_query(doc_filter)
        if query is None:
            return 0
        total = await self._call(token, "count", self.table.count, query)
        logger.debug(f"{self.source_id.value}: count={total}")
        return total

    async def fetch_range(
        self,
        token: CancellationToken,
        offset: int,
        limit: int,
        doc_filter: Optional[DocumentFilter] = None,
        oldest_first: bool = False,
    ) -> List[Document]:
        """Documents in the window ``[offset, offset + limit)``."""
        query = self.build_query(doc_filter, oldest_first=oldest_first)
        if query is None or limit <= 0:
            return []
        rows = await self._call(token, "fetch_range", self.table.fetch_range, query, offset, limit)
        return [self.normalize(row) for row in rows or []]

    async def count_chunks(self, token: CancellationToken, stage: str) -> int:
        """Number of chunk rows in ``stage``; 0 when the source has none."""
        conditions = self.chunk_conditions(stage)
        if self.chunk_table is None or conditions is None:
            return 0
        query = RowQuery(conditions=tuple(conditions), order_by=None)
        return await self._call(token, "count_chunks", self.chunk_table.count, query)

    def subscribe(self, callback: ChangeCallback) -> Unsubscribe:
        """Subscribe to this source's change feed."""
        return self.table.subscribe_to_changes(callback)

    async def _call(
        self,
        token: CancellationToken,
        operation: str,
        fn: Callable[..., Awaitable[R]],
        *args: Any,
    ) -> R:
        token.raise_if_cancelled()
        try:
            if self.timeout:
                result = await asyncio.wait_for(fn(*args), timeout=self.timeout)
            else:
                result = await fn(*args)
        except (Cancelled, SourceUnavailable):
            raise
        except (asyncio.TimeoutError, httpx.TimeoutException) as e:
            raise SourceTimeout(self.source_id.value, f"{operation} timed out", e) from e
        except Exception as e:
            raise SourceUnavailable(self.source_id.value, f"{operation} failed: {e}", e) from e

        token.raise_if_cancelled()
        return result


EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse a PostgREST timestamp (ISO 8601, possibly with ``Z``) as UTC-aware."""
    if value is None:
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        try:
            parsed = datetime.fromisoformat(str(value).replace('Z', '+00:00'))
        except ValueError:
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed
