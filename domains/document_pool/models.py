"""
Core data model of the document pool engine.

Everything here is an immutable snapshot: a load cycle builds new
instances from scratch and the view swaps them in wholesale.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Generic, Optional, TypeVar

from domains.document_pool.cancellation import CancellationToken

T = TypeVar("T")


class SourceId(str, Enum):
    """Fixed set of ingestion pipelines feeding the shared pool."""

    PIPELINE_A = "pipeline_a"
    PIPELINE_B = "pipeline_b"
    PIPELINE_C = "pipeline_c"
    KNOWLEDGE = "knowledge"


class ValidationState(str, Enum):
    PENDING = "pending"
    VALIDATING = "validating"
    VALIDATED = "validated"
    VALIDATION_FAILED = "validation_failed"
    UNKNOWN = "unknown"


class ProcessingState(str, Enum):
    DOWNLOADED = "downloaded"
    VALIDATING = "validating"
    VALIDATED = "validated"
    PENDING_PROCESSING = "pending_processing"
    PROCESSING = "processing"
    READY_FOR_ASSIGNMENT = "ready_for_assignment"
    VALIDATION_FAILED = "validation_failed"
    PROCESSING_FAILED = "processing_failed"
    UNKNOWN = "unknown"


@dataclass(frozen=True, slots=True)
class Document:
    """Normalized document as produced by a source adapter."""

    id: str
    file_name: str
    source_id: SourceId
    validation_state: ValidationState
    processing_state: ProcessingState
    folder_path: Optional[str]
    created_at: datetime
    error_message: Optional[str] = None
    raw_status: Optional[str] = None
    page_count: Optional[int] = None

    @property
    def is_assignable(self) -> bool:
        return self.processing_state is ProcessingState.READY_FOR_ASSIGNMENT


@dataclass(frozen=True, slots=True)
class DocumentFilter:
    """
    Source-independent query predicate.

    Empty state sets mean "any state". ``created_before`` is exclusive.
    """

    processing_states: frozenset[ProcessingState] = frozenset()
    validation_states: frozenset[ValidationState] = frozenset()
    created_before: Optional[datetime] = None
    missing_dependents: bool = False


@dataclass(frozen=True, slots=True)
class MergedPage:
    """
    Cross-source page.

    Each source contributes up to ``page_size`` items from its own offset
    window, so ``len(items)`` can drift from ``page_size``.
    """

    items: tuple[Document, ...]
    total_count: int
    page_index: int
    page_size: int
    counts_by_source: dict[str, int] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class FolderNode:
    """One folder of the forest; ``recursive_count`` includes all descendants."""

    path_segment: str
    full_path: str
    direct_documents: tuple[Document, ...]
    children: tuple[FolderNode, ...]
    direct_count: int
    recursive_count: int

    @property
    def declared_only(self) -> bool:
        return self.recursive_count == 0


@dataclass(frozen=True, slots=True)
class HealthCategory(Generic[T]):
    """
    Counted pool indicator with a bounded, oldest-first sample.

    Informational categories (active work, chunk and embedding counts) are
    reported alongside the failure modes but are not problems themselves;
    chunk-level categories carry no document sample.
    """

    key: str
    count: int
    sample_items: tuple[T, ...]
    threshold_minutes: int
    degraded: bool = False
    error: Optional[str] = None
    informational: bool = False
    counts_by_source: dict[str, int] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class LoadSession:
    """Per-cycle scheduler state; replaced, never mutated, by the next cycle."""

    cancellation_token: CancellationToken
    page_index: int
    retry_count: int = 0
    last_error_at: Optional[float] = None
    suppressed: bool = False
