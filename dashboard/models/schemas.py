"""
Pydantic models for the Pool Watchman API.

Response models mirror the engine's immutable snapshots; the ``from_*``
constructors convert them at the API boundary.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from domains.document_pool.models import (
    Document,
    FolderNode,
    HealthCategory,
    MergedPage,
    ProcessingState,
    SourceId,
    ValidationState,
)


# =====================================================
# Document Models
# =====================================================

class DocumentOut(BaseModel):
    """Normalized document."""
    id: str
    file_name: str
    source_id: SourceId
    validation_state: ValidationState
    processing_state: ProcessingState
    folder_path: Optional[str] = None
    created_at: datetime
    error_message: Optional[str] = None
    raw_status: Optional[str] = None
    page_count: Optional[int] = None
    assignable: bool = False

    @classmethod
    def from_document(cls, doc: Document) -> "DocumentOut":
        return cls(
            id=doc.id,
            file_name=doc.file_name,
            source_id=doc.source_id,
            validation_state=doc.validation_state,
            processing_state=doc.processing_state,
            folder_path=doc.folder_path,
            created_at=doc.created_at,
            error_message=doc.error_message,
            raw_status=doc.raw_status,
            page_count=doc.page_count,
            assignable=doc.is_assignable,
        )


class MergedPageResponse(BaseModel):
    """One cross-source page; ``items`` may drift from ``page_size``."""
    items: List[DocumentOut]
    total_count: int
    page_index: int
    page_size: int
    counts_by_source: Dict[str, int] = Field(default_factory=dict)

    @classmethod
    def from_page(cls, page: MergedPage) -> "MergedPageResponse":
        return cls(
            items=[DocumentOut.from_document(d) for d in page.items],
            total_count=page.total_count,
            page_index=page.page_index,
            page_size=page.page_size,
            counts_by_source=dict(page.counts_by_source),
        )


# =====================================================
# Folder Models
# =====================================================

class FolderNodeOut(BaseModel):
    """Folder node with nested children."""
    path_segment: str
    full_path: str
    direct_count: int
    recursive_count: int
    documents: List[DocumentOut] = Field(default_factory=list)
    children: List["FolderNodeOut"] = Field(default_factory=list)

    @classmethod
    def from_node(cls, node: FolderNode) -> "FolderNodeOut":
        return cls(
            path_segment=node.path_segment,
            full_path=node.full_path,
            direct_count=node.direct_count,
            recursive_count=node.recursive_count,
            documents=[DocumentOut.from_document(d) for d in node.direct_documents],
            children=[cls.from_node(c) for c in node.children],
        )


class UnfiledBucket(BaseModel):
    """Synthetic bucket for documents without a folder."""
    count: int
    documents: List[DocumentOut]


class FolderForestResponse(BaseModel):
    roots: List[FolderNodeOut]
    unfiled: UnfiledBucket


class FolderDocumentsResponse(BaseModel):
    """Every document under one folder, subfolders included."""
    full_path: str
    count: int
    documents: List[DocumentOut]


# =====================================================
# Health Models
# =====================================================

class HealthCategoryOut(BaseModel):
    """Counted failure mode with an oldest-first sample."""
    key: str
    count: int
    threshold_minutes: int
    sample_items: List[DocumentOut]
    degraded: bool = False
    error: Optional[str] = None
    informational: bool = False
    counts_by_source: Dict[str, int] = Field(default_factory=dict)

    @classmethod
    def from_category(cls, category: HealthCategory) -> "HealthCategoryOut":
        return cls(
            key=category.key,
            count=category.count,
            threshold_minutes=category.threshold_minutes,
            sample_items=[DocumentOut.from_document(d) for d in category.sample_items],
            degraded=category.degraded,
            error=category.error,
            informational=category.informational,
            counts_by_source=dict(category.counts_by_source),
        )


class PoolHealthResponse(BaseModel):
    categories: List[HealthCategoryOut]
    total_issues: int


# =====================================================
# Engine Control Models
# =====================================================

class EngineStatus(BaseModel):
    """Scheduler state plus the latest user-visible notice."""
    state: str
    cycle: int
    page_index: int
    retry_count: int
    suppressed: bool
    retry_available: bool
    debounce_pending: bool
    last_error: Optional[str] = None
    sources: List[str] = Field(default_factory=list)
    subscribed: bool = False
    events_forwarded: int = 0
    snapshot_cycle: Optional[str] = None
    loaded_at: Optional[datetime] = None
    loaded_page: Optional[int] = None
    error_notice: Optional[str] = None
    error_notice_at: Optional[datetime] = None
    error_notice_exhausted: bool = False


class DocumentRef(BaseModel):
    source: SourceId
    id: str


class DeleteRequest(BaseModel):
    """Bulk deletion; refused unless ``confirm`` is true."""
    documents: List[DocumentRef] = Field(..., min_length=1)
    confirm: bool = False


class OperationStatus(BaseModel):
    """Generic operation status."""
    status: str
    message: str
    details: Optional[Dict[str, Any]] = None


FolderNodeOut.model_rebuild()
