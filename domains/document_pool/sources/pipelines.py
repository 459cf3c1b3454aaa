"""
Concrete adapters for the pool's ingestion pipelines.

Pipelines A, B and C keep a single ``status`` column; the legacy
``knowledge`` source keeps separate validation and processing columns.
Both are mapped onto the shared ValidationState/ProcessingState pair.
"""

from typing import Any, Dict, List, Mapping, Optional, Sequence

from loguru import logger

from domains.document_pool.models import (
    Document,
    DocumentFilter,
    ProcessingState,
    SourceId,
    ValidationState,
)
from domains.document_pool.sources.base import (
    EPOCH,
    Condition,
    SourceAdapter,
    SourceCapability,
    parse_timestamp,
)

# status -> (validation, processing); pipelines have no validation stage
PIPELINE_STATUS_MAP: Dict[str, tuple[ValidationState, ProcessingState]] = {
    "ingested": (ValidationState.PENDING, ProcessingState.DOWNLOADED),
    "processing": (ValidationState.VALIDATED, ProcessingState.PROCESSING),
    "chunked": (ValidationState.VALIDATED, ProcessingState.PROCESSING),
    "ready": (ValidationState.VALIDATED, ProcessingState.READY_FOR_ASSIGNMENT),
    "failed": (ValidationState.VALIDATED, ProcessingState.PROCESSING_FAILED),
}

CHUNK_STAGES = ("ready", "pending")

SOURCE_TABLES: Dict[SourceId, tuple[str, str]] = {
    SourceId.PIPELINE_A: ("pipeline_a_documents", "pipeline_a_chunks_raw"),
    SourceId.PIPELINE_B: ("pipeline_b_documents", "pipeline_b_chunks_raw"),
    SourceId.PIPELINE_C: ("pipeline_c_documents", "pipeline_c_chunks_raw"),
    SourceId.KNOWLEDGE: ("knowledge_documents", "agent_knowledge"),
}


def _optional_int(value: Any) -> Optional[int]:
    if value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _optional_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    return str(value)


class PipelineAdapter(SourceAdapter):
    """Adapter for a ``pipeline_*_documents`` table."""

    def __init__(
        self,
        source_id: SourceId,
        table: SourceCapability,
        dependent_table: Optional[str] = None,
        timeout: Optional[float] = 10.0,
        status_map: Optional[Mapping[str, tuple[ValidationState, ProcessingState]]] = None,
        chunk_table: Optional[SourceCapability] = None,
    ):
        super().__init__(source_id, table, dependent_table, timeout, chunk_table)
        self.status_map = dict(status_map or PIPELINE_STATUS_MAP)
        self._reported_unknown: set[str] = set()

    def translate(self, doc_filter: DocumentFilter) -> Optional[List[Condition]]:
        if not doc_filter.processing_states and not doc_filter.validation_states:
            return []

        statuses = sorted(
            status
            for status, (validation, processing) in self.status_map.items()
            if (not doc_filter.processing_states or processing in doc_filter.processing_states)
            and (not doc_filter.validation_states or validation in doc_filter.validation_states)
        )
        if not statuses:
            return None
        if len(statuses) == 1:
            return [Condition("status", "eq", statuses[0])]
        return [Condition("status", "in", tuple(statuses))]

    def chunk_conditions(self, stage: str) -> Optional[List[Condition]]:
        if stage not in CHUNK_STAGES:
            return None
        return [Condition("embedding_status", "eq", stage)]

    def normalize(self, row: Dict[str, Any]) -> Document:
        raw_status = _optional_str(row.get("status"))
        states = self.status_map.get(raw_status or "")
        if states is None:
            states = (ValidationState.UNKNOWN, ProcessingState.UNKNOWN)
            if raw_status not in self._reported_unknown:
                self._reported_unknown.add(raw_status)
                logger.warning(f"{self.source_id.value}: unknown status {raw_status!r}")

        return Document(
            id=str(row.get("id")),
            file_name=_optional_str(row.get("file_name")) or "",
            source_id=self.source_id,
            validation_state=states[0],
            processing_state=states[1],
            folder_path=_optional_str(row.get("folder")),
            created_at=parse_timestamp(row.get("created_at")) or EPOCH,
            error_message=_optional_str(row.get("error_message")),
            raw_status=raw_status,
            page_count=_optional_int(row.get("page_count")),
        )


class KnowledgeAdapter(SourceAdapter):
    """Adapter for the legacy ``knowledge_documents`` table."""

    def translate(self, doc_filter: DocumentFilter) -> Optional[List[Condition]]:
        conditions: List[Condition] = []
        for column, states in (
            ("processing_status", doc_filter.processing_states),
            ("validation_status", doc_filter.validation_states),
        ):
            values = sorted(s.value for s in states if s.value != "unknown")
            if states and not values:
                return None
            if len(values) == 1:
                conditions.append(Condition(column, "eq", values[0]))
            elif values:
                conditions.append(Condition(column, "in", tuple(values)))
        return conditions

    def chunk_conditions(self, stage: str) -> Optional[List[Condition]]:
        # agent_knowledge rows have no pending stage; shared active rows are ready
        if stage != "ready":
            return None
        return [Condition("agent_id", "is", None), Condition("is_active", "eq", True)]

    def normalize(self, row: Dict[str, Any]) -> Document:
        validation = _enum_or_unknown(ValidationState, row.get("validation_status"))
        processing = _enum_or_unknown(ProcessingState, row.get("processing_status"))

        return Document(
            id=str(row.get("id")),
            file_name=_optional_str(row.get("file_name")) or "",
            source_id=self.source_id,
            validation_state=validation,
            processing_state=processing,
            folder_path=_optional_str(row.get("folder")),
            created_at=parse_timestamp(row.get("created_at")) or EPOCH,
            error_message=_optional_str(row.get("validation_reason") or row.get("error_message")),
            raw_status=_optional_str(row.get("processing_status")),
            page_count=_optional_int(row.get("page_count")),
        )


def _enum_or_unknown(enum_cls, value: Any):
    try:
        return enum_cls(value)
    except ValueError:
        return enum_cls.UNKNOWN


def build_adapters(
    tables: Mapping[str, SourceCapability],
    enabled: Sequence[str],
    timeout: Optional[float] = 10.0,
    chunk_tables: Optional[Mapping[str, SourceCapability]] = None,
) -> List[SourceAdapter]:
    """
    Create one adapter per enabled source id.

    Args:
        tables: Capability per documents-table name
        enabled: Source ids to include, in display order
        timeout: Per-call wall-clock timeout in seconds
        chunk_tables: Optional capability per chunk-table name, used for
            chunk and embedding counts

    Returns:
        Adapters in the order given by ``enabled``
    """
    adapters: List[SourceAdapter] = []
    for raw_id in enabled:
        try:
            source_id = SourceId(raw_id)
        except ValueError:
            logger.warning(f"Ignoring unknown source id: {raw_id}")
            continue

        table_name, dependent = SOURCE_TABLES[source_id]
        table = tables[table_name]
        chunk_table = (chunk_tables or {}).get(dependent)
        if source_id is SourceId.KNOWLEDGE:
            adapters.append(KnowledgeAdapter(source_id, table, dependent, timeout, chunk_table))
        else:
            adapters.append(
                PipelineAdapter(source_id, table, dependent, timeout, chunk_table=chunk_table)
            )

    return adapters
