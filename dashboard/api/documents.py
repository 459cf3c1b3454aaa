"""
Document pool endpoints.

Includes:
- Merged cross-source pages
- Folder forest with the unfiled bucket, and per-folder document lists
- Health categories
- Engine status, manual reload and confirmed bulk deletion
"""

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from loguru import logger

from dashboard.models.schemas import (
    DeleteRequest,
    DocumentOut,
    EngineStatus,
    FolderDocumentsResponse,
    FolderForestResponse,
    FolderNodeOut,
    HealthCategoryOut,
    MergedPageResponse,
    OperationStatus,
    PoolHealthResponse,
    UnfiledBucket,
)
from domains.document_pool.engine import SyncEngine
from domains.document_pool.errors import SnapshotUnavailable, SourceUnavailable

router = APIRouter()


def get_engine(request: Request) -> SyncEngine:
    """Engine created by the application lifespan."""
    engine = getattr(request.app.state, "engine", None)
    if engine is None:
        raise HTTPException(status_code=503, detail="Sync engine is not running")
    return engine


@router.get("", response_model=MergedPageResponse)
async def get_documents(
    page: int = Query(0, ge=0),
    engine: SyncEngine = Depends(get_engine),
):
    """
    Merged page across all sources, newest first.

    Args:
        page: Zero-based page index

    Returns:
        Page with the summed total count
    """
    try:
        merged = await engine.get_merged_page(page)
    except SnapshotUnavailable as e:
        raise HTTPException(status_code=503, detail=str(e))
    return MergedPageResponse.from_page(merged)


@router.get("/folders", response_model=FolderForestResponse)
async def get_folders(engine: SyncEngine = Depends(get_engine)):
    """Folder forest of the latest snapshot plus unfiled documents."""
    try:
        forest = engine.get_folder_forest()
        unfiled = engine.get_unfiled()
    except SnapshotUnavailable as e:
        raise HTTPException(status_code=503, detail=str(e))

    return FolderForestResponse(
        roots=[FolderNodeOut.from_node(node) for node in forest],
        unfiled=UnfiledBucket(
            count=len(unfiled),
            documents=[DocumentOut.from_document(d) for d in unfiled],
        ),
    )


@router.get("/folders/documents", response_model=FolderDocumentsResponse)
async def get_folder_documents(
    path: str = Query(..., min_length=1),
    engine: SyncEngine = Depends(get_engine),
):
    """All documents of a folder and its subfolders, for bulk selection."""
    try:
        documents = engine.get_folder_documents(path)
    except SnapshotUnavailable as e:
        raise HTTPException(status_code=503, detail=str(e))
    except KeyError:
        raise HTTPException(status_code=404, detail=f"Folder not found: {path}")

    return FolderDocumentsResponse(
        full_path=path,
        count=len(documents),
        documents=[DocumentOut.from_document(d) for d in documents],
    )


@router.get("/health", response_model=PoolHealthResponse)
async def get_pool_health(engine: SyncEngine = Depends(get_engine)):
    """Stuck, pending and failed documents by category."""
    try:
        categories = engine.get_health_snapshot()
    except SnapshotUnavailable as e:
        raise HTTPException(status_code=503, detail=str(e))

    return PoolHealthResponse(
        categories=[HealthCategoryOut.from_category(c) for c in categories],
        total_issues=sum(c.count for c in categories if not c.informational),
    )


@router.get("/status", response_model=EngineStatus)
async def get_status(engine: SyncEngine = Depends(get_engine)):
    """Scheduler state, retry affordance and latest error notice."""
    return EngineStatus(**engine.status())


@router.post("/reload", response_model=OperationStatus)
async def reload_documents(engine: SyncEngine = Depends(get_engine)):
    """Force an immediate reload, bypassing debounce and backoff."""
    logger.info("Manual reload requested")
    engine.force_reload()
    return OperationStatus(status="queued", message="Reload started")


@router.delete("", response_model=OperationStatus)
async def delete_documents(
    body: DeleteRequest,
    engine: SyncEngine = Depends(get_engine),
):
    """
    Delete documents after explicit confirmation.

    Returns:
        Rows removed per source
    """
    if not body.confirm:
        raise HTTPException(status_code=400, detail="Deletion requires confirm=true")

    logger.warning(f"Deleting {len(body.documents)} documents")
    try:
        removed = await engine.delete_documents((d.source, d.id) for d in body.documents)
    except SourceUnavailable as e:
        raise HTTPException(status_code=502, detail=str(e))

    return OperationStatus(
        status="deleted",
        message=f"Deleted {sum(removed.values())} documents",
        details=removed,
    )
