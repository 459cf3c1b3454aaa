"""
Health check endpoint.
"""

from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Request
from pydantic import BaseModel

from dashboard.utils.config import get_settings

router = APIRouter()


class HealthResponse(BaseModel):
    """Health check response model."""
    status: str
    timestamp: datetime
    store_connected: bool
    scheduler_state: Optional[str] = None
    last_loaded_at: Optional[datetime] = None
    version: str


@router.get("/health", response_model=HealthResponse)
async def health_check(request: Request):
    """
    Health check endpoint.

    Verifies:
    - API is running
    - PostgREST answers
    - Engine has produced a snapshot
    """
    settings = get_settings()
    client = getattr(request.app.state, "client", None)
    engine = getattr(request.app.state, "engine", None)

    store_connected = await client.ping() if client is not None else False
    scheduler_state = engine.scheduler.state.value if engine is not None else None
    snapshot = engine.snapshot if engine is not None else None

    healthy = store_connected and snapshot is not None
    return HealthResponse(
        status="healthy" if healthy else "degraded",
        timestamp=datetime.now(timezone.utc),
        store_connected=store_connected,
        scheduler_state=scheduler_state,
        last_loaded_at=snapshot.loaded_at if snapshot else None,
        version=settings.api_version
    )
