"""
Pool Watchman - Main FastAPI Application

Live, consistent view over a document pool fed by several ingestion
pipelines:
- Merged cross-source document pages
- Folder forest with counts
- Health categories (stuck, pending, failed)
- Debounced, cancellable reloads driven by change feeds
"""

from contextlib import asynccontextmanager
from typing import Callable, Optional
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from loguru import logger
import sys

from dashboard.utils.config import Settings, get_settings
from dashboard.utils.postgrest_client import PostgrestClient, create_client
from dashboard.api import documents, health
from domains.document_pool.engine import SyncEngine, create_engine
from domains.document_pool.errors import SnapshotUnavailable


EngineFactory = Callable[[Settings, PostgrestClient], SyncEngine]


def configure_logging(level: str = "INFO"):
    """Replace the default sink with a formatted stdout sink."""
    logger.remove()
    logger.add(
        sys.stdout,
        format="<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | <cyan>{name}</cyan>:<cyan>{function}</cyan> - <level>{message}</level>",
        level=level
    )


def create_app(
    client: Optional[PostgrestClient] = None,
    engine_factory: Optional[EngineFactory] = None,
) -> FastAPI:
    """
    Build the application.

    Args:
        client: PostgREST client to use instead of one built from settings
        engine_factory: Builds the engine from settings and a connected client

    Returns:
        FastAPI app whose lifespan owns the client and the engine
    """
    settings = get_settings()
    engine_factory = engine_factory or create_engine

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan manager."""
        logger.info(f"Starting {settings.api_title} v{settings.api_version}")

        store = client or create_client(settings)
        await store.connect()
        app.state.client = store

        try:
            engine = engine_factory(settings, store)
            engine.start()
        except Exception as e:
            logger.error(f"Failed to start sync engine: {e}")
            await store.close()
            raise
        app.state.engine = engine
        logger.success("Sync engine started successfully")

        yield

        # Cleanup
        logger.info("Shutting down application...")
        await engine.stop()
        await store.close()
        app.state.engine = None
        logger.success("Application shut down complete")

    app = FastAPI(
        title=settings.api_title,
        version=settings.api_version,
        description="Live view over a multi-pipeline document pool",
        lifespan=lifespan
    )

    # Add CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(SnapshotUnavailable)
    async def snapshot_unavailable_handler(request: Request, exc: SnapshotUnavailable):
        logger.warning(f"Snapshot unavailable: {exc}")
        return JSONResponse(status_code=503, content={"error": "Snapshot unavailable", "detail": str(exc)})

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        """Global exception handler."""
        logger.error(f"Unhandled exception: {exc}")
        return JSONResponse(
            status_code=500,
            content={
                "error": "Internal server error",
                "detail": str(exc) if settings.log_level == "DEBUG" else "An error occurred"
            }
        )

    # Include routers
    app.include_router(health.router, tags=["Health"])
    app.include_router(documents.router, prefix="/documents", tags=["Documents"])

    @app.get("/")
    async def root():
        """Root endpoint."""
        return {
            "service": "Pool Watchman",
            "version": settings.api_version,
            "status": "operational",
            "docs": "/docs",
            "health": "/health"
        }

    return app


configure_logging(get_settings().log_level)
app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "dashboard.main:app",
        host="0.0.0.0",
        port=get_settings().api_port,
        log_level=get_settings().log_level.lower()
    )
