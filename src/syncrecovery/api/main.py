"""FastAPI application factory."""
from contextlib import asynccontextmanager

from fastapi import FastAPI
from sqlmodel import SQLModel

from syncrecovery.db.engine import get_engine
from syncrecovery.api.routes import recovery, retry_queue, sync as sync_routes


def create_app() -> FastAPI:
    """Build and return the FastAPI app."""

    engine = get_engine()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Create tables on startup (idempotent)
        SQLModel.metadata.create_all(engine)
        yield

    app = FastAPI(
        title="Sync Recovery API",
        description="Stuck sync detection and recovery for platform ingestion workers",
        version="0.1.0",
        lifespan=lifespan,
    )

    app.include_router(recovery.router, prefix="/recovery", tags=["recovery"])
    app.include_router(sync_routes.router, prefix="/sync", tags=["sync"])
    app.include_router(retry_queue.router, prefix="/retry-queue", tags=["retry-queue"])

    return app


# Module-level app instance for uvicorn
app = create_app()
