"""FastAPI application entry point."""

from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.responses import JSONResponse

from app.api import router as api_router
from app.core.config import get_settings
from app.core.logging import get_logger

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start the relationship queue workers with the API process."""
    engine = None
    if get_settings().START_WORKERS_ON_BOOT:
        from app.core.relevance_engine import get_relevance_engine

        engine = get_relevance_engine()
        engine.queue.start()
        try:
            await engine.resume_unfinished()
        except Exception as e:
            logger.error(f"Failed to resume unfinished relationships: {e}")

    yield

    if engine is not None:
        await engine.queue.stop()


app = FastAPI(
    title="Document Relevance Engine",
    description="Relevance scoring and related-documents graph maintenance service",
    version="0.1.0",
    lifespan=lifespan,
)


@app.get("/health")
async def health_check() -> JSONResponse:
    """Health check endpoint."""
    return JSONResponse(content={"status": "ok"}, status_code=200)


# Include v1 API router
app.include_router(api_router, prefix="/v1", tags=["v1"])
