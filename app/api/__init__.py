"""API router for v1 endpoints."""

from fastapi import APIRouter

from app.api import relationships

router = APIRouter()

# Related-documents graph: linking, listing, recompute, queue status
router.include_router(relationships.router, tags=["relationships"])
