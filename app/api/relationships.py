"""API endpoints for document relationships (the related-documents graph)."""

from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Response, status

from app.core.auth_middleware import require_auth
from app.core.logging import get_logger
from app.core.relevance_engine import RelevanceEngine, get_relevance_engine
from app.core.relevance_errors import InvalidInput
from app.core.schemas_auth import AuthContext
from app.core.schemas_relationships import (
    AutoLinkRequest,
    LinkDocumentsRequest,
    RelationshipUpdate,
)

logger = get_logger(__name__)

router = APIRouter()


@router.get("/documents/{document_id}/relationships")
async def list_related_documents(
    document_id: str,
    auth: AuthContext = Depends(require_auth),
    engine: RelevanceEngine = Depends(get_relevance_engine),
) -> dict:
    """
    List ready relationships of a document, most relevant first.

    Args:
        document_id: Document id

    Returns:
        Dict with related documents and count
    """
    try:
        related = await engine.list_related(auth, document_id)
        return {
            "document_id": document_id,
            "related": [item.model_dump(mode="json") for item in related],
            "count": len(related),
        }

    except Exception:
        logger.exception(f"Failed to list relationships for document {document_id}")
        raise HTTPException(status_code=500, detail="Failed to retrieve related documents")


@router.get("/documents/{document_id}/relationships/all")
async def list_all_relationships(
    document_id: str,
    auth: AuthContext = Depends(require_auth),
    engine: RelevanceEngine = Depends(get_relevance_engine),
) -> dict:
    """List every relationship of a document regardless of status (diagnostics)."""
    try:
        records = await engine.store.list_for_document(auth, document_id)
        return {
            "document_id": document_id,
            "relationships": [record.model_dump(mode="json") for record in records],
            "count": len(records),
        }

    except Exception:
        logger.exception(f"Failed to list all relationships for document {document_id}")
        raise HTTPException(status_code=500, detail="Failed to retrieve relationships")


@router.post("/relationships", status_code=status.HTTP_202_ACCEPTED)
async def link_documents(
    request: LinkDocumentsRequest,
    auth: AuthContext = Depends(require_auth),
    engine: RelevanceEngine = Depends(get_relevance_engine),
) -> dict:
    """
    Link two documents and queue relevance computation.

    Returns:
        The relationship record (pending, computing or already ready)

    Raises:
        HTTPException 400: If the ids are missing or identical
    """
    try:
        record = await engine.ensure_computed(
            auth, request.source_document_id, request.target_document_id
        )
        return {"relationship": record.model_dump(mode="json")}

    except InvalidInput as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception:
        logger.exception(
            f"Failed to link {request.source_document_id} and {request.target_document_id}"
        )
        raise HTTPException(status_code=500, detail="Failed to link documents")


@router.patch("/relationships/{relationship_id}")
async def update_relationship(
    relationship_id: UUID,
    request: RelationshipUpdate,
    auth: AuthContext = Depends(require_auth),
    engine: RelevanceEngine = Depends(get_relevance_engine),
) -> dict:
    """Update the user-authored description of a relationship."""
    try:
        record = await engine.store.set_user_description(
            auth, relationship_id, request.user_description
        )
    except Exception:
        logger.exception(f"Failed to update relationship {relationship_id}")
        raise HTTPException(status_code=500, detail="Failed to update relationship")

    if record is None:
        raise HTTPException(status_code=404, detail="Relationship not found")
    return {"relationship": record.model_dump(mode="json")}


@router.delete("/relationships/{relationship_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_relationship(
    relationship_id: UUID,
    auth: AuthContext = Depends(require_auth),
    engine: RelevanceEngine = Depends(get_relevance_engine),
) -> Response:
    """Delete a relationship. Deleting an unknown id succeeds."""
    try:
        await engine.remove(auth, relationship_id)
        return Response(status_code=status.HTTP_204_NO_CONTENT)

    except Exception:
        logger.exception(f"Failed to delete relationship {relationship_id}")
        raise HTTPException(status_code=500, detail="Failed to delete relationship")


@router.post("/documents/{document_id}/relationships/recompute", status_code=status.HTTP_202_ACCEPTED)
async def recompute_relationships(
    document_id: str,
    auth: AuthContext = Depends(require_auth),
    engine: RelevanceEngine = Depends(get_relevance_engine),
) -> dict:
    """Re-queue stale relationships of a document after its content changed."""
    try:
        engine.invalidate_document(document_id)
        enqueued = await engine.recompute_for_document(auth, document_id)
        return {"document_id": document_id, "enqueued": enqueued}

    except InvalidInput as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception:
        logger.exception(f"Failed to recompute relationships for document {document_id}")
        raise HTTPException(status_code=500, detail="Failed to recompute relationships")


@router.post("/documents/{document_id}/auto-link", status_code=status.HTTP_202_ACCEPTED)
async def auto_link_document(
    document_id: str,
    request: AutoLinkRequest,
    auth: AuthContext = Depends(require_auth),
    engine: RelevanceEngine = Depends(get_relevance_engine),
) -> dict:
    """Link a newly uploaded document to existing documents of the user."""
    try:
        records = await engine.link_new_document(auth, document_id, request.corpus_document_ids)
        return {
            "document_id": document_id,
            "relationships": [record.model_dump(mode="json") for record in records],
            "count": len(records),
        }

    except InvalidInput as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception:
        logger.exception(f"Failed to auto-link document {document_id}")
        raise HTTPException(status_code=500, detail="Failed to link document")


@router.get("/relationships/queue")
async def queue_status(
    auth: AuthContext = Depends(require_auth),
    engine: RelevanceEngine = Depends(get_relevance_engine),
) -> dict:
    """Background queue statistics."""
    return engine.queue.stats
