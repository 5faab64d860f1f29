"""Database operations for the document_relationships table.

Rows are stored with the document pair in normalized (lexicographic) order;
the table carries a unique constraint on (user_id, source_document_id,
target_document_id). Every function takes the AuthContext of the caller so
row-level authorization stays with the data layer.
"""

from datetime import datetime, timezone
from typing import Any
from uuid import UUID

from app.core.logging import get_logger
from app.core.relevance_errors import PersistenceConflict
from app.core.schemas_auth import AuthContext
from app.core.schemas_relationships import DocumentPair
from app.db.supabase_client import get_supabase

logger = get_logger(__name__)

TABLE = "document_relationships"


def _utc_now_iso() -> str:
    """Get current UTC time as ISO string."""
    return datetime.now(timezone.utc).isoformat()


def _is_unique_violation(error: Exception) -> bool:
    # postgrest raises APIError with code 23505 on unique constraint violations
    message = str(error)
    return "23505" in message or "duplicate key" in message.lower()


def _scoped(query, ctx: AuthContext):
    if ctx.is_admin or not ctx.user_id:
        return query
    return query.eq("user_id", ctx.user_id)


def find_by_pair(ctx: AuthContext, pair: DocumentPair) -> dict[str, Any] | None:
    """
    Get the relationship row for a normalized document pair.

    Args:
        ctx: Caller context
        pair: Normalized document pair

    Returns:
        Row dict or None if no relationship exists
    """
    supabase = get_supabase()

    try:
        query = (
            supabase.table(TABLE)
            .select("*")
            .eq("source_document_id", pair.first)
            .eq("target_document_id", pair.second)
        )
        response = _scoped(query, ctx).limit(1).execute()
        return response.data[0] if response.data else None

    except Exception as e:
        logger.error(f"Failed to look up relationship for pair {pair}: {e}")
        raise


def get(ctx: AuthContext, relationship_id: UUID) -> dict[str, Any] | None:
    """
    Get a relationship row by id.

    Args:
        ctx: Caller context
        relationship_id: Relationship UUID

    Returns:
        Row dict or None if not found
    """
    supabase = get_supabase()

    try:
        query = supabase.table(TABLE).select("*").eq("id", str(relationship_id))
        response = _scoped(query, ctx).execute()
        return response.data[0] if response.data else None

    except Exception as e:
        logger.error(f"Failed to get relationship {relationship_id}: {e}")
        raise


def insert(ctx: AuthContext, row: dict[str, Any]) -> dict[str, Any]:
    """
    Insert a relationship row.

    Args:
        ctx: Caller context
        row: Column values; pair must already be normalized

    Returns:
        The inserted row

    Raises:
        PersistenceConflict: If a row for the pair already exists
    """
    supabase = get_supabase()
    now = _utc_now_iso()
    payload = {
        "user_id": ctx.user_id or None,
        "created_at": now,
        "updated_at": now,
        **row,
    }

    try:
        response = supabase.table(TABLE).insert(payload).execute()
    except Exception as e:
        if _is_unique_violation(e):
            raise PersistenceConflict(
                f"Relationship {row.get('source_document_id')}:{row.get('target_document_id')} already exists"
            ) from e
        logger.error(f"Failed to insert relationship: {e}")
        raise

    if not response.data:
        raise ValueError("No data returned from relationship insert")

    return response.data[0]


def update(ctx: AuthContext, relationship_id: UUID, fields: dict[str, Any]) -> dict[str, Any] | None:
    """
    Update columns of a relationship row.

    Args:
        ctx: Caller context
        relationship_id: Relationship UUID
        fields: Columns to change

    Returns:
        Updated row, or None if it no longer exists
    """
    supabase = get_supabase()

    try:
        query = (
            supabase.table(TABLE)
            .update({**fields, "updated_at": _utc_now_iso()})
            .eq("id", str(relationship_id))
        )
        response = _scoped(query, ctx).execute()
        return response.data[0] if response.data else None

    except Exception as e:
        logger.error(f"Failed to update relationship {relationship_id}: {e}")
        raise


def delete(ctx: AuthContext, relationship_id: UUID) -> None:
    """
    Delete a relationship row. Deleting a missing id is not an error.

    Args:
        ctx: Caller context
        relationship_id: Relationship UUID
    """
    supabase = get_supabase()

    try:
        query = supabase.table(TABLE).delete().eq("id", str(relationship_id))
        _scoped(query, ctx).execute()

    except Exception as e:
        logger.error(f"Failed to delete relationship {relationship_id}: {e}")
        raise


def list_by_document(
    ctx: AuthContext,
    document_id: str,
    status: str | None = None,
) -> list[dict[str, Any]]:
    """
    List relationship rows touching a document on either side.

    Args:
        ctx: Caller context
        document_id: Document id
        status: Optional status filter

    Returns:
        List of row dicts
    """
    supabase = get_supabase()

    try:
        query = (
            supabase.table(TABLE)
            .select("*")
            .or_(f"source_document_id.eq.{document_id},target_document_id.eq.{document_id}")
        )
        if status:
            query = query.eq("status", status)
        response = _scoped(query, ctx).execute()
        return response.data or []

    except Exception as e:
        logger.error(f"Failed to list relationships for document {document_id}: {e}")
        raise


def list_unfinished(ctx: AuthContext, limit: int = 100) -> list[dict[str, Any]]:
    """
    List relationships still pending or computing (e.g. after a restart).

    Args:
        ctx: Caller context; an admin context spans all users
        limit: Maximum rows to return

    Returns:
        Row dicts ordered by created_at ascending
    """
    supabase = get_supabase()

    try:
        query = (
            supabase.table(TABLE)
            .select("*")
            .in_("status", ["pending", "computing"])
            .order("created_at")
            .limit(limit)
        )
        response = _scoped(query, ctx).execute()
        return response.data or []

    except Exception as e:
        logger.error(f"Failed to list unfinished relationships: {e}")
        raise
