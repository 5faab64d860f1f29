"""Read-only access to extracted document text in the user_books table."""

from typing import Any

from app.core.logging import get_logger
from app.core.schemas_auth import AuthContext
from app.db.supabase_client import get_supabase

logger = get_logger(__name__)

# PDFs contribute their first pages only
PDF_PAGES_FOR_ANALYSIS = 3


def extract_document_text(row: dict[str, Any]) -> str:
    """
    Plain text for a user_books row.

    Args:
        row: Row with file_type, page_texts and text_content columns

    Returns:
        Extracted text, possibly empty
    """
    file_type = (row.get("file_type") or "").lower()
    page_texts = row.get("page_texts") or []
    text_content = row.get("text_content") or ""

    if file_type == "pdf" and page_texts:
        return " ".join(str(page) for page in page_texts[:PDF_PAGES_FOR_ANALYSIS] if page)
    if text_content:
        return text_content
    if page_texts:
        return " ".join(str(page) for page in page_texts[:PDF_PAGES_FOR_ANALYSIS] if page)
    return ""


def get_extracted_text(ctx: AuthContext, document_id: str) -> str:
    """
    Get extracted plain text for a document.

    Args:
        ctx: Caller context
        document_id: Document id (user_books.id)

    Returns:
        Extracted text; empty if the document has none or is not visible
    """
    supabase = get_supabase()

    try:
        query = (
            supabase.table("user_books")
            .select("id, file_type, page_texts, text_content")
            .eq("id", str(document_id))
        )
        if ctx.user_id and not ctx.is_admin:
            query = query.eq("user_id", ctx.user_id)
        response = query.execute()

    except Exception as e:
        logger.error(f"Failed to load text for document {document_id}: {e}")
        raise

    if not response.data:
        logger.warning(f"Document {document_id} not found or has no text")
        return ""

    return extract_document_text(response.data[0])
