"""Pydantic schemas for document fingerprints, relationships and processing jobs."""

from __future__ import annotations

import hashlib
from datetime import datetime, timezone
from enum import Enum
from uuid import UUID, uuid4

from pydantic import BaseModel, Field, field_validator


def content_hash(text: str) -> str:
    """Stable hash of extracted document text."""
    return hashlib.sha256((text or "").encode("utf-8")).hexdigest()


class RelationshipStatus(str, Enum):
    PENDING = "pending"
    COMPUTING = "computing"
    READY = "ready"
    FAILED = "failed"


class RelationshipType(str, Enum):
    IDENTICAL = "Identical"
    EXTENSION = "Extension / Follow-up"
    SHARED_TOPIC = "Shared Topic"
    TANGENTIAL = "Related (Tangential)"
    UNRELATED = "Unrelated"


class DocumentFingerprint(BaseModel):
    """Structured summary of a document used for relevance scoring."""

    document_id: str
    summary: str = ""
    keywords: list[str] = Field(default_factory=list)
    topics: list[str] = Field(default_factory=list)
    main_themes: list[str] = Field(default_factory=list)
    content_hash: str = ""
    analysis_failed: bool = False

    @field_validator("keywords", "topics", "main_themes", mode="before")
    @classmethod
    def _coerce_list(cls, value):
        # LLM output sometimes has null, a bare string, or mixed types here
        if value is None:
            return []
        if isinstance(value, str):
            return [part.strip() for part in value.split(",") if part.strip()]
        if isinstance(value, (list, tuple, set)):
            return [str(item).strip() for item in value if item is not None and str(item).strip()]
        return []

    @field_validator("summary", mode="before")
    @classmethod
    def _coerce_summary(cls, value):
        return "" if value is None else str(value)


class DocumentPair(BaseModel):
    """Unordered pair of document ids, stored lexicographically."""

    model_config = {"frozen": True}

    first: str
    second: str

    @classmethod
    def of(cls, doc_a: str, doc_b: str) -> DocumentPair:
        low, high = sorted((str(doc_a), str(doc_b)))
        return cls(first=low, second=high)

    @property
    def key(self) -> str:
        return f"{self.first}:{self.second}"

    def other(self, document_id: str) -> str:
        return self.second if str(document_id) == self.first else self.first

    def __str__(self) -> str:
        return self.key


class RelationshipRecord(BaseModel):
    """Persisted edge between two documents."""

    id: UUID
    user_id: str | None = None
    source_document_id: str
    target_document_id: str
    relevance_score: int = Field(default=0, ge=0, le=100)
    description: str = ""
    relationship_type: RelationshipType | None = None
    user_description: str | None = None
    status: RelationshipStatus = RelationshipStatus.PENDING
    last_error: str | None = None
    source_content_hash: str | None = None
    target_content_hash: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def pair(self) -> DocumentPair:
        return DocumentPair.of(self.source_document_id, self.target_document_id)

    def hash_for(self, document_id: str) -> str | None:
        if str(document_id) == self.source_document_id:
            return self.source_content_hash
        return self.target_content_hash


class RelatedDocument(BaseModel):
    """A relationship resolved from the point of view of one document."""

    relationship_id: UUID
    related_document_id: str
    relevance_score: int
    description: str
    relationship_type: RelationshipType | None = None
    user_description: str | None = None
    status: RelationshipStatus
    updated_at: datetime | None = None


class ProcessingJob(BaseModel):
    """Unit of background work: (re)compute one relationship."""

    job_id: UUID = Field(default_factory=uuid4)
    relationship_id: UUID
    pair: DocumentPair
    user_id: str | None = None
    attempt: int = 0
    next_run_at: float = 0.0
    last_error: str | None = None
    enqueued_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


# =============================================================================
# API payloads
# =============================================================================


class LinkDocumentsRequest(BaseModel):
    source_document_id: str = Field(..., min_length=1)
    target_document_id: str = Field(..., min_length=1)


class AutoLinkRequest(BaseModel):
    corpus_document_ids: list[str] = Field(default_factory=list)


class RelationshipUpdate(BaseModel):
    user_description: str | None = Field(default=None, max_length=2000)
