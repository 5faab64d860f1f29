"""Relationship store: the single write path for relationship records.

All mutation goes through upsert/update_existing/remove. Writes for the
same document pair are serialized with an in-process lock, and a unique
constraint hit on insert is folded into an update of the existing row.
"""

import asyncio
import weakref
from datetime import datetime, timezone
from typing import Any, Protocol
from uuid import UUID, uuid4

from app.core.logging import get_logger
from app.core.relevance_errors import PersistenceConflict
from app.core.schemas_auth import AuthContext
from app.core.schemas_relationships import (
    DocumentPair,
    RelatedDocument,
    RelationshipRecord,
    RelationshipStatus,
)

logger = get_logger(__name__)

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


class RelationshipPersistence(Protocol):
    """Row-level access to the document_relationships table."""

    def find_by_pair(self, ctx: AuthContext, pair: DocumentPair) -> dict[str, Any] | None: ...

    def get(self, ctx: AuthContext, relationship_id: UUID) -> dict[str, Any] | None: ...

    def insert(self, ctx: AuthContext, row: dict[str, Any]) -> dict[str, Any]: ...

    def update(
        self, ctx: AuthContext, relationship_id: UUID, fields: dict[str, Any]
    ) -> dict[str, Any] | None: ...

    def delete(self, ctx: AuthContext, relationship_id: UUID) -> None: ...

    def list_by_document(
        self, ctx: AuthContext, document_id: str, status: str | None = None
    ) -> list[dict[str, Any]]: ...

    def list_unfinished(self, ctx: AuthContext, limit: int = 100) -> list[dict[str, Any]]: ...


def _to_row_fields(fields: dict[str, Any]) -> dict[str, Any]:
    row: dict[str, Any] = {}
    for key, value in fields.items():
        if hasattr(value, "value"):
            value = value.value
        row[key] = value
    return row


def _updated_sort_key(record: RelationshipRecord) -> datetime:
    stamp = record.updated_at or record.created_at
    if stamp is None:
        return _EPOCH
    if stamp.tzinfo is None:
        stamp = stamp.replace(tzinfo=timezone.utc)
    return stamp


class RelationshipStore:
    """CRUD over relationship records with per-pair write serialization."""

    def __init__(self, persistence: RelationshipPersistence):
        self.persistence = persistence
        # Entries disappear once no caller holds the lock
        self._pair_locks: weakref.WeakValueDictionary[str, asyncio.Lock] = weakref.WeakValueDictionary()

    def _lock_for(self, pair: DocumentPair) -> asyncio.Lock:
        lock = self._pair_locks.get(pair.key)
        if lock is None:
            lock = asyncio.Lock()
            self._pair_locks[pair.key] = lock
        return lock

    async def get(self, ctx: AuthContext, relationship_id: UUID) -> RelationshipRecord | None:
        row = self.persistence.get(ctx, relationship_id)
        return RelationshipRecord.model_validate(row) if row else None

    async def find(self, ctx: AuthContext, pair: DocumentPair) -> RelationshipRecord | None:
        row = self.persistence.find_by_pair(ctx, pair)
        return RelationshipRecord.model_validate(row) if row else None

    async def upsert(self, ctx: AuthContext, pair: DocumentPair, **fields: Any) -> RelationshipRecord:
        """
        Create or update the record for a document pair.

        Args:
            ctx: Caller context
            pair: Document pair (either order; normalized here)
            **fields: Columns to set (relevance_score, description, status, ...)

        Returns:
            The record as persisted
        """
        pair = DocumentPair.of(pair.first, pair.second)
        row_fields = _to_row_fields(fields)

        async with self._lock_for(pair):
            existing = self.persistence.find_by_pair(ctx, pair)
            if existing is None:
                row = {
                    "id": str(uuid4()),
                    "source_document_id": pair.first,
                    "target_document_id": pair.second,
                    "status": RelationshipStatus.PENDING.value,
                    "relevance_score": 0,
                    "description": "",
                    **row_fields,
                }
                try:
                    saved = self.persistence.insert(ctx, row)
                    return RelationshipRecord.model_validate(saved)
                except PersistenceConflict:
                    # Another process inserted the pair first; update theirs
                    logger.info(
                        f"Relationship for pair {pair} already exists, updating existing row",
                        extra={"pair": pair.key},
                    )
                    existing = self.persistence.find_by_pair(ctx, pair)
                    if existing is None:
                        raise

            if not row_fields:
                return RelationshipRecord.model_validate(existing)

            saved = self.persistence.update(ctx, UUID(str(existing["id"])), row_fields)
            return RelationshipRecord.model_validate(saved or {**existing, **row_fields})

    async def update_existing(
        self, ctx: AuthContext, relationship_id: UUID, **fields: Any
    ) -> RelationshipRecord | None:
        """
        Update a record by id without ever creating one.

        Returns:
            The updated record, or None if it no longer exists
        """
        record = await self.get(ctx, relationship_id)
        if record is None:
            return None

        async with self._lock_for(record.pair):
            if self.persistence.get(ctx, relationship_id) is None:
                return None
            saved = self.persistence.update(ctx, relationship_id, _to_row_fields(fields))

        return RelationshipRecord.model_validate(saved) if saved else None

    async def get_or_create_pending(
        self, ctx: AuthContext, pair: DocumentPair
    ) -> tuple[RelationshipRecord, bool]:
        """
        Get the record for a pair, creating a pending one if absent.

        Returns:
            (record, created)
        """
        pair = DocumentPair.of(pair.first, pair.second)

        async with self._lock_for(pair):
            existing = self.persistence.find_by_pair(ctx, pair)
            if existing is not None:
                return RelationshipRecord.model_validate(existing), False

            row = {
                "id": str(uuid4()),
                "source_document_id": pair.first,
                "target_document_id": pair.second,
                "status": RelationshipStatus.PENDING.value,
                "relevance_score": 0,
                "description": "",
            }
            try:
                saved = self.persistence.insert(ctx, row)
            except PersistenceConflict:
                existing = self.persistence.find_by_pair(ctx, pair)
                if existing is None:
                    raise
                return RelationshipRecord.model_validate(existing), False

        logger.info(
            f"Created pending relationship {saved['id']} for pair {pair}",
            extra={"pair": pair.key, "relationship_id": str(saved["id"])},
        )
        return RelationshipRecord.model_validate(saved), True

    async def set_user_description(
        self, ctx: AuthContext, relationship_id: UUID, user_description: str | None
    ) -> RelationshipRecord | None:
        """Set the user-authored note on a relationship. Returns None if missing."""
        return await self.update_existing(ctx, relationship_id, user_description=user_description)

    async def remove(self, ctx: AuthContext, relationship_id: UUID) -> None:
        """Delete a relationship. Removing an unknown id is a no-op."""
        record = await self.get(ctx, relationship_id)
        if record is None:
            logger.debug(f"Relationship {relationship_id} already gone")
            return

        async with self._lock_for(record.pair):
            self.persistence.delete(ctx, relationship_id)

        logger.info(
            f"Removed relationship {relationship_id}",
            extra={"pair": record.pair.key, "relationship_id": str(relationship_id)},
        )

    async def list_for_document(self, ctx: AuthContext, document_id: str) -> list[RelationshipRecord]:
        """All relationships touching a document, in any status."""
        rows = self.persistence.list_by_document(ctx, str(document_id))
        return [RelationshipRecord.model_validate(row) for row in rows]

    async def list_unfinished(self, ctx: AuthContext, limit: int = 100) -> list[RelationshipRecord]:
        """Pending or computing relationships, oldest first."""
        rows = self.persistence.list_unfinished(ctx, limit=limit)
        return [RelationshipRecord.model_validate(row) for row in rows]

    async def list_related(self, ctx: AuthContext, document_id: str) -> list[RelatedDocument]:
        """
        Ready relationships of a document, resolved to the other document.

        Ordered by relevance score descending, most recently updated first on ties.
        """
        rows = self.persistence.list_by_document(
            ctx, str(document_id), status=RelationshipStatus.READY.value
        )
        records = [RelationshipRecord.model_validate(row) for row in rows]
        records = [r for r in records if r.status == RelationshipStatus.READY]

        records.sort(key=_updated_sort_key, reverse=True)
        records.sort(key=lambda r: r.relevance_score, reverse=True)

        return [
            RelatedDocument(
                relationship_id=record.id,
                related_document_id=record.pair.other(str(document_id)),
                relevance_score=record.relevance_score,
                description=record.description,
                relationship_type=record.relationship_type,
                user_description=record.user_description,
                status=record.status,
                updated_at=record.updated_at,
            )
            for record in records
        ]
