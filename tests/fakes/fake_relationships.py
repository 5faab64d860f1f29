"""In-memory stand-ins for the document_relationships and user_books tables."""

from datetime import datetime, timedelta, timezone
from typing import Any
from uuid import UUID

from app.core.relevance_errors import PersistenceConflict
from app.core.schemas_auth import AuthContext
from app.core.schemas_relationships import DocumentPair


class FakeRelationshipDB:
    """Implements the persistence functions of app.db.document_relationships."""

    def __init__(self):
        self.reset()

    def reset(self):
        """Reset all stores to initial state."""
        self.rows: dict[str, dict[str, Any]] = {}
        self.insert_calls = 0
        self.update_calls: list[dict[str, Any]] = []
        # Row another process slips in right before our next insert
        self.race_row: dict[str, Any] | None = None
        self._tick = 0

    def _now(self) -> str:
        # Strictly increasing timestamps keep ordering assertions deterministic
        self._tick += 1
        stamp = datetime(2026, 1, 1, tzinfo=timezone.utc) + timedelta(seconds=self._tick)
        return stamp.isoformat()

    @staticmethod
    def _visible(ctx: AuthContext, row: dict[str, Any]) -> bool:
        if ctx.is_admin or not ctx.user_id:
            return True
        return row.get("user_id") == ctx.user_id

    def _find(self, user_id, first: str, second: str) -> dict[str, Any] | None:
        for row in self.rows.values():
            if (
                row.get("user_id") == user_id
                and row["source_document_id"] == first
                and row["target_document_id"] == second
            ):
                return row
        return None

    def find_by_pair(self, ctx: AuthContext, pair: DocumentPair) -> dict[str, Any] | None:
        for row in self.rows.values():
            if (
                self._visible(ctx, row)
                and row["source_document_id"] == pair.first
                and row["target_document_id"] == pair.second
            ):
                return dict(row)
        return None

    def get(self, ctx: AuthContext, relationship_id: UUID) -> dict[str, Any] | None:
        row = self.rows.get(str(relationship_id))
        if row is None or not self._visible(ctx, row):
            return None
        return dict(row)

    def insert(self, ctx: AuthContext, row: dict[str, Any]) -> dict[str, Any]:
        self.insert_calls += 1

        if self.race_row is not None:
            raced, self.race_row = self.race_row, None
            self.rows[raced["id"]] = raced

        user_id = ctx.user_id or None
        if self._find(user_id, row["source_document_id"], row["target_document_id"]):
            raise PersistenceConflict("duplicate key value violates unique constraint")

        now = self._now()
        stored = {"user_id": user_id, "created_at": now, "updated_at": now, **row}
        self.rows[str(stored["id"])] = stored
        return dict(stored)

    def update(
        self, ctx: AuthContext, relationship_id: UUID, fields: dict[str, Any]
    ) -> dict[str, Any] | None:
        row = self.rows.get(str(relationship_id))
        if row is None or not self._visible(ctx, row):
            return None
        self.update_calls.append(dict(fields))
        row.update(fields)
        row["updated_at"] = self._now()
        return dict(row)

    def delete(self, ctx: AuthContext, relationship_id: UUID) -> None:
        row = self.rows.get(str(relationship_id))
        if row is not None and self._visible(ctx, row):
            del self.rows[str(relationship_id)]

    def list_by_document(
        self, ctx: AuthContext, document_id: str, status: str | None = None
    ) -> list[dict[str, Any]]:
        return [
            dict(row)
            for row in self.rows.values()
            if self._visible(ctx, row)
            and document_id in (row["source_document_id"], row["target_document_id"])
            and (status is None or row["status"] == status)
        ]

    def list_unfinished(self, ctx: AuthContext, limit: int = 100) -> list[dict[str, Any]]:
        rows = [
            dict(row)
            for row in self.rows.values()
            if self._visible(ctx, row) and row["status"] in ("pending", "computing")
        ]
        rows.sort(key=lambda r: r["created_at"])
        return rows[:limit]

    # Helpers for assertions
    def only_row(self) -> dict[str, Any]:
        assert len(self.rows) == 1, f"expected one row, found {len(self.rows)}"
        return next(iter(self.rows.values()))


class FakeDocuments:
    """Content provider over an in-memory map of document id -> text."""

    def __init__(self, texts: dict[str, str] | None = None):
        self.texts: dict[str, str] = dict(texts or {})
        self.reads: list[str] = []

    def get_extracted_text(self, ctx: AuthContext, document_id: str) -> str:
        self.reads.append(str(document_id))
        return self.texts.get(str(document_id), "")
