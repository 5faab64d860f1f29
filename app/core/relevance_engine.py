"""Relevance engine: keeps the related-documents graph up to date.

State machine per relationship (mirrors RelationshipRecord.status):

    pending -> computing -> ready
                         -> failed   (retries exhausted)

Request paths only create pending records and enqueue jobs; the queue's
workers call execute_job, which fingerprints both documents (cached by
content hash), scores them, asks for a description and stores the result.
"""

import asyncio
import logging
from typing import Any, Protocol
from uuid import UUID

from app.chains.analyze_document import DocumentAnalyzer
from app.chains.describe_relationship import RelationshipDescriber
from app.core.backoff import BackoffPolicy
from app.core.config import get_settings
from app.core.fingerprint_cache import FingerprintCache
from app.core.logging import get_logger, log_with_context
from app.core.relationship_queue_processor import BackgroundProcessingQueue
from app.core.relationship_store import RelationshipStore
from app.core.relevance_errors import InvalidInput, TransientJobFailure
from app.core.schemas_auth import AuthContext
from app.core.schemas_relationships import (
    DocumentFingerprint,
    DocumentPair,
    ProcessingJob,
    RelatedDocument,
    RelationshipRecord,
    RelationshipStatus,
    content_hash,
)
from app.core.similarity import classify_relationship, score

logger = get_logger(__name__)

DEFAULT_AUTO_LINK_LIMIT = 5


class DocumentContentProvider(Protocol):
    def get_extracted_text(self, ctx: AuthContext, document_id: str) -> str: ...


def _validate_ids(doc_a: Any, doc_b: Any) -> tuple[str, str]:
    first = str(doc_a).strip() if doc_a is not None else ""
    second = str(doc_b).strip() if doc_b is not None else ""

    if not first or not second:
        raise InvalidInput("Both document ids are required")
    if first == second:
        raise InvalidInput("A document cannot be related to itself")
    return first, second


class RelevanceEngine:
    """Orchestrates analysis, scoring, description and persistence of relationships."""

    def __init__(
        self,
        analyzer: DocumentAnalyzer,
        describer: RelationshipDescriber,
        store: RelationshipStore,
        queue: BackgroundProcessingQueue,
        content_provider: DocumentContentProvider,
        cache: FingerprintCache | None = None,
        auto_link_limit: int = DEFAULT_AUTO_LINK_LIMIT,
    ):
        self.analyzer = analyzer
        self.describer = describer
        self.store = store
        self.queue = queue
        self.content_provider = content_provider
        self.cache = cache or FingerprintCache()
        self.auto_link_limit = auto_link_limit

        self.queue.bind(self.execute_job, self.handle_job_exhausted)

    # ------------------------------------------------------------------
    # Request-path operations
    # ------------------------------------------------------------------

    def _enqueue(self, ctx: AuthContext, record: RelationshipRecord) -> bool:
        job = ProcessingJob(
            relationship_id=record.id,
            pair=record.pair,
            user_id=ctx.user_id or record.user_id,
        )
        return self.queue.enqueue(job)

    async def ensure_computed(self, ctx: AuthContext, doc_a: str, doc_b: str) -> RelationshipRecord:
        """
        Make sure a relationship exists for two documents and is (being) computed.

        Idempotent: an existing ready record is returned unchanged and nothing
        is enqueued. A failed record is reset to pending and retried.

        Args:
            ctx: Caller context
            doc_a: First document id
            doc_b: Second document id

        Returns:
            The relationship record as it stands now

        Raises:
            InvalidInput: If an id is missing or both ids are the same
        """
        first, second = _validate_ids(doc_a, doc_b)
        pair = DocumentPair.of(first, second)

        record, created = await self.store.get_or_create_pending(ctx, pair)

        if record.status == RelationshipStatus.READY:
            return record

        if record.status == RelationshipStatus.COMPUTING and self.queue.is_active(pair.key):
            return record

        if record.status == RelationshipStatus.FAILED:
            record = await self.store.upsert(
                ctx, pair, status=RelationshipStatus.PENDING, last_error=None
            )

        self._enqueue(ctx, record)
        logger.info(
            f"Relationship {record.id} {'created' if created else 'already existed'}, computation queued",
            extra={"pair": pair.key, "relationship_id": str(record.id)},
        )
        return record

    async def recompute_for_document(self, ctx: AuthContext, document_id: str) -> int:
        """
        Re-enqueue relationships of a document whose inputs changed.

        A relationship is stale when the content hash it was computed from
        differs from the current content of either document, when it was never
        computed, or when it failed.

        Returns:
            Number of jobs enqueued
        """
        document_id = str(document_id).strip()
        if not document_id:
            raise InvalidInput("Document id is required")

        records = await self.store.list_for_document(ctx, document_id)
        current_hashes: dict[str, str] = {}

        def current_hash(doc: str) -> str:
            if doc not in current_hashes:
                current_hashes[doc] = content_hash(self.content_provider.get_extracted_text(ctx, doc))
            return current_hashes[doc]

        enqueued = 0
        for record in records:
            if self.queue.is_active(record.pair.key):
                continue

            stale = record.status == RelationshipStatus.FAILED or any(
                record.hash_for(doc) != current_hash(doc)
                for doc in (record.source_document_id, record.target_document_id)
            )
            if not stale:
                continue

            if self._enqueue(ctx, record):
                enqueued += 1

        logger.info(
            f"Re-enqueued {enqueued} of {len(records)} relationship(s) for document {document_id}",
            extra={"document_id": document_id},
        )
        return enqueued

    def invalidate_document(self, document_id: str) -> int:
        """Forget cached fingerprints of a document whose content changed."""
        return self.cache.invalidate(str(document_id))

    async def link_new_document(
        self, ctx: AuthContext, document_id: str, corpus_ids: list[str]
    ) -> list[RelationshipRecord]:
        """
        Link a newly uploaded document to existing documents of the user.

        Args:
            ctx: Caller context
            document_id: The new document
            corpus_ids: Existing document ids, most relevant candidates first

        Returns:
            Records created or found, at most auto_link_limit
        """
        seen: set[str] = set()
        records: list[RelationshipRecord] = []

        for other in corpus_ids:
            if len(records) >= self.auto_link_limit:
                break
            other = str(other).strip()
            if not other or other == str(document_id) or other in seen:
                continue
            seen.add(other)
            records.append(await self.ensure_computed(ctx, document_id, other))

        return records

    async def resume_unfinished(self, limit: int = 100) -> int:
        """
        Re-enqueue pending or computing relationships left over from a previous process.

        Returns:
            Number of jobs enqueued
        """
        ctx = AuthContext(user_id="", is_admin=True)
        records = await self.store.list_unfinished(ctx, limit=limit)

        enqueued = sum(1 for record in records if self._enqueue(ctx, record))
        if records:
            logger.info(f"Resumed {enqueued} unfinished relationship(s)")
        return enqueued

    async def list_related(self, ctx: AuthContext, document_id: str) -> list[RelatedDocument]:
        return await self.store.list_related(ctx, document_id)

    async def remove(self, ctx: AuthContext, relationship_id: UUID) -> None:
        await self.store.remove(ctx, relationship_id)

    # ------------------------------------------------------------------
    # Job execution (queue workers)
    # ------------------------------------------------------------------

    async def get_fingerprint(self, document_id: str, text: str) -> DocumentFingerprint:
        """Cached fingerprint for the current content of a document."""
        cached = self.cache.get(document_id, content_hash(text))
        if cached is not None:
            return cached

        fingerprint = await self.analyzer.analyze(document_id, text)
        self.cache.put(fingerprint)
        return fingerprint

    async def execute_job(self, job: ProcessingJob) -> None:
        """
        Compute one relationship. Called by the queue with at most one job per pair.

        Raises:
            TransientJobFailure: If a document could not be analyzed
            Exception: Anything else is left to the queue's retry policy
        """
        ctx = AuthContext.for_job(job.user_id)
        pair = job.pair

        record = await self.store.get(ctx, job.relationship_id)
        if record is None:
            logger.info(
                f"Relationship {job.relationship_id} was removed, skipping job",
                extra={"pair": pair.key, "attempt": job.attempt},
            )
            return

        resting_status = (
            RelationshipStatus.PENDING
            if record.status == RelationshipStatus.COMPUTING
            else record.status
        )
        if await self.store.update_existing(ctx, record.id, status=RelationshipStatus.COMPUTING) is None:
            logger.info(
                f"Relationship {record.id} was removed, skipping job",
                extra={"pair": pair.key, "attempt": job.attempt},
            )
            return

        try:
            first_text = self.content_provider.get_extracted_text(ctx, pair.first) or ""
            second_text = self.content_provider.get_extracted_text(ctx, pair.second) or ""

            first_fp, second_fp = await asyncio.gather(
                self.get_fingerprint(pair.first, first_text),
                self.get_fingerprint(pair.second, second_text),
            )

            unavailable = [fp.document_id for fp in (first_fp, second_fp) if fp.analysis_failed]
            if unavailable:
                raise TransientJobFailure(
                    f"Text analysis unavailable for document(s) {', '.join(unavailable)}"
                )

            relevance = score(first_fp, second_fp)
            description = await self.describer.describe(
                first_fp, first_text, second_fp, second_text, score=relevance
            )

        except Exception as e:
            # Put the record back where it was; the queue decides about retries
            try:
                await self.store.update_existing(
                    ctx, record.id, status=resting_status, last_error=str(e)
                )
            except Exception as restore_error:
                logger.error(
                    f"Failed to restore relationship {record.id} after error: {restore_error}",
                    extra={"pair": pair.key},
                )
            raise

        saved = await self.store.update_existing(
            ctx,
            record.id,
            status=RelationshipStatus.READY,
            relevance_score=relevance,
            relationship_type=classify_relationship(relevance),
            description=description,
            last_error=None,
            source_content_hash=first_fp.content_hash,
            target_content_hash=second_fp.content_hash,
        )
        if saved is None:
            logger.info(
                f"Relationship {record.id} was removed while computing, discarding result",
                extra={"pair": pair.key},
            )
            return

        log_with_context(
            logger,
            logging.INFO,
            f"Relationship {saved.id} ready: {relevance}%",
            job_id=str(job.job_id),
            pair=pair.key,
            attempt=job.attempt,
            relationship_type=saved.relationship_type.value if saved.relationship_type else None,
        )

    async def handle_job_exhausted(self, job: ProcessingJob, reason: str) -> None:
        """Mark a relationship failed once its job has used every attempt."""
        ctx = AuthContext.for_job(job.user_id)

        saved = await self.store.update_existing(
            ctx,
            job.relationship_id,
            status=RelationshipStatus.FAILED,
            last_error=reason or "Relevance computation failed",
        )
        if saved is None:
            return

        logger.error(
            f"Relationship {job.relationship_id} marked failed after {job.attempt} attempt(s): {reason}",
            extra={"pair": job.pair.key, "attempt": job.attempt},
        )


# Global engine instance (for API control)
_engine: RelevanceEngine | None = None


def build_relevance_engine() -> RelevanceEngine:
    """Wire the engine from settings with the Supabase-backed collaborators."""
    from app.core.llm import get_text_analysis_service
    from app.db import document_relationships, documents

    settings = get_settings()

    queue = BackgroundProcessingQueue(
        concurrency=settings.QUEUE_CONCURRENCY,
        backoff=BackoffPolicy(
            delays=tuple(settings.QUEUE_BACKOFF_SECONDS),
            max_attempts=settings.QUEUE_MAX_ATTEMPTS,
        ),
    )

    return RelevanceEngine(
        analyzer=DocumentAnalyzer(
            get_text_analysis_service(settings.ANALYSIS_MODEL),
            max_chars=settings.ANALYSIS_MAX_CHARS,
        ),
        describer=RelationshipDescriber(
            get_text_analysis_service(settings.DESCRIPTION_MODEL),
            excerpt_chars=settings.DESCRIPTION_EXCERPT_CHARS,
        ),
        store=RelationshipStore(document_relationships),
        queue=queue,
        content_provider=documents,
        auto_link_limit=settings.AUTO_LINK_LIMIT,
    )


def get_relevance_engine() -> RelevanceEngine:
    """Get or create the global engine instance."""
    global _engine
    if _engine is None:
        _engine = build_relevance_engine()
    return _engine
