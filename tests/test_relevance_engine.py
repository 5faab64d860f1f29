"""Behavioral tests for the relevance engine.

Wires the real analyzer, describer, store and queue to in-memory fakes and
drives relationships through pending -> computing -> ready / failed.
"""

import asyncio
from unittest.mock import MagicMock

import pytest

from app.chains.analyze_document import DocumentAnalyzer
from app.chains.describe_relationship import RelationshipDescriber
from app.core.backoff import BackoffPolicy
from app.core.llm import AnthropicTextAnalysisService
from app.core.relationship_queue_processor import BackgroundProcessingQueue
from app.core.relationship_store import RelationshipStore
from app.core.relevance_engine import RelevanceEngine
from app.core.relevance_errors import AnalysisFailure, InvalidInput
from app.core.schemas_auth import AuthContext
from app.core.schemas_relationships import DocumentPair, RelationshipStatus, content_hash
from tests.fakes.fake_clock import ManualClock
from tests.fakes.fake_relationships import FakeDocuments, FakeRelationshipDB
from tests.fakes.fake_text_analysis import FakeTextAnalysisService, analysis_json

KANT_TEXT = (
    "KANT-DOC Groundwork of the Metaphysics of Morals. Duty, autonomy and the "
    "categorical imperative as the supreme principle of morality."
)
COMMENTARY_TEXT = (
    "COMMENTARY-DOC A reader's guide to the Groundwork explaining maxims, duty "
    "and autonomy for students of moral philosophy."
)
COOKING_TEXT = (
    "COOKING-DOC Weeknight pasta dinners with garlic and olive oil, ready in "
    "twenty minutes with pantry ingredients."
)

ANALYSES = {
    "KANT-DOC": analysis_json(
        "Kant argues that moral duty follows from reason alone",
        ["categorical imperative", "duty", "autonomy", "reason"],
        ["ethics", "deontology", "moral philosophy"],
        ["moral duty", "rational agency"],
    ),
    "COMMENTARY-DOC": analysis_json(
        "A commentary explaining how Kant grounds moral duty in reason",
        ["categorical imperative", "duty", "autonomy", "maxims"],
        ["ethics", "deontology", "moral philosophy"],
        ["moral duty", "rational agency"],
    ),
    "COOKING-DOC": analysis_json(
        "Recipes for weeknight pasta dinners",
        ["pasta", "garlic", "olive oil"],
        ["cooking"],
        ["quick meals"],
    ),
}


class Harness:
    def __init__(self, fail_times=0, max_attempts=3, auto_link_limit=5, analysis=None):
        self.db = FakeRelationshipDB()
        self.documents = FakeDocuments(
            {"kant": KANT_TEXT, "commentary": COMMENTARY_TEXT, "cooking": COOKING_TEXT}
        )
        self.analysis = analysis or FakeTextAnalysisService(by_context=ANALYSES, fail_times=fail_times)
        self.descriptions = FakeTextAnalysisService(response="The commentary explains Kant's Groundwork.")
        self.clock = ManualClock()
        self.queue = BackgroundProcessingQueue(
            concurrency=3,
            backoff=BackoffPolicy(delays=(1, 5, 30), max_attempts=max_attempts),
            clock=self.clock,
        )
        self.engine = RelevanceEngine(
            analyzer=DocumentAnalyzer(self.analysis),
            describer=RelationshipDescriber(self.descriptions),
            store=RelationshipStore(self.db),
            queue=self.queue,
            content_provider=self.documents,
            auto_link_limit=auto_link_limit,
        )

    async def run_queue(self):
        self.queue.start()
        try:
            await self.queue.drain(timeout=2)
        finally:
            await self.queue.stop()


@pytest.fixture
def harness():
    return Harness()


@pytest.mark.asyncio
async def test_concurrent_requests_create_one_relationship(harness, user_ctx):
    records = await asyncio.gather(
        *[
            harness.engine.ensure_computed(user_ctx, *(("kant", "commentary") if i % 2 else ("commentary", "kant")))
            for i in range(10)
        ]
    )

    assert len(harness.db.rows) == 1
    assert len({record.id for record in records}) == 1
    assert harness.queue.pending_for("commentary:kant") == 1

    await harness.run_queue()

    row = harness.db.only_row()
    assert row["status"] == "ready"
    assert row["source_document_id"] == "commentary"
    assert row["target_document_id"] == "kant"
    assert row["relevance_score"] == 77
    assert row["relationship_type"] == "Shared Topic"
    assert row["description"] == "The commentary explains Kant's Groundwork."
    assert row["source_content_hash"] == content_hash(COMMENTARY_TEXT)
    assert row["target_content_hash"] == content_hash(KANT_TEXT)
    assert row["last_error"] is None
    assert len(harness.analysis.calls) == 2


@pytest.mark.asyncio
@pytest.mark.parametrize("doc_a,doc_b", [("kant", "kant"), ("", "kant"), ("kant", None), ("  ", " ")])
async def test_invalid_ids_are_rejected(harness, user_ctx, doc_a, doc_b):
    with pytest.raises(InvalidInput):
        await harness.engine.ensure_computed(user_ctx, doc_a, doc_b)

    assert harness.db.rows == {}
    assert harness.queue.stats["queued_jobs"] == 0


@pytest.mark.asyncio
async def test_ready_relationship_is_not_recomputed(harness, user_ctx):
    await harness.engine.ensure_computed(user_ctx, "kant", "commentary")
    await harness.run_queue()

    record = await harness.engine.ensure_computed(user_ctx, "commentary", "kant")

    assert record.status == RelationshipStatus.READY
    assert harness.queue.stats["queued_jobs"] == 0


@pytest.mark.asyncio
async def test_transient_analysis_failure_is_retried(user_ctx):
    harness = Harness(fail_times=2)

    await harness.engine.ensure_computed(user_ctx, "kant", "commentary")
    await harness.run_queue()

    row = harness.db.only_row()
    assert row["status"] == "ready"
    assert harness.clock.sleeps == [1.0]


@pytest.mark.asyncio
async def test_exhausted_retries_mark_failed_then_recover(user_ctx):
    harness = Harness(fail_times=100, max_attempts=3)

    await harness.engine.ensure_computed(user_ctx, "kant", "commentary")
    await harness.run_queue()

    row = harness.db.only_row()
    assert row["status"] == "failed"
    assert "Text analysis unavailable" in row["last_error"]
    # Failure fingerprints are never cached, so each attempt asks again
    assert len(harness.analysis.calls) == 6

    harness.analysis.fail_times = 0
    record = await harness.engine.ensure_computed(user_ctx, "kant", "commentary")
    assert record.status == RelationshipStatus.PENDING

    await harness.run_queue()

    row = harness.db.only_row()
    assert row["status"] == "ready"
    assert row["last_error"] is None


@pytest.mark.asyncio
async def test_recompute_only_requeues_stale_relationships(harness, user_ctx):
    await harness.engine.ensure_computed(user_ctx, "kant", "commentary")
    await harness.engine.ensure_computed(user_ctx, "kant", "cooking")
    await harness.run_queue()

    assert await harness.engine.recompute_for_document(user_ctx, "kant") == 0

    harness.documents.texts["cooking"] = COOKING_TEXT + " Now with a dessert chapter."
    harness.engine.invalidate_document("cooking")

    assert await harness.engine.recompute_for_document(user_ctx, "kant") == 1

    await harness.run_queue()

    rows = {row["source_document_id"]: row for row in harness.db.rows.values()}
    assert rows["cooking"]["source_content_hash"] == content_hash(harness.documents.texts["cooking"])


@pytest.mark.asyncio
async def test_recompute_keeps_user_description(harness, user_ctx):
    record = await harness.engine.ensure_computed(user_ctx, "kant", "commentary")
    await harness.run_queue()
    await harness.engine.store.set_user_description(user_ctx, record.id, "Assigned reading")

    harness.documents.texts["kant"] = KANT_TEXT + " Second edition."
    await harness.engine.recompute_for_document(user_ctx, "kant")
    await harness.run_queue()

    row = harness.db.only_row()
    assert row["status"] == "ready"
    assert row["user_description"] == "Assigned reading"


@pytest.mark.asyncio
async def test_removed_relationship_is_not_recreated_by_job(harness, user_ctx):
    record = await harness.engine.ensure_computed(user_ctx, "kant", "commentary")
    await harness.engine.remove(user_ctx, record.id)

    await harness.run_queue()

    assert harness.db.rows == {}
    assert harness.analysis.calls == []


class RemovingTextAnalysisService:
    """Deletes the relationship under computation, then fails."""

    def __init__(self, engine, ctx):
        self.engine = engine
        self.ctx = ctx
        self.relationship_id = None

    async def analyze_text(self, prompt: str, context_text: str = "") -> str:
        await self.engine.remove(self.ctx, self.relationship_id)
        raise AnalysisFailure("Text analysis call failed: service unavailable")


@pytest.mark.asyncio
async def test_relationship_removed_during_failed_attempt_stays_removed(user_ctx):
    harness = Harness(max_attempts=1)
    remover = RemovingTextAnalysisService(harness.engine, user_ctx)
    harness.engine.analyzer.text_service = remover

    record = await harness.engine.ensure_computed(user_ctx, "kant", "commentary")
    remover.relationship_id = record.id
    await harness.run_queue()

    assert harness.db.rows == {}
    assert harness.db.insert_calls == 1


@pytest.mark.asyncio
async def test_relationship_removed_during_retries_stays_removed(user_ctx):
    harness = Harness(max_attempts=3)
    remover = RemovingTextAnalysisService(harness.engine, user_ctx)
    harness.engine.analyzer.text_service = remover

    record = await harness.engine.ensure_computed(user_ctx, "kant", "commentary")
    remover.relationship_id = record.id
    await harness.run_queue()

    assert harness.db.rows == {}
    assert harness.db.insert_calls == 1
    # The retry finds the record gone and skips it
    assert harness.clock.sleeps == [1.0]


@pytest.mark.asyncio
async def test_relationship_removed_while_describing_is_discarded(user_ctx):
    harness = Harness()
    remover = RemovingTextAnalysisService(harness.engine, user_ctx)
    harness.engine.describer.text_service = remover

    record = await harness.engine.ensure_computed(user_ctx, "kant", "commentary")
    remover.relationship_id = record.id
    await harness.run_queue()

    assert harness.db.rows == {}
    assert harness.db.insert_calls == 1


def _slow_then_answering_client(slow_calls: int):
    """Anthropic client whose first calls hang past any small timeout."""
    state = {"calls": 0}

    async def create(**kwargs):
        state["calls"] += 1
        if state["calls"] <= slow_calls:
            await asyncio.sleep(1)
        content = kwargs["messages"][0]["content"]
        answer = next(
            (text for marker, text in ANALYSES.items() if marker in content),
            "The commentary explains Kant's Groundwork.",
        )
        return MagicMock(content=[MagicMock(text=answer)])

    client = MagicMock()
    client.messages.create = create
    return client, state


@pytest.mark.asyncio
async def test_timed_out_analysis_is_retried_not_failed(user_ctx):
    service = AnthropicTextAnalysisService(model="m", api_key="k", timeout=0.01)
    service._client, state = _slow_then_answering_client(slow_calls=2)
    harness = Harness(analysis=service)

    await harness.engine.ensure_computed(user_ctx, "kant", "commentary")
    await harness.run_queue()

    row = harness.db.only_row()
    assert row["status"] == "ready"
    assert row["relevance_score"] == 77
    assert harness.clock.sleeps == [1.0]
    assert state["calls"] == 4
    assert "failed" not in [update.get("status") for update in harness.db.update_calls]
    assert any(
        update.get("status") == "pending" and "Text analysis unavailable" in update.get("last_error", "")
        for update in harness.db.update_calls
    )


@pytest.mark.asyncio
async def test_list_related_returns_other_document(harness, user_ctx):
    await harness.engine.ensure_computed(user_ctx, "kant", "commentary")
    await harness.engine.ensure_computed(user_ctx, "kant", "cooking")
    await harness.run_queue()

    related = await harness.engine.list_related(user_ctx, "kant")

    assert [item.related_document_id for item in related] == ["commentary", "cooking"]
    assert related[0].relevance_score > related[1].relevance_score


@pytest.mark.asyncio
async def test_link_new_document_respects_limit_and_skips_self():
    harness = Harness(auto_link_limit=2)
    ctx = AuthContext(user_id="user-1")

    records = await harness.engine.link_new_document(
        ctx, "kant", ["kant", "", "commentary", "commentary", "cooking", "other"]
    )

    assert [record.pair.other("kant") for record in records] == ["commentary", "cooking"]
    assert len(harness.db.rows) == 2


@pytest.mark.asyncio
async def test_resume_unfinished_requeues_leftover_work(harness, user_ctx):
    await harness.engine.store.upsert(user_ctx, DocumentPair.of("kant", "commentary"))
    await harness.engine.store.upsert(
        user_ctx, DocumentPair.of("kant", "cooking"), status=RelationshipStatus.COMPUTING
    )

    assert await harness.engine.resume_unfinished() == 2

    await harness.run_queue()

    assert {row["status"] for row in harness.db.rows.values()} == {"ready"}
    assert {row["user_id"] for row in harness.db.rows.values()} == {"user-1"}
