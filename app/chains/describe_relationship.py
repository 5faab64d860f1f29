"""Relationship description chain.

Asks the text analysis provider for a 1-2 sentence explanation of how two
documents relate. Falls back to a template built from shared topics and
keywords whenever the provider fails or answers with a non-answer, so a
relationship always has some description.
"""

from app.core.llm import TextAnalysisService
from app.core.logging import get_logger
from app.core.schemas_relationships import DocumentFingerprint
from app.core.similarity import score as relevance_score
from app.core.similarity import shared_terms

logger = get_logger(__name__)

DEFAULT_EXCERPT_CHARS = 1500
PROMPT_KEYWORD_COUNT = 5
MAX_DESCRIPTION_CHARS = 600

# Phrases a model produces when it thinks it was given no documents
NON_ANSWER_MARKERS = (
    "please upload",
    "would like me to analyze",
    "i don't have access",
    "no documents were provided",
)


DESCRIPTION_PROMPT = """You are an expert at identifying relationships between academic documents. Analyze how two documents relate to each other based on their summaries and content excerpts.

SOURCE DOCUMENT:
- Summary: {source_summary}
- Topics: {source_topics}
- Themes: {source_themes}
- Keywords: {source_keywords}
- Content excerpt: {source_excerpt}

RELATED DOCUMENT:
- Summary: {target_summary}
- Topics: {target_topics}
- Themes: {target_themes}
- Keywords: {target_keywords}
- Content excerpt: {target_excerpt}

COMPUTED SIMILARITY: {score}%

TASK: Write a precise 1-2 sentence description of their relationship.
Consider whether they are complementary, sequential, comparative, applied, foundational or contradictory.
Mention the actual topics or concepts they share and why a reader might want to read both.
Return only the description."""


def _join_terms(terms: list[str]) -> str:
    if len(terms) == 1:
        return terms[0]
    return f"{', '.join(terms[:-1])} and {terms[-1]}"


def fallback_description(
    source: DocumentFingerprint,
    target: DocumentFingerprint,
    score: int | None = None,
) -> str:
    """Template description from the terms both fingerprints share."""
    terms = shared_terms(source, target)
    if terms:
        return f"Both documents discuss {_join_terms(terms)}."

    if score is None:
        score = relevance_score(source, target)
    return (
        f"Documents share {score}% similarity based on content analysis. "
        "Both documents cover related topics and themes."
    )


def _is_non_answer(text: str) -> bool:
    lowered = text.lower()
    return any(marker in lowered for marker in NON_ANSWER_MARKERS)


class RelationshipDescriber:
    """Produces human-readable relationship explanations."""

    def __init__(self, text_service: TextAnalysisService, excerpt_chars: int = DEFAULT_EXCERPT_CHARS):
        self.text_service = text_service
        self.excerpt_chars = excerpt_chars

    def build_prompt(
        self,
        source: DocumentFingerprint,
        source_excerpt: str,
        target: DocumentFingerprint,
        target_excerpt: str,
        score: int,
    ) -> str:
        return DESCRIPTION_PROMPT.format(
            source_summary=source.summary or "Not available",
            source_topics=", ".join(source.topics) or "None",
            source_themes=", ".join(source.main_themes) or "None",
            source_keywords=", ".join(source.keywords[:PROMPT_KEYWORD_COUNT]) or "None",
            source_excerpt=(source_excerpt or "")[: self.excerpt_chars],
            target_summary=target.summary or "Not available",
            target_topics=", ".join(target.topics) or "None",
            target_themes=", ".join(target.main_themes) or "None",
            target_keywords=", ".join(target.keywords[:PROMPT_KEYWORD_COUNT]) or "None",
            target_excerpt=(target_excerpt or "")[: self.excerpt_chars],
            score=score,
        )

    async def describe(
        self,
        source: DocumentFingerprint,
        source_excerpt: str,
        target: DocumentFingerprint,
        target_excerpt: str,
        score: int | None = None,
    ) -> str:
        """
        Describe why two documents are related.

        Args:
            source: Fingerprint of the first document
            source_excerpt: Raw text of the first document
            target: Fingerprint of the second document
            target_excerpt: Raw text of the second document
            score: Precomputed relevance score, if available

        Returns:
            Description text; never raises
        """
        if score is None:
            score = relevance_score(source, target)

        prompt = self.build_prompt(source, source_excerpt, target, target_excerpt, score)

        try:
            response = await self.text_service.analyze_text(prompt)
        except Exception as e:
            logger.warning(
                f"Relationship description failed for {source.document_id} / {target.document_id}: {e}",
                extra={"source_document_id": source.document_id, "target_document_id": target.document_id},
            )
            return fallback_description(source, target, score)

        description = (response or "").strip().strip('"').strip()

        if not description or _is_non_answer(description):
            logger.warning(
                "Relationship description was empty or a non-answer, using template",
                extra={"source_document_id": source.document_id, "target_document_id": target.document_id},
            )
            return fallback_description(source, target, score)

        return description[:MAX_DESCRIPTION_CHARS]
