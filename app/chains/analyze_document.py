"""Document fingerprinting chain.

Sends a bounded prefix of a document's extracted text to the text analysis
provider and turns its answer into a DocumentFingerprint. This chain never
raises: unparseable answers fall back to local keyword extraction, and
provider failures produce an explicit failure fingerprint the caller can
retry later.
"""

import json
import re
from collections import Counter

from pydantic import ValidationError

from app.core.llm import TextAnalysisService, parse_llm_json_dict
from app.core.logging import get_logger
from app.core.relevance_errors import AnalysisFailure
from app.core.schemas_relationships import DocumentFingerprint, content_hash

logger = get_logger(__name__)

DEFAULT_MAX_CHARS = 5000
MIN_CONTENT_CHARS = 50
FALLBACK_KEYWORD_COUNT = 10

SHORT_CONTENT_SUMMARY = "Document content too short for analysis"
FALLBACK_SUMMARY = "Document analysis completed"
FAILED_SUMMARY = "Analysis failed"
FALLBACK_TOPICS = ["General"]
FALLBACK_THEMES = ["Academic Content"]

STOPWORDS = frozenset(
    {
        "the", "a", "an", "and", "or", "but", "in", "on", "at", "to", "for", "of", "with", "by",
        "is", "are", "was", "were", "be", "been", "have", "has", "had", "do", "does", "did",
        "will", "would", "could", "should", "may", "might", "can", "this", "that", "these",
        "those", "from", "into", "than", "then", "there", "their", "which", "while", "also",
        "such", "what", "when", "where", "about", "other", "some", "more", "most", "only",
        "each", "both", "between", "through", "because", "however", "therefore", "they",
        "them", "it", "its", "not", "all", "any", "our", "your", "his", "her", "who", "how",
    }
)


ANALYSIS_PROMPT = """You are an expert academic document analyzer. Extract structured information from the research document below.

ANALYSIS REQUIREMENTS:
1. summary: 2-3 concise sentences capturing the main argument, methodology, or purpose
2. keywords: 5-10 specific technical terms, concepts, or key phrases (not generic words)
3. topics: 3-5 specific subject areas or disciplines (e.g. "machine learning", "causal inference")
4. mainThemes: 2-3 overarching themes or research questions

IMPORTANT:
- Focus on academic/technical content
- Be specific, not generic; use terminology from the document
- Output ONLY valid JSON, no additional text

OUTPUT FORMAT (strict JSON):
{
  "summary": "Concise 2-3 sentence summary",
  "keywords": ["term_1", "term_2"],
  "topics": ["topic_1", "topic_2"],
  "mainThemes": ["theme_1", "theme_2"]
}"""


def extract_keywords_fallback(text: str, limit: int = FALLBACK_KEYWORD_COUNT) -> list[str]:
    """
    Deterministic keyword extraction used when the LLM answer is unusable.

    Most frequent words longer than 3 characters, stopwords excluded.
    Ties keep first-occurrence order.

    Args:
        text: Raw document text
        limit: Max keywords

    Returns:
        List of lowercase keywords
    """
    words = re.sub(r"[^\w\s]", " ", (text or "").lower()).split()
    candidates = [w for w in words if len(w) > 3 and w not in STOPWORDS and not w.isdigit()]
    return [word for word, _ in Counter(candidates).most_common(limit)]


def empty_fingerprint(document_id: str, summary: str = "", text: str = "") -> DocumentFingerprint:
    return DocumentFingerprint(
        document_id=str(document_id),
        summary=summary,
        content_hash=content_hash(text),
    )


def failed_fingerprint(document_id: str, text: str = "") -> DocumentFingerprint:
    """Explicit failure marker: empty fields, sentinel summary."""
    return DocumentFingerprint(
        document_id=str(document_id),
        summary=FAILED_SUMMARY,
        content_hash=content_hash(text),
        analysis_failed=True,
    )


def fallback_fingerprint(document_id: str, text: str) -> DocumentFingerprint:
    return DocumentFingerprint(
        document_id=str(document_id),
        summary=FALLBACK_SUMMARY,
        keywords=extract_keywords_fallback(text),
        topics=list(FALLBACK_TOPICS),
        main_themes=list(FALLBACK_THEMES),
        content_hash=content_hash(text),
    )


class DocumentAnalyzer:
    """Produces document fingerprints through a pluggable text analysis service."""

    def __init__(self, text_service: TextAnalysisService, max_chars: int = DEFAULT_MAX_CHARS):
        self.text_service = text_service
        self.max_chars = max_chars

    async def analyze(self, document_id: str, raw_text: str) -> DocumentFingerprint:
        """
        Fingerprint a document.

        Args:
            document_id: Document id
            raw_text: Extracted document text (may be empty)

        Returns:
            DocumentFingerprint; never raises
        """
        raw_text = raw_text or ""

        if len(raw_text.strip()) < MIN_CONTENT_CHARS:
            logger.debug(f"Document {document_id} too short for analysis ({len(raw_text.strip())} chars)")
            return empty_fingerprint(document_id, SHORT_CONTENT_SUMMARY, raw_text)

        excerpt = raw_text[: self.max_chars]

        try:
            response = await self.text_service.analyze_text(ANALYSIS_PROMPT, excerpt)
        except AnalysisFailure as e:
            logger.warning(
                f"Text analysis unavailable for document {document_id}: {e}",
                extra={"document_id": str(document_id)},
            )
            return failed_fingerprint(document_id, raw_text)
        except Exception as e:
            logger.error(
                f"Unexpected text analysis error for document {document_id}: {e}",
                extra={"document_id": str(document_id)},
            )
            return failed_fingerprint(document_id, raw_text)

        try:
            data = parse_llm_json_dict(response)
            fingerprint = DocumentFingerprint(
                document_id=str(document_id),
                summary=data.get("summary") or "",
                keywords=data.get("keywords"),
                topics=data.get("topics"),
                main_themes=data.get("mainThemes", data.get("main_themes")),
                content_hash=content_hash(raw_text),
            )
        except (json.JSONDecodeError, ValidationError, TypeError) as e:
            logger.warning(
                f"Unparseable analysis for document {document_id}, using fallback extraction: {e}",
                extra={"document_id": str(document_id), "response_preview": (response or "")[:200]},
            )
            return fallback_fingerprint(document_id, raw_text)

        if not fingerprint.summary:
            fingerprint.summary = "Unable to generate summary"

        logger.info(
            f"Analyzed document {document_id}",
            extra={
                "document_id": str(document_id),
                "keywords": len(fingerprint.keywords),
                "topics": len(fingerprint.topics),
            },
        )
        return fingerprint
