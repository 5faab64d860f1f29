"""Relevance scoring between two document fingerprints.

Pure heuristic scoring, no LLM cost. Weighted overlap of keywords, topics
and themes plus a coarse word overlap of the two summaries:

    keywords 0.4 | topics 0.3 | themes 0.2 | summary 0.1

Usage:
    from app.core.similarity import score

    relevance = score(source_fingerprint, target_fingerprint)  # 0-100
"""

from __future__ import annotations

import re
from collections.abc import Iterable

from app.core.schemas_relationships import DocumentFingerprint, RelationshipType

KEYWORD_WEIGHT = 0.4
TOPIC_WEIGHT = 0.3
THEME_WEIGHT = 0.2
SUMMARY_WEIGHT = 0.1

# Two under-analyzed documents are treated as moderately related
NEUTRAL_OVERLAP = 0.5

MIN_SUMMARY_WORD_LENGTH = 4

# Score floor -> relationship label, checked top down
RELATIONSHIP_THRESHOLDS: list[tuple[int, RelationshipType]] = [
    (90, RelationshipType.IDENTICAL),
    (80, RelationshipType.EXTENSION),
    (70, RelationshipType.SHARED_TOPIC),
    (40, RelationshipType.TANGENTIAL),
]


def overlap(first: Iterable[str], second: Iterable[str]) -> float:
    """Case-insensitive Jaccard overlap in [0, 1]."""
    set1 = {item.lower() for item in first}
    set2 = {item.lower() for item in second}

    if not set1 and not set2:
        return NEUTRAL_OVERLAP
    if not set1 or not set2:
        return 0.0

    return len(set1 & set2) / len(set1 | set2)


def _summary_words(text: str) -> list[str]:
    return [word for word in re.split(r"\s+", text.lower()) if len(word) >= MIN_SUMMARY_WORD_LENGTH]


def text_similarity(text1: str, text2: str) -> float:
    """Word overlap of two short texts, ignoring words of 3 characters or fewer."""
    return overlap(_summary_words(text1), _summary_words(text2))


def score(a: DocumentFingerprint, b: DocumentFingerprint) -> int:
    """Relevance of two fingerprints as an integer percentage."""
    weighted = (
        overlap(a.keywords, b.keywords) * KEYWORD_WEIGHT
        + overlap(a.topics, b.topics) * TOPIC_WEIGHT
        + overlap(a.main_themes, b.main_themes) * THEME_WEIGHT
        + text_similarity(a.summary, b.summary) * SUMMARY_WEIGHT
    )
    total_weight = KEYWORD_WEIGHT + TOPIC_WEIGHT + THEME_WEIGHT + SUMMARY_WEIGHT

    percentage = round(weighted / total_weight * 100)
    return max(0, min(100, percentage))


def shared_terms(a: DocumentFingerprint, b: DocumentFingerprint, limit: int = 3) -> list[str]:
    """Topics, then keywords, present in both fingerprints (first-seen order)."""
    shared: list[str] = []
    seen: set[str] = set()

    for mine, theirs in ((a.topics, b.topics), (a.keywords, b.keywords)):
        other = {item.lower() for item in theirs}
        for item in mine:
            lowered = item.lower()
            if lowered in other and lowered not in seen:
                seen.add(lowered)
                shared.append(item)

    return shared[:limit]


def classify_relationship(relevance_score: int) -> RelationshipType:
    """Coarse relationship label for a relevance score."""
    for floor, relationship_type in RELATIONSHIP_THRESHOLDS:
        if relevance_score >= floor:
            return relationship_type
    return RelationshipType.UNRELATED
