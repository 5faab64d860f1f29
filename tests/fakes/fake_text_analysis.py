"""Scripted text analysis service for chain and engine tests."""

import asyncio
import json

from app.core.relevance_errors import AnalysisFailure


def analysis_json(summary: str, keywords, topics, themes) -> str:
    """Answer shaped like the fingerprinting prompt asks for."""
    return json.dumps(
        {
            "summary": summary,
            "keywords": list(keywords),
            "topics": list(topics),
            "mainThemes": list(themes),
        }
    )


class FakeTextAnalysisService:
    """
    Returns canned answers and records every call.

    Args:
        response: Default answer
        by_context: Marker -> answer; the first marker found in context_text wins
        fail_times: Number of initial calls that raise AnalysisFailure
        delay: Seconds to await before answering
    """

    def __init__(
        self,
        response: str = "",
        by_context: dict[str, str] | None = None,
        fail_times: int = 0,
        delay: float = 0.0,
    ):
        self.response = response
        self.by_context = by_context or {}
        self.fail_times = fail_times
        self.delay = delay
        self.calls: list[tuple[str, str]] = []

    async def analyze_text(self, prompt: str, context_text: str = "") -> str:
        self.calls.append((prompt, context_text))

        if self.delay:
            await asyncio.sleep(self.delay)

        if self.fail_times > 0:
            self.fail_times -= 1
            raise AnalysisFailure("Text analysis call failed: service unavailable")

        for marker, answer in self.by_context.items():
            if marker in context_text:
                return answer
        return self.response
