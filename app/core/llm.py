"""LLM client utilities: text analysis providers and response parsing."""

import asyncio
import json
import re
from typing import Protocol

from anthropic import AsyncAnthropic
from langchain_openai import ChatOpenAI

from app.core.config import Settings, get_settings
from app.core.logging import get_logger
from app.core.relevance_errors import AnalysisFailure

logger = get_logger(__name__)


class TextAnalysisService(Protocol):
    """Hosted LLM boundary. Returns freeform text that should contain JSON."""

    async def analyze_text(self, prompt: str, context_text: str = "") -> str: ...


def get_llm(model: str | None = None, temperature: float = 0.1) -> ChatOpenAI:
    """
    Get configured LLM instance for LangChain chains.

    Args:
        model: Model name override (defaults to config setting)
        temperature: Temperature for generation (default 0.1)

    Returns:
        ChatOpenAI instance configured with API key and model
    """
    settings = get_settings()

    return ChatOpenAI(
        api_key=settings.OPENAI_API_KEY,
        model=model or settings.ANALYSIS_MODEL,
        temperature=temperature,
        timeout=settings.LLM_TIMEOUT_SECONDS,
    )


def _build_messages(prompt: str, context_text: str) -> list[dict[str, str]]:
    content = prompt if not context_text else f"{prompt}\n\n---\n{context_text}"
    return [{"role": "user", "content": content}]


class AnthropicTextAnalysisService:
    """TextAnalysisService backed by the Anthropic Messages API."""

    def __init__(
        self,
        model: str,
        api_key: str,
        timeout: float,
        max_tokens: int = 1200,
        temperature: float = 0.2,
    ):
        self.model = model
        self.timeout = timeout
        self.max_tokens = max_tokens
        self.temperature = temperature
        self._client = AsyncAnthropic(api_key=api_key, timeout=timeout, max_retries=0)

    async def analyze_text(self, prompt: str, context_text: str = "") -> str:
        try:
            response = await asyncio.wait_for(
                self._client.messages.create(
                    model=self.model,
                    max_tokens=self.max_tokens,
                    temperature=self.temperature,
                    messages=_build_messages(prompt, context_text),
                ),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError as e:
            raise AnalysisFailure(f"Text analysis timed out after {self.timeout}s") from e
        except Exception as e:
            raise AnalysisFailure(f"Text analysis call failed: {e}") from e

        return response.content[0].text if response.content else ""


class OpenAITextAnalysisService:
    """TextAnalysisService backed by a LangChain ChatOpenAI model."""

    def __init__(self, model: str, timeout: float, temperature: float = 0.2):
        self.model = model
        self.timeout = timeout
        self._llm = get_llm(model=model, temperature=temperature)

    async def analyze_text(self, prompt: str, context_text: str = "") -> str:
        try:
            response = await asyncio.wait_for(
                self._llm.ainvoke(_build_messages(prompt, context_text)),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError as e:
            raise AnalysisFailure(f"Text analysis timed out after {self.timeout}s") from e
        except Exception as e:
            raise AnalysisFailure(f"Text analysis call failed: {e}") from e

        content = response.content
        return content if isinstance(content, str) else str(content)


def get_text_analysis_service(
    model: str | None = None,
    settings: Settings | None = None,
) -> TextAnalysisService:
    """
    Build the configured text analysis provider.

    Args:
        model: Model override (defaults to ANALYSIS_MODEL)
        settings: Settings override, mainly for tests

    Returns:
        Provider implementing TextAnalysisService
    """
    settings = settings or get_settings()
    model_name = model or settings.ANALYSIS_MODEL
    provider = settings.TEXT_ANALYSIS_PROVIDER.lower()

    if provider == "openai":
        return OpenAITextAnalysisService(model=model_name, timeout=settings.LLM_TIMEOUT_SECONDS)
    if provider != "anthropic":
        logger.warning(f"Unknown TEXT_ANALYSIS_PROVIDER '{provider}', using anthropic")

    return AnthropicTextAnalysisService(
        model=model_name,
        api_key=settings.ANTHROPIC_API_KEY,
        timeout=settings.LLM_TIMEOUT_SECONDS,
    )


def _strip_llm_fences(raw_output: str) -> str:
    """Strip markdown code fences from LLM output.

    Handles: ```json ... ```, ``` ... ```, leading/trailing whitespace.
    """
    cleaned = raw_output.strip()

    fence_match = re.search(r"```(?:json)?\s*\n?(.*?)```", cleaned, re.DOTALL)
    if fence_match:
        return fence_match.group(1).strip()

    return cleaned


def extract_first_json_object(raw_output: str) -> str | None:
    """
    Return the first balanced {...} block in LLM output.

    Braces inside JSON string literals (including escaped quotes) do not
    count toward nesting.

    Args:
        raw_output: Raw string from LLM response

    Returns:
        The JSON object text, or None if no balanced block exists
    """
    text = _strip_llm_fences(raw_output or "")
    start = text.find("{")

    while start != -1:
        depth = 0
        in_string = False
        escaped = False

        for index in range(start, len(text)):
            char = text[index]
            if in_string:
                if escaped:
                    escaped = False
                elif char == "\\":
                    escaped = True
                elif char == '"':
                    in_string = False
                continue

            if char == '"':
                in_string = True
            elif char == "{":
                depth += 1
            elif char == "}":
                depth -= 1
                if depth == 0:
                    return text[start : index + 1]

        # Unbalanced from this brace; try the next opening brace
        start = text.find("{", start + 1)

    return None


def parse_llm_json_dict(raw_output: str) -> dict:
    """
    Parse the first JSON object in LLM output.

    Args:
        raw_output: Raw string from LLM response

    Returns:
        Parsed dict

    Raises:
        json.JSONDecodeError: If no object is found or it does not parse
    """
    block = extract_first_json_object(raw_output)
    if block is None:
        raise json.JSONDecodeError("No JSON object found", raw_output or "", 0)

    parsed = json.loads(block)
    if not isinstance(parsed, dict):
        raise json.JSONDecodeError("Expected a JSON object", block, 0)
    return parsed
