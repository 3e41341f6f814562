from __future__ import annotations

import json
import os
import re
from enum import Enum
from typing import Any, Dict, Optional, Protocol

import json_repair
from openai import OpenAI

from cardpipeline.utils.logging_config import get_logger

logger = get_logger(__name__)

_FENCE_START = re.compile(r"^```(?:json)?\s*\n?", re.IGNORECASE)
_FENCE_END = re.compile(r"\n?\s*```\s*$")


class ProviderError(RuntimeError):
    """The generation provider could not be reached or rejected the request."""


class TaskType(str, Enum):
    CARD_GENERATION = "card_generation"
    CHAPTER_MAPPING = "chapter_mapping"

    @classmethod
    def from_value(cls, value: Optional[str | "TaskType"]) -> "TaskType":
        if isinstance(value, cls):
            return value
        normalized = (value or cls.CARD_GENERATION.value).lower()
        for member in cls:
            if member.value == normalized:
                return member
        return cls.CARD_GENERATION


class CompletionProvider(Protocol):
    def complete(self, prompt: str, *, max_tokens: int = 2500, temperature: Optional[float] = None, task_type: str | TaskType = TaskType.CARD_GENERATION) -> str:
        ...


class LLMClient:
    """Wraps an OpenAI client and routes each task type to its model.

    Card generation and validation use the cheaper model; chapter-range mapping and
    regeneration of cards that failed validation use the stronger one.
    """

    DEFAULT_TEMPERATURE = {TaskType.CHAPTER_MAPPING: 0.0, TaskType.CARD_GENERATION: 0.1}

    def __init__(self, api_key: Optional[str] = None, card_model: str = "gpt-4.1-mini", mapping_model: str = "gpt-4o", dummy_key: str = "sk-dummy") -> None:
        self.api_key = api_key or os.getenv("OPENAI_API_KEY", dummy_key)
        self.card_model = card_model
        self.mapping_model = mapping_model
        self.dummy_key = dummy_key
        self._client: Optional[OpenAI] = None
        if self.api_key and self.api_key != self.dummy_key:
            self._client = OpenAI(api_key=self.api_key)

    @classmethod
    def from_settings(cls, settings: Dict[str, Any]) -> "LLMClient":
        return cls(api_key=settings.get("openai_api_key") or None, card_model=settings.get("card_model", "gpt-4.1-mini"), mapping_model=settings.get("mapping_model", "gpt-4o"))

    @property
    def is_active(self) -> bool:
        return self._client is not None

    def model_for(self, task_type: str | TaskType) -> str:
        if TaskType.from_value(task_type) is TaskType.CHAPTER_MAPPING:
            return self.mapping_model
        return self.card_model

    def complete(self, prompt: str, *, max_tokens: int = 2500, temperature: Optional[float] = None, task_type: str | TaskType = TaskType.CARD_GENERATION) -> str:
        if not self.is_active:
            raise ProviderError("LLM client is not configured with a valid API key.")

        task = TaskType.from_value(task_type)
        temp = self.DEFAULT_TEMPERATURE[task] if temperature is None else temperature
        try:
            response = self._client.chat.completions.create(
                model=self.model_for(task),
                temperature=temp,
                max_tokens=max_tokens,
                messages=[{"role": "user", "content": prompt}],
            )
        except Exception as exc:
            raise ProviderError(f"OpenAI request failed: {exc}") from exc

        return (response.choices[0].message.content or "").strip()


def complete_json(llm: CompletionProvider, prompt: str, *, max_tokens: int = 2500, temperature: Optional[float] = None, task_type: str | TaskType = TaskType.CARD_GENERATION) -> Any:
    """Run a completion and parse its JSON body; ``None`` when the body is unusable."""
    content = llm.complete(prompt, max_tokens=max_tokens, temperature=temperature, task_type=task_type)
    return parse_model_json(content)


def strip_json_noise(content: str) -> str:
    """Drop code fences and any prose around the outermost JSON value."""
    cleaned = _FENCE_END.sub("", _FENCE_START.sub("", (content or "").strip()))
    starts = [pos for pos in (cleaned.find("{"), cleaned.find("[")) if pos >= 0]
    if not starts:
        return ""
    cleaned = cleaned[min(starts):]
    end = max(cleaned.rfind("}"), cleaned.rfind("]"))
    if end < 0:
        return cleaned
    return cleaned[: end + 1]


def parse_model_json(content: str) -> Any:
    """Parse the JSON body of a model response; ``None`` when nothing usable is left.

    Strict parsing first; otherwise ``json_repair`` fixes stray quotes, trailing
    commas and bodies cut off by the token limit.
    """
    cleaned = strip_json_noise(content)
    if not cleaned:
        logger.warning("No JSON found in model response: %s", (content or "")[:200])
        return None
    try:
        return json.loads(cleaned)
    except json.JSONDecodeError as exc:
        logger.debug("JSON parse error (%s); attempting repair", exc)
    try:
        repaired = json_repair.loads(cleaned)
    except (ValueError, RecursionError):
        repaired = None
    if not isinstance(repaired, (dict, list)) or not repaired:
        logger.warning("Failed to parse JSON content: %s", cleaned[:200])
        return None
    return repaired
