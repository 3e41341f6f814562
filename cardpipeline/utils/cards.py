"""
Learning card variants.

Cards are a closed tagged union discriminated on ``type``. Every variant shares the
same envelope (identity, provenance and display metadata) and carries its own payload,
which is validated when the card is constructed. Cards are frozen; the validation
layer produces replacements through :func:`replace_card` instead of mutating.
"""

from __future__ import annotations

import re
from enum import Enum
from typing import Annotated, Any, Dict, Iterable, List, Literal, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator, model_validator

DIFFICULTIES = ("EASY", "MEDIUM", "HARD")
_TITLE_KEY_PATTERN = re.compile(r"[^a-z0-9]")


class CardType(str, Enum):
    FLASHCARD = "FLASHCARD"
    APPLICATION = "APPLICATION"
    QUIZ = "QUIZ"
    SUMMARY = "SUMMARY"


class CardEnvelope(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")

    card_id: str
    title: str = Field(..., min_length=1, max_length=200)
    difficulty: str = "MEDIUM"
    tags: List[str] = Field(default_factory=list)
    chapter_context: Optional[str] = None
    source_chunks: List[str] = Field(default_factory=list)
    source_cards: List[str] = Field(default_factory=list)
    enhanced: bool = False
    enhancement_reason: Optional[str] = None

    @field_validator("title", mode="before")
    @classmethod
    def _strip_title(cls, value: Any) -> Any:
        return value.strip() if isinstance(value, str) else value

    @field_validator("difficulty", mode="before")
    @classmethod
    def _normalize_difficulty(cls, value: Any) -> str:
        normalized = str(value or "").strip().upper()
        return normalized if normalized in DIFFICULTIES else "MEDIUM"

    @field_validator("tags", mode="before")
    @classmethod
    def _normalize_tags(cls, value: Any) -> List[str]:
        if value is None:
            return []
        if isinstance(value, str):
            value = [value]
        tags = [str(tag).strip() for tag in value if str(tag).strip()]
        return list(dict.fromkeys(tags))


def _require_text(value: Any) -> str:
    text = str(value or "").strip()
    if not text:
        raise ValueError("must be a non-empty string")
    return text


class FlashcardCard(CardEnvelope):
    type: Literal["FLASHCARD"] = "FLASHCARD"
    front: str
    back: str

    @field_validator("front", "back", mode="before")
    @classmethod
    def _require_payload(cls, value: Any) -> str:
        return _require_text(value)


class ApplicationCard(CardEnvelope):
    type: Literal["APPLICATION"] = "APPLICATION"
    scenario: str
    question: str
    solution: str

    @field_validator("scenario", "question", "solution", mode="before")
    @classmethod
    def _require_payload(cls, value: Any) -> str:
        return _require_text(value)


class QuizCard(CardEnvelope):
    type: Literal["QUIZ"] = "QUIZ"
    question: str
    choices: List[str] = Field(..., min_length=2, max_length=6)
    correct_answer_index: int
    explanation: str = ""

    @field_validator("question", mode="before")
    @classmethod
    def _require_question(cls, value: Any) -> str:
        return _require_text(value)

    @field_validator("choices", mode="before")
    @classmethod
    def _clean_choices(cls, value: Any) -> Any:
        if not isinstance(value, (list, tuple)):
            return value
        return [_require_text(choice) for choice in value]

    @model_validator(mode="after")
    def _check_answer_index(self) -> "QuizCard":
        if not 0 <= self.correct_answer_index < len(self.choices):
            raise ValueError(f"correct_answer_index {self.correct_answer_index} out of range for {len(self.choices)} choices")
        return self


class SummaryCard(CardEnvelope):
    type: Literal["SUMMARY"] = "SUMMARY"
    front: str = ""
    narrative: str
    scope: Literal["chapter", "book"] = "chapter"

    @field_validator("narrative", mode="before")
    @classmethod
    def _require_narrative(cls, value: Any) -> str:
        return _require_text(value)


Card = Annotated[Union[FlashcardCard, ApplicationCard, QuizCard, SummaryCard], Field(discriminator="type")]

_CARD_ADAPTER: TypeAdapter = TypeAdapter(Card)
_CARD_LIST_ADAPTER: TypeAdapter = TypeAdapter(List[Card])


def build_card(data: Dict[str, Any]) -> Card:
    """Validate a raw mapping into the matching card variant; raises ``ValidationError``."""
    return _CARD_ADAPTER.validate_python(data)


def replace_card(card: Card, **updates: Any) -> Card:
    """Return a validated copy of ``card`` with ``updates`` applied."""
    payload = card.model_dump()
    payload.update(updates)
    return build_card(payload)


def dump_cards(cards: Iterable[Card]) -> List[Dict[str, Any]]:
    return [card.model_dump(mode="json") for card in cards]


def load_cards(items: Iterable[Dict[str, Any]]) -> List[Card]:
    return _CARD_LIST_ADAPTER.validate_python(list(items))


def dedup_key(card: Card) -> Tuple[str, str]:
    return card.type, _TITLE_KEY_PATTERN.sub("", card.title.lower())


def remove_duplicates(cards: Iterable[Card]) -> List[Card]:
    """Keep the first card for every (type, normalized title) pair."""
    unique: List[Card] = []
    seen: set[Tuple[str, str]] = set()
    for card in cards:
        key = dedup_key(card)
        if key in seen:
            continue
        seen.add(key)
        unique.append(card)
    return unique


def card_content(card: Card) -> str:
    """Flatten the variant payload into plain text for prompts."""
    if isinstance(card, FlashcardCard):
        return f"Q: {card.front}\nA: {card.back}"
    if isinstance(card, ApplicationCard):
        return f"Scenario: {card.scenario}\nQuestion: {card.question}\nSolution: {card.solution}"
    if isinstance(card, QuizCard):
        lettered = "\n".join(f"{chr(65 + idx)}) {choice}" for idx, choice in enumerate(card.choices))
        return f"Question: {card.question}\n{lettered}\nCorrect: {chr(65 + card.correct_answer_index)}\nExplanation: {card.explanation}"
    return f"{card.front}\n{card.narrative}".strip()


def chapter_scoped_title(title: str, chapter_title: Optional[str]) -> str:
    """Prefix ``chapter_title`` unless the title already names the chapter.

    Quiz and summary titles are unique per chapter, so dedup never merges two chapters' cards.
    """
    title = " ".join(str(title or "").split())
    chapter_title = " ".join(str(chapter_title or "").split())
    if chapter_title and chapter_title.casefold() not in title.casefold():
        title = f"{chapter_title}: {title}" if title else chapter_title
    return title[:200]
