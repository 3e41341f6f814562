from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Sequence

from pydantic import ValidationError

from cardpipeline.utils.batching import run_in_batches
from cardpipeline.utils.cards import Card, CardType, card_content, chapter_scoped_title, remove_duplicates, replace_card
from cardpipeline.utils.logging_config import get_logger
from cardpipeline.utils.types import Chunk
from cardpipeline.workflow.llm import CompletionProvider, TaskType, complete_json
from cardpipeline.workflow.prompts import regeneration_prompt, validation_prompt
from cardpipeline.workflow.quiz import answer_index, move_answer, strip_choice_label
from cardpipeline.workflow.utils.settings import merged_settings

logger = get_logger(__name__)

_REQUIRED_FIELDS = {
    CardType.FLASHCARD.value: ("front", "back"),
    CardType.APPLICATION.value: ("scenario", "question", "solution"),
    CardType.QUIZ.value: ("question",),
    CardType.SUMMARY.value: ("narrative",),
}


@dataclass(frozen=True)
class ValidationVerdict:
    is_valid: bool
    reason: str
    score: int

    @classmethod
    def from_response(cls, response: Any) -> "ValidationVerdict":
        """Unparsable judgements count as valid."""
        if isinstance(response, dict):
            flag = response.get("is_valid", response.get("isValid"))
            if isinstance(flag, bool):
                try:
                    score = int(response.get("score") or 5)
                except (TypeError, ValueError):
                    score = 5
                return cls(is_valid=flag, reason=str(response.get("reason") or "No reason provided"), score=score)
        return cls(is_valid=True, reason="Validation parsing failed", score=5)


class CardValidator:
    """Quality gate: cheap-model judgement, strong-model regeneration, then dedup."""

    def __init__(self, llm: CompletionProvider, settings: Optional[Dict[str, Any]] = None, *, sleep: Callable[[float], None] = time.sleep) -> None:
        self.llm = llm
        self.settings = merged_settings(settings)
        self.sleep = sleep

    @staticmethod
    def source_context(card: Card, chunk_lookup: Dict[str, Chunk], card_lookup: Dict[str, Card]) -> str:
        texts = [chunk_lookup[chunk_id].text[:300] for chunk_id in card.source_chunks if chunk_id in chunk_lookup]
        if not texts:
            texts = [card_content(card_lookup[card_id])[:300] for card_id in card.source_cards if card_id in card_lookup]
        if not texts:
            return card_content(card)[:500]
        return "\n\n".join(texts)

    def validate(self, card: Card, context: str) -> ValidationVerdict:
        response = complete_json(self.llm, validation_prompt(card, context), max_tokens=500, temperature=0.1, task_type=TaskType.CARD_GENERATION)
        return ValidationVerdict.from_response(response)

    @staticmethod
    def _payload_updates(card: Card, response: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        missing = [name for name in _REQUIRED_FIELDS[card.type] if not str(response.get(name) or "").strip()]
        if missing:
            return None
        updates: Dict[str, Any] = {name: response[name] for name in _REQUIRED_FIELDS[card.type]}
        if card.type == CardType.QUIZ.value:
            raw_choices = response.get("options", response.get("choices"))
            if not isinstance(raw_choices, list):
                return None
            choices = [strip_choice_label(choice) for choice in raw_choices]
            correct = answer_index(response.get("correct_answer", response.get("correctAnswer")), len(choices))
            if correct is None:
                return None
            # keep the balanced answer position of the original quiz
            target = min(card.correct_answer_index, len(choices) - 1)
            updates["choices"], updates["correct_answer_index"] = move_answer(choices, correct, target)
            updates["explanation"] = str(response.get("explanation") or "")
        if card.type == CardType.SUMMARY.value and response.get("front"):
            updates["front"] = response["front"]
        if str(response.get("title") or "").strip():
            title = " ".join(str(response["title"]).split())[:200]
            if card.type == CardType.QUIZ.value or getattr(card, "scope", None) == "chapter":
                title = chapter_scoped_title(title, card.chapter_context)
            updates["title"] = title
        if response.get("difficulty"):
            updates["difficulty"] = response["difficulty"]
        if isinstance(response.get("tags"), list) and response["tags"]:
            updates["tags"] = response["tags"]
        return updates

    def regenerate(self, card: Card, reason: str, context: str) -> Optional[Card]:
        response = complete_json(self.llm, regeneration_prompt(card, reason, context), max_tokens=1500, temperature=0.1, task_type=TaskType.CHAPTER_MAPPING)
        if not isinstance(response, dict):
            return None
        updates = self._payload_updates(card, response)
        if updates is None:
            return None
        try:
            return replace_card(card, enhanced=True, enhancement_reason=reason, **updates)
        except ValidationError as exc:
            logger.warning("Regenerated card rejected by schema | card=%s errors=%s", card.card_id, exc.error_count())
            return None

    def review(self, card: Card, context: str) -> Card:
        verdict = self.validate(card, context)
        if verdict.is_valid:
            return card
        logger.info("Card failed validation | card=%s score=%s reason=%s", card.card_id, verdict.score, verdict.reason)
        replacement = self.regenerate(card, verdict.reason, context)
        if replacement is None:
            logger.warning("Regeneration failed; keeping original | card=%s", card.card_id)
            return card
        return replacement

    def finalize(self, cards: Sequence[Card], chunks: Sequence[Chunk]) -> List[Card]:
        reviewed: List[Card] = list(cards)
        if self.settings.get("validate_cards"):
            chunk_lookup = {chunk.id: chunk for chunk in chunks}
            card_lookup = {card.card_id: card for card in cards}
            results = run_in_batches(
                list(cards),
                lambda card: self.review(card, self.source_context(card, chunk_lookup, card_lookup)),
                batch_size=int(self.settings["generation_concurrency"]),
                delay_seconds=float(self.settings["batch_delay_seconds"]),
                label="validation",
                sleep=self.sleep,
            )
            reviewed = [result if result is not None else original for result, original in zip(results, cards)]

        unique = remove_duplicates(reviewed)
        logger.info(
            "Validated   | cards=%s enhanced=%s duplicates=%s",
            len(unique),
            sum(1 for card in unique if card.enhanced),
            len(reviewed) - len(unique),
        )
        return unique
