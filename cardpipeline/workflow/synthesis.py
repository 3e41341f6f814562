"""
Tiered card synthesis.

Tier 1 turns windows of chunks into flashcards. Every later tier only reads the output
of the tiers before it: applications and quizzes are built from a chapter's
flashcards, chapter summaries from the same flashcards, and the book overview from the
chapters' opening text.
"""

from __future__ import annotations

import time
from collections import OrderedDict
from typing import Any, Callable, Dict, List, Optional, Sequence

from pydantic import ValidationError

from cardpipeline.utils.batching import run_in_batches
from cardpipeline.utils.cards import Card, CardType, build_card, chapter_scoped_title, replace_card
from cardpipeline.utils.logging_config import get_logger
from cardpipeline.utils.types import Chapter, Chunk
from cardpipeline.workflow.cache import PipelineCache
from cardpipeline.workflow.llm import CompletionProvider, TaskType, complete_json
from cardpipeline.workflow.prompts import application_prompt, book_overview_prompt, chapter_summary_prompt, flashcard_prompt, quiz_prompt
from cardpipeline.workflow.quiz import AnswerPositionBalancer, answer_index, strip_choice_label
from cardpipeline.workflow.semantic_index import SemanticIndex
from cardpipeline.workflow.utils.settings import merged_settings

logger = get_logger(__name__)

TIER_FLASHCARDS = "tier1-flashcards"
TIER_APPLICATIONS = "tier2-applications"
TIER_QUIZZES = "tier3-quizzes"
TIER_SUMMARIES = "tier4-summaries"
ALL_RAW_CARDS = "all-raw-cards"

BOOK_OVERVIEW_CONTEXT = "Book Overview"


def _first_object(response: Any) -> Optional[Dict[str, Any]]:
    if isinstance(response, list):
        response = next((item for item in response if isinstance(item, dict)), None)
    return response if isinstance(response, dict) else None


def _tags(response: Dict[str, Any], defaults: Sequence[str]) -> List[str]:
    tags = response.get("tags")
    if isinstance(tags, list) and tags:
        return [str(tag) for tag in tags]
    return list(defaults)


def _title(response: Dict[str, Any], fallback: str) -> str:
    title = " ".join(str(response.get("title") or "").split()) or " ".join(fallback.split())
    return title[:200]


def _union(groups: Sequence[Sequence[str]]) -> List[str]:
    return list(dict.fromkeys(item for group in groups for item in group))


class CardSynthesizer:
    """Runs the generation tiers for one pipeline run."""

    def __init__(
        self,
        llm: CompletionProvider,
        index: SemanticIndex,
        settings: Optional[Dict[str, Any]] = None,
        *,
        book_title: str = "",
        author: str = "",
        cache: Optional[PipelineCache] = None,
        content_id: Optional[str] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.llm = llm
        self.index = index
        self.settings = merged_settings(settings)
        self.book_title = book_title or "Untitled"
        self.author = author or "Unknown author"
        self.category = str(self.settings.get("category") or "general")
        self.cache = cache
        self.content_id = content_id
        self.sleep = sleep
        self.balancer = AnswerPositionBalancer()

    # helpers ----------------------------------------------------------------

    def _map(self, items: Sequence[Any], fn: Callable[[Any], Optional[Card]], label: str) -> List[Optional[Card]]:
        return run_in_batches(
            items,
            fn,
            batch_size=int(self.settings["generation_concurrency"]),
            delay_seconds=float(self.settings["batch_delay_seconds"]),
            label=label,
            sleep=self.sleep,
        )

    def _ask(self, prompt: str, max_tokens: int) -> Optional[Dict[str, Any]]:
        return _first_object(complete_json(self.llm, prompt, max_tokens=max_tokens, task_type=TaskType.CARD_GENERATION))

    def _build(self, payload: Dict[str, Any], label: str) -> Optional[Card]:
        try:
            return build_card(payload)
        except ValidationError as exc:
            logger.warning("%s rejected by schema | title=%s errors=%s", label, payload.get("title"), exc.error_count())
            return None

    @staticmethod
    def _number(cards: Sequence[Optional[Card]], prefix: str) -> List[Card]:
        kept = [card for card in cards if card is not None]
        return [replace_card(card, card_id=f"{prefix}_{idx}") for idx, card in enumerate(kept)]

    def _cache_tier(self, name: str, cards: Sequence[Card]) -> None:
        if self.settings.get("debug_tier_cache") and self.cache is not None and self.content_id:
            self.cache.set_tier(self.content_id, name, cards)

    # tier 1 -----------------------------------------------------------------

    def flashcard_windows(self, chunks: Sequence[Chunk]) -> List[List[Chunk]]:
        size = max(1, int(self.settings["chunks_per_flashcard"]))
        per_chapter = int(self.settings["max_flashcards_per_chapter"])
        by_chapter: "OrderedDict[int, List[Chunk]]" = OrderedDict()
        for chunk in chunks:
            by_chapter.setdefault(chunk.chapter_index, []).append(chunk)
        windows: List[List[Chunk]] = []
        for chapter_chunks in by_chapter.values():
            chapter_windows = [chapter_chunks[i : i + size] for i in range(0, len(chapter_chunks), size)]
            windows.extend(chapter_windows[:per_chapter])
        return windows

    def _flashcard(self, window: Sequence[Chunk]) -> Optional[Card]:
        combined = " ".join(chunk.text for chunk in window)
        related = self.index.query(combined[:1000], k=int(self.settings["related_top_k"]), exclude_ids=[chunk.id for chunk in window])
        response = self._ask(flashcard_prompt(window, related, book_title=self.book_title, author=self.author, category=self.category), 1000)
        if response is None:
            return None
        return self._build(
            {
                "type": CardType.FLASHCARD.value,
                "card_id": "pending",
                "title": _title(response, str(response.get("front") or "")[:60]),
                "front": response.get("front"),
                "back": response.get("back"),
                "difficulty": response.get("difficulty"),
                "tags": _tags(response, [self.category, "concept"]),
                "chapter_context": window[0].chapter_title,
                "source_chunks": [chunk.id for chunk in window],
            },
            "Flashcard",
        )

    def generate_flashcards(self, chunks: Sequence[Chunk]) -> List[Card]:
        windows = self.flashcard_windows(chunks)
        cards = self._number(self._map(windows, self._flashcard, "flashcards"), "flashcard")
        logger.info("Tier 1      | windows=%s flashcards=%s", len(windows), len(cards))
        return cards

    # grouping ---------------------------------------------------------------

    @staticmethod
    def group_by_chapter(flashcards: Sequence[Card], chunks: Sequence[Chunk], chapters: Sequence[Chapter]) -> "OrderedDict[int, List[Card]]":
        """Flashcards keyed by chapter index, in chapter order."""
        chapter_of_chunk = {chunk.id: chunk.chapter_index for chunk in chunks}
        grouped: "OrderedDict[int, List[Card]]" = OrderedDict((idx, []) for idx in range(len(chapters)))
        for card in flashcards:
            chapter_index = chapter_of_chunk.get(card.source_chunks[0]) if card.source_chunks else None
            if chapter_index is None:
                continue
            grouped.setdefault(chapter_index, []).append(card)
        return OrderedDict((idx, cards) for idx, cards in grouped.items() if cards)

    # tier 2 -----------------------------------------------------------------

    def _application(self, group: Sequence[Card]) -> Optional[Card]:
        query = " ".join(str(getattr(card, "back", "")) for card in group)
        exclude = _union([card.source_chunks for card in group])
        related = self.index.query(query[:1000], k=int(self.settings["related_top_k"]), exclude_ids=exclude)
        response = self._ask(application_prompt(group, related, book_title=self.book_title, author=self.author, category=self.category), 2000)
        if response is None:
            return None
        return self._build(
            {
                "type": CardType.APPLICATION.value,
                "card_id": "pending",
                "title": _title(response, f"Applying {group[0].title}"),
                "scenario": response.get("scenario"),
                "question": response.get("question"),
                "solution": response.get("solution"),
                "difficulty": response.get("difficulty"),
                "tags": _tags(response, [self.category, "application"]),
                "chapter_context": group[0].chapter_context,
                "source_chunks": exclude,
                "source_cards": [card.card_id for card in group],
            },
            "Application",
        )

    def generate_applications(self, by_chapter: "OrderedDict[int, List[Card]]") -> List[Card]:
        size = max(1, int(self.settings["flashcards_per_application"]))
        max_groups = int(self.settings["max_application_groups_per_chapter"])
        groups: List[List[Card]] = []
        for flashcards in by_chapter.values():
            if len(flashcards) < 2:
                continue
            chapter_groups = [flashcards[i : i + size] for i in range(0, len(flashcards), size)]
            groups.extend(chapter_groups[:max_groups])
        cards = self._number(self._map(groups, self._application, "applications"), "application")
        logger.info("Tier 2      | groups=%s applications=%s", len(groups), len(cards))
        return cards

    # tier 3 -----------------------------------------------------------------

    def _quiz_draft(self, chapter: Dict[str, Any]) -> Optional[Card]:
        flashcards: List[Card] = chapter["flashcards"]
        applications: List[Card] = chapter["applications"]
        source_chunks = _union([card.source_chunks for card in flashcards])
        query = " ".join(f"{card.title} {getattr(card, 'back', '')}" for card in flashcards)
        distractors = self.index.query(query[:1000], k=int(self.settings["distractor_top_k"]), exclude_ids=source_chunks)
        response = self._ask(quiz_prompt(flashcards, applications, distractors, book_title=self.book_title, author=self.author, category=self.category), 1000)
        if response is None:
            return None
        raw_choices = response.get("options", response.get("choices"))
        if not isinstance(raw_choices, list):
            logger.warning("Quiz without choices skipped | chapter=%s", chapter["title"])
            return None
        choices = [strip_choice_label(choice) for choice in raw_choices]
        correct = answer_index(response.get("correct_answer", response.get("correctAnswer")), len(choices))
        if correct is None:
            logger.warning("Quiz answer unusable; skipped | chapter=%s answer=%s", chapter["title"], response.get("correct_answer"))
            return None
        return self._build(
            {
                "type": CardType.QUIZ.value,
                "card_id": "pending",
                "title": chapter_scoped_title(_title(response, "Quiz"), chapter["title"]),
                "question": response.get("question"),
                "choices": choices,
                "correct_answer_index": correct,
                "explanation": str(response.get("explanation") or ""),
                "difficulty": response.get("difficulty"),
                "tags": _tags(response, [self.category, "quiz"]),
                "chapter_context": chapter["title"],
                "source_chunks": source_chunks,
                "source_cards": [card.card_id for card in flashcards] + [card.card_id for card in applications],
            },
            "Quiz",
        )

    def generate_quizzes(self, by_chapter: "OrderedDict[int, List[Card]]", applications: Sequence[Card], chapters: Sequence[Chapter]) -> List[Card]:
        drafts_input = []
        for chapter_index, flashcards in by_chapter.items():
            ids = {card.card_id for card in flashcards}
            chapter_apps = [app for app in applications if ids.intersection(app.source_cards)]
            title = chapters[chapter_index].title if chapter_index < len(chapters) else flashcards[0].chapter_context
            drafts_input.append({"title": title, "flashcards": flashcards, "applications": chapter_apps})

        drafts = self._map(drafts_input, self._quiz_draft, "quizzes")
        balanced: List[Card] = []
        # positions are assigned in chapter order after all drafts return
        for draft in drafts:
            if draft is None:
                continue
            choices, index = self.balancer.place(draft.choices, draft.correct_answer_index)
            balanced.append(replace_card(draft, choices=choices, correct_answer_index=index))
        cards = self._number(balanced, "quiz")
        logger.info("Tier 3      | chapters=%s quizzes=%s positions=%s", len(drafts_input), len(cards), dict(sorted(self.balancer.counts.items())))
        return cards

    # tier 4 -----------------------------------------------------------------

    def _chapter_summary(self, chapter: Dict[str, Any]) -> Optional[Card]:
        flashcards: List[Card] = chapter["flashcards"]
        title = chapter["title"]
        response = self._ask(chapter_summary_prompt(title, flashcards, book_title=self.book_title, category=self.category), 1500)
        if response is None:
            return None
        return self._build(
            {
                "type": CardType.SUMMARY.value,
                "card_id": "pending",
                "title": chapter_scoped_title(_title(response, "Chapter Summary"), title),
                "front": str(response.get("front") or f"What are the key insights from {title}?"),
                "narrative": response.get("narrative") or response.get("back") or response.get("content"),
                "scope": "chapter",
                "difficulty": response.get("difficulty"),
                "tags": _tags(response, ["summary", self.category]),
                "chapter_context": title,
                "source_chunks": _union([card.source_chunks for card in flashcards]),
                "source_cards": [card.card_id for card in flashcards],
            },
            "Summary",
        )

    def generate_summaries(self, by_chapter: "OrderedDict[int, List[Card]]", chapters: Sequence[Chapter]) -> List[Card]:
        items = [
            {"title": chapters[idx].title if idx < len(chapters) else flashcards[0].chapter_context, "flashcards": flashcards}
            for idx, flashcards in by_chapter.items()
        ]
        cards = self._number(self._map(items, self._chapter_summary, "summaries"), "summary")
        logger.info("Tier 4      | chapters=%s summaries=%s", len(items), len(cards))
        return cards

    def generate_overview(self, chapters: Sequence[Chapter], chunks: Sequence[Chunk]) -> List[Card]:
        if not chapters or not chunks:
            return []
        response = self._ask(book_overview_prompt(chapters, book_title=self.book_title, author=self.author, category=self.category), 1500)
        if response is None:
            return []
        card = self._build(
            {
                "type": CardType.SUMMARY.value,
                "card_id": "overview_0",
                "title": _title(response, f"Overview: {self.book_title}"),
                "front": str(response.get("front") or "Complete Book Overview"),
                "narrative": response.get("narrative") or response.get("back") or response.get("content"),
                "scope": "book",
                "difficulty": response.get("difficulty"),
                "tags": _tags(response, ["overview", self.category]),
                "chapter_context": BOOK_OVERVIEW_CONTEXT,
                "source_chunks": [chunk.id for chunk in chunks[: int(self.settings["overview_source_chunks"])]],
            },
            "Overview",
        )
        return [card] if card is not None else []

    # entry point ------------------------------------------------------------

    def synthesize(self, chunks: Sequence[Chunk], chapters: Sequence[Chapter]) -> List[Card]:
        flashcards = self.generate_flashcards(chunks)
        self._cache_tier(TIER_FLASHCARDS, flashcards)

        by_chapter = self.group_by_chapter(flashcards, chunks, chapters)

        applications: List[Card] = []
        if self.settings.get("enable_applications"):
            applications = self.generate_applications(by_chapter)
            self._cache_tier(TIER_APPLICATIONS, applications)

        quizzes = self.generate_quizzes(by_chapter, applications, chapters)
        self._cache_tier(TIER_QUIZZES, quizzes)

        summaries = self.generate_summaries(by_chapter, chapters)
        summaries.extend(self.generate_overview(chapters, chunks))
        self._cache_tier(TIER_SUMMARIES, summaries)

        cards = [*flashcards, *applications, *quizzes, *summaries]
        self._cache_tier(ALL_RAW_CARDS, cards)
        logger.info(
            "Synthesized | flashcards=%s applications=%s quizzes=%s summaries=%s",
            len(flashcards),
            len(applications),
            len(quizzes),
            len(summaries),
        )
        return cards
