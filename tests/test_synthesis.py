import json
import pathlib
import sys
from collections import Counter

import pytest

REPO_ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(REPO_ROOT) not in sys.path:
    sys.path.append(str(REPO_ROOT))

from conftest import TOPICS, FakeEmbedder, FakeLLM, make_chapter, make_chunk, paragraph
from cardpipeline.utils.cards import QuizCard, SummaryCard
from cardpipeline.workflow.llm import ProviderError, parse_model_json
from cardpipeline.workflow.semantic_index import SemanticIndex
from cardpipeline.workflow.synthesis import BOOK_OVERVIEW_CONTEXT, TIER_FLASHCARDS, TIER_QUIZZES, CardSynthesizer
from cardpipeline.workflow.validation import CardValidator


def _corpus(chapter_count, chunks_per_chapter=1):
    chapters, chunks = [], []
    for ch in range(chapter_count):
        topic = TOPICS[ch % len(TOPICS)]
        title = f"Chapter {ch + 1}: {topic}"
        texts = [paragraph(topic, ch + 1, idx) for idx in range(chunks_per_chapter)]
        for text in texts:
            chunks.append(make_chunk(len(chunks), ch, title, text=text))
        chapters.append(make_chapter(title, "\n\n".join(texts)))
    return chapters, chunks


def _synthesizer(llm, chunks, settings, **kwargs):
    index = SemanticIndex(FakeEmbedder()).build(chunks)
    return CardSynthesizer(llm, index, settings, book_title="The Learning Book", author="Ada Example", sleep=lambda _: None, **kwargs)


def _by_type(cards, card_type):
    return [card for card in cards if card.type == card_type]


def test_quiz_answers_are_spread_across_positions(settings):
    chapters, chunks = _corpus(24)
    cards = _synthesizer(FakeLLM(quiz_answer="B"), chunks, settings).synthesize(chunks, chapters)

    quizzes = _by_type(cards, "QUIZ")
    assert len(quizzes) == 24
    positions = Counter(quiz.correct_answer_index for quiz in quizzes)
    assert max(positions.values()) / len(quizzes) <= 0.6
    assert set(positions) == {0, 1, 2, 3}
    for quiz in quizzes:
        assert isinstance(quiz, QuizCard)
        assert quiz.choices[quiz.correct_answer_index] == "Correct answer"
        assert not any(choice.startswith(("A)", "B)", "C)", "D)")) for choice in quiz.choices)
    assert [quiz.card_id for quiz in quizzes] == [f"quiz_{idx}" for idx in range(24)]


def test_tiers_reference_earlier_cards(settings):
    chapters, chunks = _corpus(3, chunks_per_chapter=8)
    cards = _synthesizer(FakeLLM(), chunks, settings).synthesize(chunks, chapters)

    flashcards = _by_type(cards, "FLASHCARD")
    assert [card.card_id for card in flashcards] == ["flashcard_0", "flashcard_1", "flashcard_2", "flashcard_3", "flashcard_4", "flashcard_5"]
    assert flashcards[0].source_chunks == ["chunk_0", "chunk_1", "chunk_2", "chunk_3"]
    assert flashcards[0].chapter_context == chapters[0].title

    summaries = [card for card in _by_type(cards, "SUMMARY") if card.scope == "chapter"]
    assert len(summaries) == 3
    first_summary = summaries[0]
    assert first_summary.source_cards == ["flashcard_0", "flashcard_1"]
    assert first_summary.source_chunks == [f"chunk_{idx}" for idx in range(8)]
    assert first_summary.chapter_context == chapters[0].title

    quiz = _by_type(cards, "QUIZ")[1]
    assert quiz.source_cards == ["flashcard_2", "flashcard_3"]
    assert quiz.chapter_context == chapters[1].title


def test_book_overview_card(settings):
    chapters, chunks = _corpus(4, chunks_per_chapter=2)
    cards = _synthesizer(FakeLLM(), chunks, settings).synthesize(chunks, chapters)

    overview = [card for card in _by_type(cards, "SUMMARY") if card.scope == "book"]
    assert len(overview) == 1
    assert isinstance(overview[0], SummaryCard)
    assert overview[0].card_id == "overview_0"
    assert overview[0].chapter_context == BOOK_OVERVIEW_CONTEXT
    assert overview[0].source_chunks == [f"chunk_{idx}" for idx in range(5)]


def test_related_context_never_includes_the_window(settings):
    chapters, chunks = _corpus(2, chunks_per_chapter=4)
    llm = FakeLLM()
    _synthesizer(llm, chunks, settings).generate_flashcards(chunks)
    text_of = {chunk.id: chunk.text for chunk in chunks}

    calls = llm.prompts_with("Create 1 comprehensive flashcard")
    assert len(calls) == 2
    for call in calls:
        prompt = call["prompt"]
        own = prompt.split("Source chunk ids: ")[1].split("\n")[0].split(", ")
        related_block = prompt.split("Related context from other parts of the book:")[1].split("Source chunk ids:")[0]
        assert related_block.count('. From "') == 3
        assert not any(text_of[chunk_id] in related_block for chunk_id in own)


def test_flashcard_ceiling_per_chapter(settings):
    chapters, chunks = _corpus(2, chunks_per_chapter=5)
    limited = {**settings, "chunks_per_flashcard": 1, "max_flashcards_per_chapter": 2}

    flashcards = _synthesizer(FakeLLM(), chunks, limited).generate_flashcards(chunks)

    assert [card.source_chunks for card in flashcards] == [["chunk_0"], ["chunk_1"], ["chunk_5"], ["chunk_6"]]


def test_applications_group_flashcards_within_chapters(settings):
    chapters, chunks = _corpus(2, chunks_per_chapter=7)
    chunks.append(make_chunk(len(chunks), 2, "Chapter 3: Lonely", text=paragraph("Lonely", 3, 0)))
    chapters.append(make_chapter("Chapter 3: Lonely", chunks[-1].text))
    enabled = {**settings, "enable_applications": True, "chunks_per_flashcard": 1}

    cards = _synthesizer(FakeLLM(), chunks, enabled).synthesize(chunks, chapters)

    applications = _by_type(cards, "APPLICATION")
    assert [card.source_cards for card in applications[:3]] == [
        ["flashcard_0", "flashcard_1", "flashcard_2"],
        ["flashcard_3", "flashcard_4", "flashcard_5"],
        ["flashcard_6"],
    ]
    assert len(applications) == 6
    assert all(card.chapter_context != "Chapter 3: Lonely" for card in applications)
    first_quiz = _by_type(cards, "QUIZ")[0]
    assert {"application_0", "application_1", "application_2"} <= set(first_quiz.source_cards)


def test_unparsable_flashcard_is_skipped(settings):
    class PartlyBrokenLLM(FakeLLM):
        def _respond(self, prompt):
            if "Source chunk ids: chunk_1\n" in prompt:
                return "I could not produce a card."
            return super()._respond(prompt)

    chapters, chunks = _corpus(1, chunks_per_chapter=3)
    flashcards = _synthesizer(PartlyBrokenLLM(), chunks, {**settings, "chunks_per_flashcard": 1}).generate_flashcards(chunks)

    assert [card.card_id for card in flashcards] == ["flashcard_0", "flashcard_1"]
    assert [card.source_chunks for card in flashcards] == [["chunk_0"], ["chunk_2"]]


def test_provider_error_aborts_synthesis(settings):
    chapters, chunks = _corpus(3)
    with pytest.raises(ProviderError):
        _synthesizer(FakeLLM(fail_marker="Create 1 quiz card"), chunks, settings).synthesize(chunks, chapters)


def test_debug_mode_caches_each_tier(settings, cache):
    chapters, chunks = _corpus(2)
    debug = {**settings, "debug_tier_cache": True}

    cards = _synthesizer(FakeLLM(), chunks, debug, cache=cache, content_id="book-1").synthesize(chunks, chapters)

    assert cache.get_tier("book-1", TIER_FLASHCARDS) == _by_type(cards, "FLASHCARD")
    assert cache.get_tier("book-1", TIER_QUIZZES) == _by_type(cards, "QUIZ")


class GenericTitleLLM(FakeLLM):
    """Answers every quiz and chapter summary with the same title."""

    def _respond(self, prompt):
        content = super()._respond(prompt)
        generic = None
        if "Create 1 quiz card" in prompt:
            generic = "Key Concepts Quiz"
        elif "Create a comprehensive chapter summary card" in prompt:
            generic = "Chapter Summary"
        if generic is None:
            return content
        payload = parse_model_json(content)
        payload["title"] = generic
        return json.dumps(payload)


def test_generic_titles_keep_one_quiz_and_summary_per_chapter(settings):
    chapters, chunks = _corpus(5)
    llm = GenericTitleLLM()

    cards = _synthesizer(llm, chunks, settings).synthesize(chunks, chapters)
    final = CardValidator(llm, settings, sleep=lambda _: None).finalize(cards, chunks)

    quizzes = _by_type(final, "QUIZ")
    summaries = [card for card in _by_type(final, "SUMMARY") if card.scope == "chapter"]
    assert [quiz.chapter_context for quiz in quizzes] == [chapter.title for chapter in chapters]
    assert [summary.chapter_context for summary in summaries] == [chapter.title for chapter in chapters]
    assert quizzes[0].title == f"{chapters[0].title}: Key Concepts Quiz"
    assert summaries[0].title == f"{chapters[0].title}: Chapter Summary"
