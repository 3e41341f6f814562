import pathlib
import sys

import pytest
from pydantic import ValidationError

REPO_ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(REPO_ROOT) not in sys.path:
    sys.path.append(str(REPO_ROOT))

from cardpipeline.utils.cards import (
    ApplicationCard,
    FlashcardCard,
    QuizCard,
    SummaryCard,
    build_card,
    card_content,
    chapter_scoped_title,
    dedup_key,
    dump_cards,
    load_cards,
    remove_duplicates,
    replace_card,
)


def _flashcard(card_id="flashcard_0", title="Deep Work", **extra):
    data = {"type": "FLASHCARD", "card_id": card_id, "title": title, "front": "What is deep work?", "back": "Focused, distraction-free effort."}
    data.update(extra)
    return build_card(data)


def _quiz(**extra):
    data = {
        "type": "QUIZ",
        "card_id": "quiz_0",
        "title": "Quiz on focus",
        "question": "Which habit protects focus?",
        "choices": ["Batching email", "Constant notifications", "Multitasking", "Open offices"],
        "correct_answer_index": 0,
    }
    data.update(extra)
    return build_card(data)


def test_build_card_dispatches_on_type():
    assert isinstance(_flashcard(), FlashcardCard)
    assert isinstance(_quiz(), QuizCard)
    application = build_card(
        {"type": "APPLICATION", "card_id": "application_0", "title": "Plan a focus week", "scenario": "A new role.", "question": "What first?", "solution": "Block mornings."}
    )
    summary = build_card({"type": "SUMMARY", "card_id": "overview_0", "title": "Overview", "narrative": "All chapters.", "scope": "book"})
    assert isinstance(application, ApplicationCard)
    assert isinstance(summary, SummaryCard)
    assert summary.scope == "book"


def test_unknown_type_is_rejected():
    with pytest.raises(ValidationError):
        build_card({"type": "POSTER", "card_id": "x", "title": "Nope"})


@pytest.mark.parametrize("index", [-1, 4, 9])
def test_quiz_answer_index_must_point_at_a_choice(index):
    with pytest.raises(ValidationError):
        _quiz(correct_answer_index=index)


def test_quiz_needs_at_least_two_choices():
    with pytest.raises(ValidationError):
        _quiz(choices=["Only one"], correct_answer_index=0)


@pytest.mark.parametrize("field", ["front", "back"])
def test_flashcard_payload_must_not_be_blank(field):
    with pytest.raises(ValidationError):
        _flashcard(**{field: "   "})


def test_envelope_normalization():
    card = _flashcard(title="  Deep Work  ", difficulty="hard", tags=["focus", " focus ", ""])
    assert card.title == "Deep Work"
    assert card.difficulty == "HARD"
    assert card.tags == ["focus"]
    assert _flashcard(difficulty="impossible").difficulty == "MEDIUM"


def test_cards_are_frozen_and_replaced_through_validation():
    card = _flashcard()
    with pytest.raises(ValidationError):
        card.title = "Changed"

    enhanced = replace_card(card, back="A sharper answer.", enhanced=True, enhancement_reason="too vague")
    assert enhanced.enhanced and enhanced.enhancement_reason == "too vague"
    assert card.back == "Focused, distraction-free effort."

    quiz = _quiz()
    with pytest.raises(ValidationError):
        replace_card(quiz, correct_answer_index=7)


def test_dedup_key_ignores_case_and_punctuation():
    first = _flashcard("flashcard_0", "The Trolley Problem")
    second = _flashcard("flashcard_1", "the trolley-problem!")
    assert dedup_key(first) == dedup_key(second) == ("FLASHCARD", "thetrolleyproblem")


def test_remove_duplicates_keeps_first_per_type():
    first = _flashcard("flashcard_0", "The Trolley Problem")
    repeat = _flashcard("flashcard_1", "the trolley-problem!")
    quiz = _quiz(title="The Trolley Problem")

    unique = remove_duplicates([first, repeat, quiz])

    assert [card.card_id for card in unique] == ["flashcard_0", "quiz_0"]


@pytest.mark.parametrize(
    "title, chapter, expected",
    [
        ("Key Concepts Quiz", "Chapter 2: Habits", "Chapter 2: Habits: Key Concepts Quiz"),
        ("Chapter Summary: chapter 2: habits", "Chapter 2: Habits", "Chapter Summary: chapter 2: habits"),
        ("", "Chapter 2: Habits", "Chapter 2: Habits"),
        ("  Key   Concepts ", None, "Key Concepts"),
    ],
)
def test_chapter_scoped_title(title, chapter, expected):
    assert chapter_scoped_title(title, chapter) == expected


def test_chapter_scoped_title_is_capped():
    assert len(chapter_scoped_title("Quiz " * 60, "Chapter 9: Review")) == 200


def test_dump_and_load_preserve_variants():
    cards = [_flashcard(), _quiz()]
    restored = load_cards(dump_cards(cards))
    assert restored == cards


def test_card_content_letters_quiz_choices():
    content = card_content(_quiz(correct_answer_index=2))
    assert "C) Multitasking" in content
    assert "Correct: C" in content
