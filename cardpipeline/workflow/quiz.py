from __future__ import annotations

import re
from collections import Counter
from typing import Any, List, Optional, Sequence, Tuple

_CHOICE_LABEL = re.compile(r"^\s*\(?([A-Fa-f])\s*[).:\-]\s+")
_ANSWER_PREFIX = re.compile(r"^\s*(?:the\s+)?(?:correct\s+)?(?:answer|option|choice)(?:\s+is)?\s*[:\-]?\s*", re.IGNORECASE)
_ANSWER_LETTER = re.compile(r"^\(?([A-Fa-f])\b")


def strip_choice_label(choice: str) -> str:
    """``"B) Paris"`` -> ``"Paris"``."""
    return _CHOICE_LABEL.sub("", str(choice), count=1).strip()


def answer_index(answer: Any, choice_count: int) -> Optional[int]:
    """Zero-based index for a letter ("C", "c)", "Answer: C") or an integer answer; ``None`` if out of range.

    Digit strings ("2") are read as zero-based indexes, the same as integers.
    """
    if isinstance(answer, bool):
        return None
    if isinstance(answer, int):
        index = answer
    else:
        text = _ANSWER_PREFIX.sub("", str(answer or ""), count=1).strip()
        if text.isdecimal():
            index = int(text)
        else:
            match = _ANSWER_LETTER.match(text)
            if not match:
                return None
            index = ord(match.group(1).upper()) - ord("A")
    return index if 0 <= index < choice_count else None


def move_answer(choices: Sequence[str], correct_index: int, target_index: int) -> Tuple[List[str], int]:
    """Swap the correct choice into ``target_index``."""
    reordered = list(choices)
    if target_index != correct_index:
        reordered[correct_index], reordered[target_index] = reordered[target_index], reordered[correct_index]
    return reordered, target_index


class AnswerPositionBalancer:
    """Places each quiz's correct answer on the least-used position so far.

    Ties go to the lowest index, so the assignment is deterministic for a given
    sequence of quizzes.
    """

    def __init__(self) -> None:
        self.counts: Counter[int] = Counter()

    def target_for(self, choice_count: int) -> int:
        return min(range(choice_count), key=lambda position: (self.counts[position], position))

    def place(self, choices: Sequence[str], correct_index: int) -> Tuple[List[str], int]:
        reordered, index = move_answer(choices, correct_index, self.target_for(len(choices)))
        self.counts[index] += 1
        return reordered, index
