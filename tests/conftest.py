import hashlib
import json
import pathlib
import re
import sys
import threading

import numpy as np
import pytest

# Ensure the repository root is on the path for direct test runs.
REPO_ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(REPO_ROOT) not in sys.path:
    sys.path.append(str(REPO_ROOT))

from cardpipeline.utils.types import Chapter, Chunk, Page
from cardpipeline.workflow.cache import InMemoryCacheStore, PipelineCache
from cardpipeline.workflow.llm import ProviderError, TaskType

TOPICS = [
    "Foundations of Focus",
    "Habits That Stick",
    "Memory and Recall",
    "Attention Management",
    "Intrinsic Motivation",
    "Sleep and Recovery",
    "Deliberate Practice",
    "Feedback Loops",
    "Curiosity at Work",
    "Reflection and Review",
    "Spaced Learning",
    "Teaching Others",
]


def paragraph(topic, page, idx):
    word = topic.split()[-1].lower()
    sentences = [f"Learners who study {word} on page {page} discover idea {page}-{idx}-{n} about deliberate effort and steady improvement." for n in range(6)]
    return " ".join(sentences)


def make_page(page_number, text):
    return Page(page_number=page_number, text=text, lines=tuple(text.splitlines()), word_count=len(text.split()))


def make_book(chapter_count=10, pages_per_chapter=4, paragraphs_per_page=3):
    """Title page, a contents page, then chapters starting on page 3."""
    titles = [f"Chapter {idx + 1}: {TOPICS[idx % len(TOPICS)]}" for idx in range(chapter_count)]
    pages = [
        make_page(1, "The Learning Book\nBy Ada Example"),
        make_page(2, "Contents\n" + "\n".join(titles)),
    ]
    ranges = []
    page_number = 3
    for idx, title in enumerate(titles):
        start = page_number
        for offset in range(pages_per_chapter):
            blocks = [paragraph(TOPICS[idx % len(TOPICS)], page_number, p) for p in range(paragraphs_per_page)]
            if offset == 0:
                blocks.insert(0, title)
            pages.append(make_page(page_number, "\n\n".join(blocks)))
            page_number += 1
        ranges.append({"title": title, "start_page": start, "end_page": page_number - 1})
    return pages, titles, ranges


def plain_text(word_target=2500):
    sentences = []
    count = 0
    idx = 0
    while count < word_target:
        sentence = f"Plain text sentence {idx} describes how careful readers connect ideas across long documents."
        sentences.append(sentence)
        count += len(sentence.split())
        idx += 1
    return " ".join(sentences)


def make_chunk(idx, chapter_index, chapter_title, text=None):
    text = text or paragraph(chapter_title, chapter_index + 1, idx)
    return Chunk(
        id=f"chunk_{idx}",
        text=text,
        chapter_title=chapter_title,
        chapter_index=chapter_index,
        char_count=len(text),
        word_count=len(text.split()),
    )


def make_chapter(title, content, start_page=0, end_page=0, method="PAGE_WINDOWS"):
    return Chapter(title=title, start_page=start_page, end_page=end_page, content=content, word_count=len(content.split()), detection_method=method)


class FakeLLM:
    """Routes prompts on their opening phrases and answers with canned JSON."""

    def __init__(self, *, titles=None, toc_pages=None, ranges=None, quiz_answer="B", judge=None, regenerate=None, fail_marker=None):
        self.titles = list(titles or [])
        self.toc_pages = toc_pages
        self.ranges = list(ranges or [])
        self.quiz_answer = quiz_answer
        self.judge = judge
        self.regenerate = regenerate
        self.fail_marker = fail_marker
        self.calls = []
        self._lock = threading.Lock()

    def prompts_with(self, phrase):
        return [call for call in self.calls if phrase in call["prompt"]]

    def complete(self, prompt, *, max_tokens=2500, temperature=None, task_type=TaskType.CARD_GENERATION):
        with self._lock:
            self.calls.append({"prompt": prompt, "temperature": temperature, "task_type": TaskType.from_value(task_type), "max_tokens": max_tokens})
        if self.fail_marker and self.fail_marker in prompt:
            raise ProviderError("OpenAI request failed: service unavailable")
        return self._respond(prompt)

    def _respond(self, prompt):
        if "identify the Table of Contents (TOC) pages" in prompt:
            if self.toc_pages is None:
                return "I am not sure which pages hold the contents."
            return json.dumps({"toc_pages": self.toc_pages, "reason": "chapter listing"})
        if "extract all chapter titles" in prompt:
            return "```json\n" + json.dumps({"chapters": self.titles}) + "\n```"
        if "find the exact page ranges" in prompt:
            return json.dumps({"chapters": self.ranges})
        if "Create 1 comprehensive flashcard" in prompt:
            ids = re.search(r"Source chunk ids: (.+)", prompt).group(1).strip()
            return json.dumps(
                {
                    "title": f"Concept from {ids}",
                    "front": f"What do the passages {ids} teach?",
                    "back": f"The passages {ids} explain deliberate effort and steady improvement.",
                    "difficulty": "medium",
                    "tags": ["general", "concept"],
                }
            )
        if "Create 1 application card" in prompt:
            concept = re.search(r"Concept: (.+)", prompt).group(1).strip()
            return json.dumps(
                {
                    "title": f"Applying {concept}",
                    "scenario": "A team lead must plan a month of focused learning for new hires.",
                    "question": "How would you structure the plan?",
                    "solution": "Step 1: Pick one skill. Step 2: Schedule deliberate practice. Step 3: Review weekly.",
                    "difficulty": "MEDIUM",
                    "tags": ["general", "application"],
                }
            )
        if "Create 1 quiz card" in prompt:
            concept = re.search(r"Concepts to test:\n(.+?): ", prompt).group(1).strip()
            letters = ["A", "B", "C", "D"]
            options = [f"{letter}) {'Correct answer' if letter == self.quiz_answer else f'Distractor {letter}'}" for letter in letters]
            body = json.dumps(
                {
                    "title": f"Quiz on {concept}",
                    "question": f"Which statement about {concept} is right?",
                    "options": options,
                    "correct_answer": self.quiz_answer,
                    "explanation": "Only the correct answer matches the passages.",
                    "difficulty": "MEDIUM",
                }
            )
            return f"Here is the quiz:\n{body}\nGood luck!"
        if "Create a comprehensive chapter summary card" in prompt:
            chapter = re.search(r'chapter summary card for "(.+?)" from', prompt).group(1)
            return json.dumps({"title": f"Chapter Summary: {chapter}", "front": f"What are the key insights from {chapter}?", "narrative": f"{chapter} connects effort, feedback and review."})
        if "Create a book overview card" in prompt:
            return json.dumps({"title": "Overview: The Learning Book", "front": "Complete Book Overview", "narrative": "The book builds from focus to reflection."})
        if "Validate this learning card" in prompt:
            verdict = self.judge(prompt) if self.judge else {"is_valid": True, "reason": "Accurate", "score": 9}
            return verdict if isinstance(verdict, str) else json.dumps(verdict)
        if "failed quality validation" in prompt:
            if self.regenerate is None:
                return "Sorry, I cannot help with that."
            result = self.regenerate(prompt)
            return result if isinstance(result, str) else json.dumps(result)
        return "{}"


class FakeEmbedder:
    """Hashed bag-of-words vectors; deterministic across processes."""

    dim = 64

    def __init__(self, fail_marker=None, fail_batches=False):
        self.fail_marker = fail_marker
        self.fail_batches = fail_batches
        self.calls = 0

    def encode(self, texts):
        self.calls += 1
        if self.fail_batches and len(texts) > 1:
            raise RuntimeError("batch too large")
        rows = []
        for text in texts:
            if self.fail_marker and self.fail_marker in text:
                raise ValueError("cannot embed text")
            vector = np.zeros(self.dim, dtype=np.float32)
            for token in re.findall(r"[a-z0-9]+", text.lower()):
                vector[int(hashlib.md5(token.encode()).hexdigest(), 16) % self.dim] += 1.0
            norm = np.linalg.norm(vector)
            rows.append(vector / norm if norm else vector)
        return np.vstack(rows)


@pytest.fixture
def cache():
    return PipelineCache(InMemoryCacheStore())


@pytest.fixture
def embedder():
    return FakeEmbedder()


@pytest.fixture
def settings():
    return {
        "batch_delay_seconds": 0,
        "generation_concurrency": 3,
        "validate_cards": True,
        "debug_tier_cache": False,
        "enable_applications": False,
        "category": "general",
    }


@pytest.fixture
def book():
    return make_book()
