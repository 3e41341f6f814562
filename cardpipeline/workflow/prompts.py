"""Prompt builders for every model call made by the pipeline.

Each builder returns a single user prompt. Responses are expected to be strict JSON;
the callers parse them with :func:`cardpipeline.workflow.llm.parse_model_json`.
"""

from __future__ import annotations

import json
from typing import Sequence

from cardpipeline.utils.cards import Card, card_content
from cardpipeline.utils.types import Chapter, Chunk, Page, SearchHit

JSON_ONLY = "Return ONLY the JSON object, no markdown, no code fences, no additional text."


def toc_pages_prompt(pages: Sequence[Page]) -> str:
    pages_content = "\n\n".join(f"--- PAGE {page.page_number} ({page.word_count} words) ---\n{page.text}" for page in pages)
    return (
        "Analyze these pages from the beginning of a book to identify the Table of Contents (TOC) pages.\n\n"
        f"Book pages (first {len(pages)} pages):\n{pages_content}\n\n"
        "Only include pages that are actually part of the TOC: pages with a 'Table of Contents', "
        "'Contents' or 'Index' header, pages listing chapter titles with page numbers, and "
        "sequential pages continuing that listing. If no clear TOC is found return an empty list.\n"
        "Respond with strict JSON using the following schema:\n"
        '{\n  "toc_pages": [2, 3],\n  "reason": "Pages 2-3 list chapter titles with page numbers"\n}\n'
        f"{JSON_ONLY}"
    )


def chapter_titles_prompt(pages: Sequence[Page]) -> str:
    excerpt = "\n\n".join(f"=== PAGE {page.page_number} ===\n{page.text}" for page in pages)
    return (
        "You are an expert at analyzing book structure. Analyze this excerpt from the beginning of a book "
        "and extract all chapter titles in the exact order they appear.\n\n"
        f"Book excerpt (first {len(pages)} pages):\n{excerpt}\n\n"
        "Look for Table of Contents entries, chapter headings (Chapter 1:, Chapter 2:, ...) and section "
        "titles that are clearly main chapters. Do not include subsections. Preserve the original wording. "
        "Return an empty list when no clear chapters are found.\n"
        "Respond with strict JSON using the following schema:\n"
        '{\n  "chapters": ["Chapter 1: Introduction", "Chapter 2: Meaningful Names"]\n}\n'
        f"{JSON_ONLY}"
    )


def range_mapping_prompt(titles: Sequence[str], pages: Sequence[Page], summary_chars: int = 350) -> str:
    chapter_list = "\n".join(f"{idx}. {title}" for idx, title in enumerate(titles, start=1))
    summaries = []
    for page in pages:
        snippet = " ".join(page.text[:summary_chars].split())
        ellipsis = "..." if len(page.text) > summary_chars else ""
        summaries.append(f"Page {page.page_number}: {snippet}{ellipsis}")
    start_page = pages[0].page_number if pages else 1
    return (
        "I have detected these chapter names from a book's Table of Contents:\n\n"
        f"{chapter_list}\n\n"
        "Now find the exact page ranges where each chapter starts and ends by analyzing the book content "
        f"starting after the TOC.\n\nBook content ({len(pages)} pages, starting from page {start_page}):\n"
        + "\n\n".join(summaries)
        + "\n\n"
        f"Map ALL {len(titles)} chapters using the exact names above. Page ranges must not overlap and must "
        "be sequential.\n"
        "Respond with strict JSON using the following schema:\n"
        '{\n  "chapters": [\n    {"title": "Chapter 1: Introduction", "start_page": 5, "end_page": 15}\n  ]\n}\n'
        f"{JSON_ONLY}"
    )


def _related_block(related: Sequence[SearchHit]) -> str:
    if not related:
        return ""
    lines = [f'{idx}. From "{hit.chapter_title}": {hit.text}' for idx, hit in enumerate(related, start=1)]
    return "\n\nRelated context from other parts of the book:\n" + "\n".join(lines)


def flashcard_prompt(window: Sequence[Chunk], related: Sequence[SearchHit], *, book_title: str, author: str, category: str) -> str:
    main = "\n\n".join(f"[{chunk.id}]\n{chunk.text}" for chunk in window)
    chunk_ids = ", ".join(chunk.id for chunk in window)
    return (
        f'Create 1 comprehensive flashcard from "{book_title}" by {author}.\n\n'
        f"Main content:\n{main}{_related_block(related)}\n\n"
        f"Source chunk ids: {chunk_ids}\n\n"
        "Identify the MAIN concept that connects the provided content and write a clear question with a "
        "comprehensive answer (150-250 words) that synthesizes all chunks. Base it strictly on the content.\n"
        "Respond with strict JSON using the following schema:\n"
        "{\n"
        '  "title": "Concept name (max 60 chars)",\n'
        '  "front": "Clear question about the main concept",\n'
        '  "back": "Comprehensive, accurate answer",\n'
        '  "difficulty": "EASY|MEDIUM|HARD",\n'
        f'  "tags": ["{category}", "concept"]\n'
        "}\n"
        f"{JSON_ONLY}"
    )


def application_prompt(flashcards: Sequence[Card], related: Sequence[SearchHit], *, book_title: str, author: str, category: str) -> str:
    concepts = "\n\n".join(f"Concept: {card.title}\n{card_content(card)}" for card in flashcards)
    return (
        f'Create 1 application card based on these flashcard concepts from "{book_title}" by {author}.\n\n'
        f"Flashcard concepts:\n{concepts}{_related_block(related)}\n\n"
        "Present a realistic scenario (150-200 words) that requires applying the concepts, a specific question "
        "about handling it, and a solution broken into numbered steps (Step 1, Step 2, ...) with the reasoning "
        "for each step.\n"
        "Respond with strict JSON using the following schema:\n"
        "{\n"
        '  "title": "Application scenario title (max 70 chars)",\n'
        '  "scenario": "Practical scenario",\n'
        '  "question": "How would you...",\n'
        '  "solution": "Step 1: ... Step 2: ...",\n'
        '  "difficulty": "MEDIUM",\n'
        f'  "tags": ["{category}", "application"]\n'
        "}\n"
        f"{JSON_ONLY}"
    )


def quiz_prompt(flashcards: Sequence[Card], applications: Sequence[Card], distractors: Sequence[SearchHit], *, book_title: str, author: str, category: str) -> str:
    concepts = "\n".join(f"{card.title}: {getattr(card, 'back', '')}" for card in flashcards)
    application_context = "\n\n".join(card_content(card) for card in applications) or "(none)"
    distractor_context = "\n".join(f"- {hit.text[:300]}" for hit in distractors) or "(none)"
    return (
        f'Create 1 quiz card based on these concepts from "{book_title}" by {author}.\n\n'
        f"Concepts to test:\n{concepts}\n\n"
        f"Application context:\n{application_context}\n\n"
        f"Material for plausible distractors:\n{distractor_context}\n\n"
        "Write one multiple choice question with 4 plausible options and exactly one correct answer. "
        "Randomize which option is correct.\n"
        "Respond with strict JSON using the following schema:\n"
        "{\n"
        '  "title": "Quiz question title",\n'
        '  "question": "Multiple choice question",\n'
        '  "options": ["A) ...", "B) ...", "C) ...", "D) ..."],\n'
        '  "correct_answer": "A|B|C|D",\n'
        '  "explanation": "Why this answer is correct",\n'
        '  "difficulty": "MEDIUM",\n'
        f'  "tags": ["{category}", "quiz"]\n'
        "}\n"
        f"{JSON_ONLY}"
    )


def chapter_summary_prompt(chapter_title: str, flashcards: Sequence[Card], *, book_title: str, category: str) -> str:
    concepts = "\n".join(f"- {card.title}: {getattr(card, 'front', '')} -> {getattr(card, 'back', '')[:100]}..." for card in flashcards)
    return (
        f'Create a comprehensive chapter summary card for "{chapter_title}" from "{book_title}".\n\n'
        f"Key concepts covered in this chapter:\n{concepts}\n\n"
        "Write a cohesive narrative (400-500 words) that connects the concepts: main themes, how they relate, "
        "key insights and takeaways.\n"
        "Respond with strict JSON using the following schema:\n"
        "{\n"
        f'  "title": "Chapter Summary: {chapter_title}",\n'
        f'  "front": "What are the key insights from {chapter_title}?",\n'
        '  "narrative": "Cohesive summary of the chapter",\n'
        '  "difficulty": "MEDIUM",\n'
        f'  "tags": ["summary", "{category}"]\n'
        "}\n"
        f"{JSON_ONLY}"
    )


def book_overview_prompt(chapters: Sequence[Chapter], *, book_title: str, author: str, category: str, opening_chars: int = 200) -> str:
    chapter_summaries = "\n\n".join(f"{chapter.title}: {chapter.content[:opening_chars]}..." for chapter in chapters)
    return (
        f'Create a book overview card for "{book_title}" by {author}.\n\n'
        f"Chapter openings:\n{chapter_summaries}\n\n"
        "Write an overview (300-400 words) covering the central message, how the chapters connect and the key "
        "takeaways.\n"
        "Respond with strict JSON using the following schema:\n"
        "{\n"
        f'  "title": "Overview: {book_title}",\n'
        '  "front": "Complete Book Overview",\n'
        '  "narrative": "Book overview",\n'
        '  "difficulty": "MEDIUM",\n'
        f'  "tags": ["overview", "{category}"]\n'
        "}\n"
        f"{JSON_ONLY}"
    )


def validation_prompt(card: Card, source_context: str) -> str:
    return (
        "Validate this learning card for quality and accuracy:\n\n"
        f"Card Type: {card.type}\nTitle: {card.title}\nContent: {card_content(card)[:500]}\n\n"
        f"Source context from book:\n{source_context[:800]}\n\n"
        "Criteria, most important first: accuracy against the source, title relevance, educational value, "
        "appropriate length, no contradictions. Only mark as invalid if there are real issues.\n"
        "Respond with strict JSON using the following schema:\n"
        '{\n  "is_valid": true,\n  "reason": "Brief explanation (max 100 chars)",\n  "score": 8\n}\n'
        f"{JSON_ONLY}"
    )


_PAYLOAD_SCHEMAS = {
    "FLASHCARD": {"front": "Clear question", "back": "Accurate answer"},
    "APPLICATION": {"scenario": "Practical scenario", "question": "How would you...", "solution": "Step 1: ... Step 2: ..."},
    "QUIZ": {"question": "Multiple choice question", "options": ["...", "...", "...", "..."], "correct_answer": "A|B|C|D", "explanation": "Why"},
    "SUMMARY": {"front": "Summary prompt", "narrative": "Cohesive summary"},
}


def regeneration_prompt(card: Card, reason: str, source_context: str) -> str:
    schema = {"title": "Improved title (max 80 chars)", **_PAYLOAD_SCHEMAS[card.type], "difficulty": "EASY|MEDIUM|HARD", "tags": ["relevant", "tags"]}
    return (
        "The following learning card failed quality validation. Please recreate it with higher quality.\n\n"
        f"ORIGINAL CARD (that failed):\nType: {card.type}\nTitle: {card.title}\n{card_content(card)}\n\n"
        f"FAILURE REASON: {reason}\n\n"
        f"SOURCE CONTEXT:\n{source_context}\n\n"
        f"Fix the issues above, keep the same card type ({card.type}) and base the content strictly on the source context.\n"
        "Respond with strict JSON using the following schema:\n"
        f"{json.dumps(schema, indent=2)}\n"
        f"{JSON_ONLY}"
    )
