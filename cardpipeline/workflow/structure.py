"""
Chapter structure recovery.

One detector, three tiers tried in order until one yields chapters:

* ``CHAPTER_MAPPING``: the model lists chapter titles from the opening pages, then maps
  each title to a page range over the pages that follow the table of contents. Ranges
  are gap-filled so chapters cover every page exactly once.
* ``PAGE_WINDOWS``: overlapping windows of pages sized by page density.
* ``WORD_WINDOWS``: overlapping windows of words for text without page structure.
"""

from __future__ import annotations

import re
from difflib import SequenceMatcher
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from cardpipeline.utils.logging_config import get_logger
from cardpipeline.utils.types import Chapter, DetectionTier, DocumentStructure, Page
from cardpipeline.workflow.cache import PipelineCache
from cardpipeline.workflow.llm import CompletionProvider, ProviderError, TaskType, complete_json
from cardpipeline.workflow.prompts import chapter_titles_prompt, range_mapping_prompt, toc_pages_prompt
from cardpipeline.workflow.utils.settings import merged_settings

logger = get_logger(__name__)

_NUMBER_WORDS = {
    "one": 1, "two": 2, "three": 3, "four": 4, "five": 5, "six": 6, "seven": 7, "eight": 8, "nine": 9, "ten": 10,
    "eleven": 11, "twelve": 12, "thirteen": 13, "fourteen": 14, "fifteen": 15, "sixteen": 16, "seventeen": 17,
    "eighteen": 18, "nineteen": 19, "twenty": 20,
}
_ROMAN_VALUES = {"i": 1, "v": 5, "x": 10, "l": 50, "c": 100, "d": 500, "m": 1000}

_NUMBER_TOKEN = r"(\d+|[ivxlcdm]+|" + "|".join(_NUMBER_WORDS) + r")"
_CHAPTER_PREFIX = re.compile(r"^\s*(?:chapter|ch\.|part)\s+" + _NUMBER_TOKEN + r"\b[\s.:)\-]*", re.IGNORECASE)
_NUMERIC_PREFIX = re.compile(r"^\s*(\d+)(?:\.\d+)*(?:[.:)\-]\s*|\s+)")
_ROMAN_PREFIX = re.compile(r"^\s*([ivxlcdm]+)[.:)]\s+", re.IGNORECASE)
_PUNCTUATION = re.compile(r"[^\w\s]")

_TOC_HEADER = re.compile(r"^(table of contents|contents|index)$", re.IGNORECASE)
_CHAPTER_REFERENCE = re.compile(r"chapter\s+\d+", re.IGNORECASE)
_NUMBERED_REFERENCE = re.compile(r"^\d+\.\s+[A-Z]", re.IGNORECASE)

MIN_TITLE_LENGTH = 6
MAX_TITLE_LENGTH = 199


def _roman_to_int(token: str) -> Optional[int]:
    total = 0
    previous = 0
    for char in reversed(token.lower()):
        value = _ROMAN_VALUES.get(char)
        if value is None:
            return None
        total = total - value if value < previous else total + value
        previous = max(previous, value)
    return total or None


def _number_from_token(token: str) -> Optional[int]:
    lowered = token.lower()
    if lowered.isdigit():
        return int(lowered)
    if lowered in _NUMBER_WORDS:
        return _NUMBER_WORDS[lowered]
    return _roman_to_int(lowered)


def extract_chapter_number(title: str) -> Optional[int]:
    """Sequence number encoded in a heading ("3. Foo", "Chapter III: Foo", "Chapter three")."""
    for pattern in (_CHAPTER_PREFIX, _NUMERIC_PREFIX, _ROMAN_PREFIX):
        match = pattern.match(title or "")
        if match:
            return _number_from_token(match.group(1))
    return None


def normalize_chapter_title(title: str) -> str:
    """Canonical comparison form of a chapter title.

    Strips "Chapter N"/numeric/roman prefixes, case-folds, drops punctuation and
    collapses whitespace. A title made only of a prefix keeps its folded text.
    """
    raw = (title or "").strip()
    stripped = raw
    for pattern in (_CHAPTER_PREFIX, _NUMERIC_PREFIX, _ROMAN_PREFIX):
        candidate = pattern.sub("", stripped, count=1)
        if candidate != stripped:
            stripped = candidate
            break
    folded = " ".join(_PUNCTUATION.sub(" ", stripped.casefold()).split())
    if folded:
        return folded
    return " ".join(_PUNCTUATION.sub(" ", raw.casefold()).split())


def match_chapter_title(candidate: str, titles: Sequence[str], threshold: float = 0.85) -> Optional[str]:
    """Resolve a model-returned title against the detected titles.

    Tries, in order: exact normalized equality, matching chapter numbers with one
    normalized title contained in the other on word boundaries, then the best fuzzy
    ratio at or above ``threshold``.
    """
    target = normalize_chapter_title(candidate)
    if not target:
        return None
    normalized = [(title, normalize_chapter_title(title)) for title in titles]

    for title, norm in normalized:
        if norm == target:
            return title

    candidate_number = extract_chapter_number(candidate)
    padded_target = f" {target} "
    for title, norm in normalized:
        if len(norm) < 4 or len(target) < 4:
            continue
        title_number = extract_chapter_number(title)
        if candidate_number is not None and title_number is not None and candidate_number != title_number:
            continue
        if f" {norm} " in padded_target or padded_target in f" {norm} ":
            return title

    best_title: Optional[str] = None
    best_ratio = threshold
    for title, norm in normalized:
        ratio = SequenceMatcher(None, target, norm).ratio()
        if ratio >= best_ratio:
            best_title, best_ratio = title, ratio
    return best_title


def _word_count(text: str) -> int:
    return len(text.split())


def build_chapter(title: str, start_page: int, end_page: int, pages: Sequence[Page], detection_method: str, *, is_gap_filled: bool = False) -> Chapter:
    """Chapter over the inclusive page range; content and word count follow the range."""
    content = "\n\n".join(page.text for page in pages if start_page <= page.page_number <= end_page)
    return Chapter(
        title=title,
        start_page=start_page,
        end_page=end_page,
        content=content,
        word_count=_word_count(content),
        detection_method=detection_method,
        is_gap_filled=is_gap_filled,
    )


def _missing_chapter_for_gap(previous: Chapter, following: Chapter, missing_titles: Sequence[str]) -> Optional[str]:
    before = extract_chapter_number(previous.title)
    after = extract_chapter_number(following.title)
    if before is None or after is None or after - before != 2:
        return None
    expected = before + 1
    for title in missing_titles:
        if extract_chapter_number(title) == expected:
            return title
    return None


def fill_chapter_gaps(chapters: Sequence[Chapter], expected_titles: Sequence[str], pages: Sequence[Page], *, small_gap_pages: int = 10, max_chapters: int = 200) -> List[Chapter]:
    """Make chapter ranges non-overlapping and contiguous from the first page to the last.

    Overlaps are clipped so a later chapter starts after the earlier one ends. A gap of
    at most ``small_gap_pages`` extends the preceding chapter. A larger gap becomes the
    one missing chapter only when the neighbours' numbers differ by exactly two and
    that title was not mapped; otherwise it also extends the preceding chapter.
    """
    if not chapters or not pages:
        return list(chapters)

    page_numbers = [page.page_number for page in pages]
    first_page, last_page = min(page_numbers), max(page_numbers)
    method = chapters[0].detection_method

    clipped: List[Chapter] = []
    for chapter in sorted(chapters, key=lambda ch: (ch.start_page, ch.end_page)):
        start = max(chapter.start_page, first_page)
        end = min(chapter.end_page, last_page)
        if clipped and start <= clipped[-1].end_page:
            start = clipped[-1].end_page + 1
        if start > end:
            logger.debug("Chapter dropped by overlap | title=%s range=%s-%s", chapter.title, chapter.start_page, chapter.end_page)
            continue
        if (start, end) == (chapter.start_page, chapter.end_page):
            clipped.append(chapter)
        else:
            clipped.append(build_chapter(chapter.title, start, end, pages, chapter.detection_method, is_gap_filled=chapter.is_gap_filled))

    if not clipped:
        return []

    mapped_keys = {normalize_chapter_title(ch.title) for ch in clipped}
    missing = [title for title in expected_titles if normalize_chapter_title(title) not in mapped_keys]

    filled: List[Chapter] = [clipped[0]]
    for following in clipped[1:]:
        previous = filled[-1]
        gap_start, gap_end = previous.end_page + 1, following.start_page - 1
        if gap_end >= gap_start:
            gap_size = gap_end - gap_start + 1
            missing_title = None
            if gap_size > small_gap_pages and len(clipped) + sum(1 for ch in filled if ch.is_gap_filled) < max_chapters:
                missing_title = _missing_chapter_for_gap(previous, following, missing)
            if missing_title:
                filled.append(build_chapter(missing_title, gap_start, gap_end, pages, method, is_gap_filled=True))
                missing.remove(missing_title)
                logger.info("Gap filled | title=%s pages=%s-%s", missing_title, gap_start, gap_end)
            else:
                filled[-1] = build_chapter(previous.title, previous.start_page, gap_end, pages, previous.detection_method, is_gap_filled=previous.is_gap_filled)
                logger.debug("Gap merged | into=%s pages=%s-%s", previous.title, gap_start, gap_end)
        filled.append(following)

    head = filled[0]
    if head.start_page > first_page:
        filled[0] = build_chapter(head.title, first_page, head.end_page, pages, head.detection_method, is_gap_filled=head.is_gap_filled)
    tail = filled[-1]
    if tail.end_page < last_page:
        filled[-1] = build_chapter(tail.title, tail.start_page, last_page, pages, tail.detection_method, is_gap_filled=tail.is_gap_filled)

    filled.sort(key=lambda ch: ch.start_page)
    return filled


def heuristic_toc_pages(pages: Sequence[Page], max_page_number: int = 10) -> List[int]:
    """Conservative TOC detection: a TOC header, or repeated chapter references on a sparse page."""
    toc_pages: List[int] = []
    for page in pages:
        if page.page_number > max_page_number:
            continue
        lines = [line.strip() for line in (page.lines or tuple(page.text.splitlines()))]
        has_header = any(_TOC_HEADER.match(line) for line in lines)
        references = sum(1 for line in lines if _CHAPTER_REFERENCE.search(line) or _NUMBERED_REFERENCE.match(line))
        if has_header or (references >= 2 and page.word_count < 200):
            toc_pages.append(page.page_number)
    return toc_pages


class StructureDetector:
    """Recovers chapters from extracted pages, falling back tier by tier."""

    def __init__(self, llm: CompletionProvider, settings: Optional[Dict[str, Any]] = None, cache: Optional[PipelineCache] = None) -> None:
        self.llm = llm
        self.settings = merged_settings(settings)
        self.cache = cache

    def detect(self, pages: Sequence[Page], text: str = "", *, content_id: Optional[str] = None) -> DocumentStructure:
        if self.cache is not None and content_id:
            cached = self.cache.get_structure(content_id)
            if cached is not None:
                return cached

        structure = self._detect(pages, text)
        logger.info(
            "Structure   | content=%s method=%s chapters=%s avg_words=%s",
            content_id,
            structure.detection_method,
            structure.total_chapters,
            structure.average_chapter_length,
        )
        if self.cache is not None and content_id and structure.chapters:
            self.cache.set_structure(content_id, structure)
        return structure

    def _detect(self, pages: Sequence[Page], text: str) -> DocumentStructure:
        ordered = sorted(pages, key=lambda page: page.page_number)
        full_text = text or "\n\n".join(page.text for page in ordered)

        tiers: List[Tuple[DetectionTier, Callable[[], Tuple[List[Chapter], Dict[str, Any]]]]] = []
        if ordered:
            tiers.append((DetectionTier.CHAPTER_MAPPING, lambda: self.detect_by_chapter_mapping(ordered)))
            tiers.append((DetectionTier.PAGE_WINDOWS, lambda: self.detect_by_page_windows(ordered)))
        tiers.append((DetectionTier.WORD_WINDOWS, lambda: self.detect_by_word_windows(full_text)))

        for tier, run_tier in tiers:
            try:
                chapters, chunk_info = run_tier()
            except Exception:
                logger.warning("Structure tier failed; falling through | tier=%s", tier.value, exc_info=True)
                continue
            if chapters:
                return DocumentStructure(chapters=chapters, detection_method=tier.value, chunk_info=chunk_info)
            logger.info("Structure tier empty | tier=%s", tier.value)
        return DocumentStructure(chapters=[], detection_method=DetectionTier.WORD_WINDOWS.value)

    # Tier 1 -----------------------------------------------------------------

    def detect_chapter_titles(self, pages: Sequence[Page]) -> List[str]:
        opening = list(pages[: int(self.settings["title_scan_pages"])])
        response = complete_json(self.llm, chapter_titles_prompt(opening), max_tokens=1500, temperature=0, task_type=TaskType.CHAPTER_MAPPING)
        raw_titles = response.get("chapters") if isinstance(response, dict) else response
        if not isinstance(raw_titles, list):
            return []
        titles: List[str] = []
        seen: set[str] = set()
        for title in raw_titles:
            if not isinstance(title, str):
                continue
            title = " ".join(title.split())
            key = normalize_chapter_title(title)
            if MIN_TITLE_LENGTH <= len(title) <= MAX_TITLE_LENGTH and key not in seen:
                seen.add(key)
                titles.append(title)
        return titles

    def find_toc_pages(self, pages: Sequence[Page]) -> List[int]:
        scanned = list(pages[: int(self.settings["toc_scan_pages"])])
        scanned_numbers = {page.page_number for page in scanned}
        try:
            response = complete_json(self.llm, toc_pages_prompt(scanned), max_tokens=500, temperature=0, task_type=TaskType.CARD_GENERATION)
        except ProviderError:
            logger.warning("TOC detection call failed; using heuristic", exc_info=True)
            response = None

        found = None
        if isinstance(response, dict):
            found = response.get("toc_pages", response.get("tocPages"))
        if isinstance(found, list):
            numbers = sorted({int(num) for num in found if isinstance(num, (int, float)) and int(num) in scanned_numbers})
            logger.debug("TOC pages (model) | pages=%s", numbers)
            return numbers

        numbers = heuristic_toc_pages(scanned, int(self.settings["toc_heuristic_max_page"]))
        logger.debug("TOC pages (heuristic) | pages=%s", numbers)
        return numbers

    def map_chapter_ranges(self, titles: Sequence[str], body: Sequence[Page]) -> List[Chapter]:
        """Ask for page ranges over the body pages; ranges are resolved to detected titles."""
        prompt = range_mapping_prompt(titles, body, int(self.settings["page_summary_chars"]))
        response = complete_json(self.llm, prompt, max_tokens=4000, temperature=0, task_type=TaskType.CHAPTER_MAPPING)
        entries = response.get("chapters") if isinstance(response, dict) else response
        if not isinstance(entries, list):
            return []

        min_words = int(self.settings["min_chapter_words"])
        method = DetectionTier.CHAPTER_MAPPING.value
        chapters: List[Chapter] = []
        used: set[str] = set()
        for entry in entries:
            if not isinstance(entry, dict):
                continue
            try:
                start = int(entry.get("start_page", entry.get("startPage")))
                end = int(entry.get("end_page", entry.get("endPage")))
            except (TypeError, ValueError):
                continue
            raw_title = " ".join(str(entry.get("title") or "").split())
            if not raw_title or start > end:
                continue
            title = match_chapter_title(raw_title, titles) or raw_title
            if title in used:
                continue
            chapter = build_chapter(title, start, end, body, method)
            if chapter.word_count < min_words:
                logger.debug("Mapped chapter too short | title=%s words=%s", title, chapter.word_count)
                continue
            used.add(title)
            chapters.append(chapter)
        return chapters

    def detect_by_chapter_mapping(self, pages: Sequence[Page]) -> Tuple[List[Chapter], Dict[str, Any]]:
        titles = self.detect_chapter_titles(pages)
        if not titles:
            return [], {}
        toc_pages = self.find_toc_pages(pages)
        last_toc = max(toc_pages, default=0)
        # front matter up to the last TOC page belongs to no chapter
        body = [page for page in pages if page.page_number > last_toc] or list(pages)
        mapped = self.map_chapter_ranges(titles, body)
        if not mapped:
            return [], {}
        max_chapters = int(self.settings["max_chapters"])
        mapped = sorted(mapped, key=lambda ch: ch.start_page)[:max_chapters]
        chapters = fill_chapter_gaps(mapped, titles, body, small_gap_pages=int(self.settings["small_gap_pages"]), max_chapters=max_chapters)
        info = {
            "detected_titles": len(titles),
            "mapped_chapters": len(mapped),
            "gap_filled": sum(1 for ch in chapters if ch.is_gap_filled),
            "toc_pages": list(toc_pages),
        }
        return chapters, info

    # Tier 2 -----------------------------------------------------------------

    def detect_by_page_windows(self, pages: Sequence[Page]) -> Tuple[List[Chapter], Dict[str, Any]]:
        if not pages:
            return [], {}
        avg_words = round(sum(page.word_count for page in pages) / len(pages))
        if avg_words > 400:
            window = 5
        elif avg_words > 200:
            window = 8
        else:
            window = 12
        overlap = max(1, int(window * 0.2))
        step = window - overlap

        chapters: List[Chapter] = []
        method = DetectionTier.PAGE_WINDOWS.value
        for start_idx in range(0, len(pages), step):
            window_pages = pages[start_idx : start_idx + window]
            start_page, end_page = window_pages[0].page_number, window_pages[-1].page_number
            chapter = build_chapter(f"Section {len(chapters) + 1} (Pages {start_page}-{end_page})", start_page, end_page, window_pages, method)
            if chapter.word_count > 200:
                chapters.append(chapter)
            if start_idx + window >= len(pages):
                break
        return chapters, {"pages_per_window": window, "overlap_pages": overlap, "avg_words_per_page": avg_words}

    # Tier 3 -----------------------------------------------------------------

    def detect_by_word_windows(self, text: str) -> Tuple[List[Chapter], Dict[str, Any]]:
        words = (text or "").split()
        total = len(words)
        if not total:
            return [], {}
        if total > 50000:
            window = 2000
        elif total > 20000:
            window = 1500
        else:
            window = 1000
        overlap = int(window * 0.1)
        step = window - overlap

        chapters: List[Chapter] = []
        method = DetectionTier.WORD_WINDOWS.value
        for start_idx in range(0, total, step):
            window_words = words[start_idx : start_idx + window]
            if len(window_words) > 100:
                end_idx = start_idx + len(window_words)
                content = " ".join(window_words)
                chapters.append(
                    Chapter(
                        title=f"Section {len(chapters) + 1} (Words {start_idx + 1}-{end_idx})",
                        start_page=0,
                        end_page=0,
                        content=content,
                        word_count=len(window_words),
                        detection_method=method,
                    )
                )
            if start_idx + window >= total:
                break
        if not chapters:
            chapters.append(Chapter(title=f"Section 1 (Words 1-{total})", start_page=0, end_page=0, content=" ".join(words), word_count=total, detection_method=method))
        return chapters, {"words_per_window": window, "overlap_words": overlap, "total_words": total}
