from __future__ import annotations

import re
from typing import Any, Dict, List, Optional, Sequence

from cardpipeline.utils.logging_config import get_logger
from cardpipeline.utils.types import Chapter, Chunk
from cardpipeline.workflow.utils.settings import merged_settings

logger = get_logger(__name__)

_PARAGRAPH_BREAK = re.compile(r"\n\s*\n")
_SENTENCE_BREAK = re.compile(r"(?<=[.!?])\s+")
_ENTITY = re.compile(r"\b[A-Z][a-z]+(?:\s+[A-Z][a-z]+)*\b")
_ENTITY_STOPWORDS = {"The", "This", "That", "Chapter", "Section"}


def extract_entities(text: str) -> List[str]:
    """Capitalized phrases, first-seen order."""
    entities = dict.fromkeys(_ENTITY.findall(text))
    return [entity for entity in entities if 2 < len(entity) < 50 and entity not in _ENTITY_STOPWORDS]


class Chunker:
    """Splits chapter content into overlapping, paragraph-aligned chunks."""

    def __init__(self, settings: Optional[Dict[str, Any]] = None) -> None:
        self.settings = merged_settings(settings)
        self.target_chars = int(self.settings["chunk_target_chars"])
        self.overlap_words = int(self.settings["chunk_overlap_chars"]) // 5
        self.pseudo_paragraph_chars = int(self.settings["pseudo_paragraph_chars"])
        self.min_paragraph_chars = int(self.settings["min_paragraph_chars"])
        self.min_chunk_words = int(self.settings["min_chunk_words"])
        self.min_chunk_chars = int(self.settings["min_chunk_chars"])

    @staticmethod
    def _normalize(text: str) -> List[str]:
        return [" ".join(block.split()) for block in _PARAGRAPH_BREAK.split(text or "")]

    def split_paragraphs(self, content: str) -> List[str]:
        blocks = self._normalize(content)
        paragraphs = [block for block in blocks if len(block) > self.min_paragraph_chars]
        joined = " ".join(block for block in blocks if block)
        if len(paragraphs) <= 1 and len(joined) > 1000:
            paragraphs = self._sentence_groups(joined)
        return paragraphs

    def _sentence_groups(self, text: str) -> List[str]:
        sentences = [sentence.strip() for sentence in _SENTENCE_BREAK.split(text) if len(sentence.strip()) > 20]
        groups: List[str] = []
        current = ""
        for sentence in sentences:
            if len(current) + len(sentence) > self.pseudo_paragraph_chars and len(current) > 100:
                groups.append(current)
                current = sentence
            else:
                current = f"{current} {sentence}" if current else sentence
        if current:
            groups.append(current)
        return [group for group in groups if len(group) > self.min_paragraph_chars]

    def _chunk_chapter(self, chapter: Chapter) -> List[str]:
        texts: List[str] = []
        buffer = ""
        for paragraph in self.split_paragraphs(chapter.content):
            if len(buffer) + len(paragraph) + 2 > self.target_chars and len(buffer) > 300:
                texts.append(buffer.strip())
                tail = buffer.split()[-self.overlap_words :] if self.overlap_words else []
                buffer = " ".join(tail) + "\n\n" + paragraph if tail else paragraph
            else:
                buffer = f"{buffer}\n\n{paragraph}" if buffer else paragraph
        if len(buffer.strip()) > 100:
            texts.append(buffer.strip())
        return texts

    def chunk(self, chapters: Sequence[Chapter]) -> List[Chunk]:
        chunks: List[Chunk] = []
        dropped = 0
        for chapter_index, chapter in enumerate(chapters):
            for text in self._chunk_chapter(chapter):
                word_count = len(text.split())
                if word_count < self.min_chunk_words or len(text) < self.min_chunk_chars:
                    dropped += 1
                    continue
                chunks.append(
                    Chunk(
                        id=f"chunk_{len(chunks)}",
                        text=text,
                        chapter_title=chapter.title,
                        chapter_index=chapter_index,
                        char_count=len(text),
                        word_count=word_count,
                        entities=extract_entities(text),
                    )
                )
        logger.info("Chunked     | chapters=%s chunks=%s dropped=%s", len(chapters), len(chunks), dropped)
        return chunks
