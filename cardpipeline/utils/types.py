from __future__ import annotations

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence

from cardpipeline.utils.cards import Card, dump_cards, load_cards


class DetectionTier(str, Enum):
    """Structure detection tiers, in fallback order."""

    CHAPTER_MAPPING = "CHAPTER_MAPPING"
    PAGE_WINDOWS = "PAGE_WINDOWS"
    WORD_WINDOWS = "WORD_WINDOWS"


@dataclass(frozen=True)
class Page:
    """One page of extracted text, as handed over by the extractor."""

    page_number: int
    text: str
    lines: tuple[str, ...] = ()
    word_count: int = 0

    @classmethod
    def from_dict(cls, item: Dict[str, Any]) -> "Page":
        text = str(item.get("text") or "")
        lines = item.get("lines")
        if lines is None:
            lines = text.splitlines()
        word_count = item.get("word_count", item.get("wordCount"))
        return cls(
            page_number=int(item.get("page_number", item.get("pageNumber", 0)) or 0),
            text=text,
            lines=tuple(str(line) for line in lines),
            word_count=int(word_count) if word_count is not None else len(text.split()),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {"page_number": self.page_number, "text": self.text, "lines": list(self.lines), "word_count": self.word_count}


@dataclass
class Chapter:
    title: str
    start_page: int
    end_page: int
    content: str
    word_count: int
    detection_method: str
    is_gap_filled: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, item: Dict[str, Any]) -> "Chapter":
        return cls(
            title=str(item["title"]),
            start_page=int(item.get("start_page", 0)),
            end_page=int(item.get("end_page", 0)),
            content=str(item.get("content", "")),
            word_count=int(item.get("word_count", 0)),
            detection_method=str(item.get("detection_method", "")),
            is_gap_filled=bool(item.get("is_gap_filled", False)),
        )


@dataclass
class DocumentStructure:
    """Detected chapters plus the tier that produced them."""

    chapters: List[Chapter]
    detection_method: str
    chunk_info: Dict[str, Any] = field(default_factory=dict)

    @property
    def total_chapters(self) -> int:
        return len(self.chapters)

    @property
    def average_chapter_length(self) -> int:
        if not self.chapters:
            return 0
        return round(sum(ch.word_count for ch in self.chapters) / len(self.chapters))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "chapters": [ch.to_dict() for ch in self.chapters],
            "detection_method": self.detection_method,
            "chunk_info": dict(self.chunk_info),
        }

    @classmethod
    def from_dict(cls, item: Dict[str, Any]) -> "DocumentStructure":
        return cls(
            chapters=[Chapter.from_dict(ch) for ch in item.get("chapters") or []],
            detection_method=str(item.get("detection_method", "")),
            chunk_info=dict(item.get("chunk_info") or {}),
        )


@dataclass
class Chunk:
    """Bounded span of a chapter used for generation and retrieval."""

    id: str
    text: str
    chapter_title: str
    chapter_index: int
    char_count: int
    word_count: int
    entities: List[str] = field(default_factory=list)
    embedding: Optional[List[float]] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, item: Dict[str, Any]) -> "Chunk":
        embedding = item.get("embedding")
        return cls(
            id=str(item["id"]),
            text=str(item.get("text", "")),
            chapter_title=str(item.get("chapter_title", "")),
            chapter_index=int(item.get("chapter_index", 0)),
            char_count=int(item.get("char_count", 0)),
            word_count=int(item.get("word_count", 0)),
            entities=list(item.get("entities") or []),
            embedding=[float(v) for v in embedding] if embedding is not None else None,
        )


@dataclass(frozen=True)
class SearchHit:
    chunk_id: str
    similarity: float
    text: str
    chapter_title: str


@dataclass
class ExtractedDocument:
    """Input contract of the text extractor."""

    text: str
    pages: List[Page] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def has_page_structure(self) -> bool:
        return bool(self.pages)

    @classmethod
    def from_dict(cls, item: Dict[str, Any]) -> "ExtractedDocument":
        pages = [page if isinstance(page, Page) else Page.from_dict(page) for page in item.get("pages") or []]
        text = str(item.get("text") or "")
        if not text and pages:
            text = "\n\n".join(page.text for page in pages)
        return cls(text=text, pages=pages, metadata=dict(item.get("metadata") or {}))


@dataclass
class PipelineResult:
    """Output contract handed to the persistence collaborator."""

    cards: List[Card]
    chapters: List[Chapter]
    chunk_mapping: Dict[str, Chunk]
    content_id: str = ""
    from_cache: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "content_id": self.content_id,
            "cards": dump_cards(self.cards),
            "chapters": [ch.to_dict() for ch in self.chapters],
            "chunk_mapping": {chunk_id: chunk.to_dict() for chunk_id, chunk in self.chunk_mapping.items()},
        }

    @classmethod
    def from_dict(cls, item: Dict[str, Any], *, from_cache: bool = False) -> "PipelineResult":
        mapping = item.get("chunk_mapping") or {}
        return cls(
            cards=load_cards(item.get("cards") or []),
            chapters=[Chapter.from_dict(ch) for ch in item.get("chapters") or []],
            chunk_mapping={str(key): Chunk.from_dict(value) for key, value in mapping.items()},
            content_id=str(item.get("content_id", "")),
            from_cache=from_cache,
        )

    @staticmethod
    def build_chunk_mapping(chunks: Sequence[Chunk]) -> Dict[str, Chunk]:
        return {chunk.id: chunk for chunk in chunks}
