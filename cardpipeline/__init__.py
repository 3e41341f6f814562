from __future__ import annotations

from cardpipeline.utils.cards import Card, CardType
from cardpipeline.utils.types import Chapter, Chunk, DocumentStructure, ExtractedDocument, Page, PipelineResult
from cardpipeline.workflow.pipeline import LearningArtifactPipeline

__all__ = [
    "Card",
    "CardType",
    "Chapter",
    "Chunk",
    "DocumentStructure",
    "ExtractedDocument",
    "LearningArtifactPipeline",
    "Page",
    "PipelineResult",
]
