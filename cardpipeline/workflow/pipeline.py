from __future__ import annotations

import time
from typing import Any, Callable, Dict, Optional

from cardpipeline.utils.logging_config import get_logger
from cardpipeline.utils.types import ExtractedDocument, PipelineResult
from cardpipeline.workflow.cache import PipelineCache, RedisCacheStore, content_id as derive_content_id
from cardpipeline.workflow.chunking import Chunker
from cardpipeline.workflow.llm import CompletionProvider, LLMClient
from cardpipeline.workflow.registry import InMemoryRunRegistry, RunRegistry, acquire_run, run_key_for
from cardpipeline.workflow.semantic_index import Embedder, SemanticIndex
from cardpipeline.workflow.structure import StructureDetector
from cardpipeline.workflow.synthesis import CardSynthesizer
from cardpipeline.workflow.utils.progress import emit_progress
from cardpipeline.workflow.utils.settings import merged_settings
from cardpipeline.workflow.validation import CardValidator
from cardpipeline.workflow.vectorizer import Chunkvectorizer

logger = get_logger(__name__)

FINAL_CARDS = "final-cards"


class LearningArtifactPipeline:
    """Structure detection -> chunking -> indexing -> tiered synthesis -> validation.

    Stages run strictly in sequence for one content id. A cached final result is
    returned untouched; otherwise the run holds the registry key for its duration.
    """

    def __init__(
        self,
        llm: Optional[CompletionProvider] = None,
        embedder: Optional[Embedder] = None,
        *,
        settings: Optional[Dict[str, Any]] = None,
        cache: Optional[PipelineCache] = None,
        registry: Optional[RunRegistry] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.settings = merged_settings(settings)
        self.llm = llm or LLMClient.from_settings(self.settings)
        self._embedder = embedder
        self.cache = cache or PipelineCache(RedisCacheStore(self.settings["cache_redis_url"], int(self.settings["cache_ttl_seconds"])))
        self.registry = registry or InMemoryRunRegistry()
        self.sleep = sleep

    @property
    def embedder(self) -> Embedder:
        if self._embedder is None:
            self._embedder = Chunkvectorizer(self.settings["embedding_model"], int(self.settings["vector_batch_size"]))
        return self._embedder

    def run(
        self,
        document: ExtractedDocument | Dict[str, Any],
        *,
        title: str,
        author: str = "",
        source: str = "",
        content_id: Optional[str] = None,
        upload_timestamp: Optional[str] = None,
        job_id: Optional[str] = None,
    ) -> PipelineResult:
        if not isinstance(document, ExtractedDocument):
            document = ExtractedDocument.from_dict(document)
        cid = content_id or self.settings.get("content_id") or derive_content_id(title, author, source)
        progress_url = self.settings.get("progress_redis_url")

        cached = self.cache.get_final(cid)
        if cached is not None:
            emit_progress(job_id, cid, "COMPLETED", "cache", 100, {"cards": len(cached.cards), "from_cache": True}, redis_url=progress_url)
            return cached

        with acquire_run(self.registry, run_key_for(cid, upload_timestamp)):
            logger.info("Stage start | content=%s title=%s pages=%s", cid, title, len(document.pages))
            try:
                result = self._run_stages(document, cid, title=title, author=author, job_id=job_id)
            except Exception:
                logger.exception("Pipeline failed | content=%s", cid)
                emit_progress(job_id, cid, "FAILED", "error", 0, redis_url=progress_url)
                raise

        emit_progress(job_id, cid, "COMPLETED", "done", 100, {"cards": len(result.cards), "chapters": len(result.chapters)}, redis_url=progress_url)
        return result

    def _run_stages(self, document: ExtractedDocument, cid: str, *, title: str, author: str, job_id: Optional[str]) -> PipelineResult:
        progress_url = self.settings.get("progress_redis_url")

        emit_progress(job_id, cid, "RUNNING", "structure", 5, redis_url=progress_url)
        structure = StructureDetector(self.llm, self.settings, cache=self.cache).detect(document.pages, document.text, content_id=cid)

        emit_progress(job_id, cid, "RUNNING", "chunking", 20, {"chapters": structure.total_chapters}, redis_url=progress_url)
        chunks = Chunker(self.settings).chunk(structure.chapters)

        emit_progress(job_id, cid, "RUNNING", "indexing", 30, {"chunks": len(chunks)}, redis_url=progress_url)
        index = SemanticIndex(self.embedder).build(chunks)

        emit_progress(job_id, cid, "RUNNING", "synthesis", 40, redis_url=progress_url)
        synthesizer = CardSynthesizer(self.llm, index, self.settings, book_title=title, author=author, cache=self.cache, content_id=cid, sleep=self.sleep)
        cards = synthesizer.synthesize(chunks, structure.chapters)

        emit_progress(job_id, cid, "RUNNING", "validation", 80, {"cards": len(cards)}, redis_url=progress_url)
        final_cards = CardValidator(self.llm, self.settings, sleep=self.sleep).finalize(cards, chunks)

        result = PipelineResult(
            cards=final_cards,
            chapters=structure.chapters,
            chunk_mapping=PipelineResult.build_chunk_mapping(chunks),
            content_id=cid,
        )
        self.cache.set_final(cid, result)
        if self.settings.get("debug_tier_cache"):
            self.cache.set_tier(cid, FINAL_CARDS, final_cards)
        logger.info("Stage done  | content=%s method=%s chapters=%s chunks=%s cards=%s", cid, structure.detection_method, structure.total_chapters, len(chunks), len(final_cards))
        return result
