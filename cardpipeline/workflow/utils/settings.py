from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Dict, Optional


def _env_flag(name: str, default: str = "") -> bool:
    return os.getenv(name, default).lower() in {"1", "true", "yes"}


DEFAULT_PIPELINE_SETTINGS: Dict[str, Any] = {
    # providers
    "openai_api_key": os.getenv("OPENAI_API_KEY", ""),
    "card_model": os.getenv("OPENAI_CARD_MODEL", "gpt-4.1-mini"),
    "mapping_model": os.getenv("OPENAI_MAPPING_MODEL", "gpt-4o"),
    "embedding_model": os.getenv("EMBEDDING_MODEL", "sentence-transformers/all-MiniLM-L6-v2"),
    "vector_batch_size": int(os.getenv("VECTOR_BATCH_SIZE", 32)),
    # cache
    "cache_redis_url": os.getenv("CACHE_REDIS_URL", "redis://localhost:6379/3"),
    "cache_ttl_seconds": int(os.getenv("CACHE_TTL_SECONDS", 7 * 24 * 3600)),
    "debug_tier_cache": _env_flag("DEBUG_CARD_GENERATION"),
    "run_lock_ttl_seconds": int(os.getenv("RUN_LOCK_TTL_SECONDS", 6 * 3600)),
    "progress_redis_url": os.getenv("PROGRESS_REDIS_URL", "redis://localhost:6379/2"),
    # structure detection
    "title_scan_pages": 10,
    "toc_scan_pages": 15,
    "toc_heuristic_max_page": 10,
    "page_summary_chars": 350,
    "min_chapter_words": 500,
    "small_gap_pages": 10,
    "max_chapters": 200,
    # chunking
    "chunk_target_chars": 3500,
    "chunk_overlap_chars": 300,
    "pseudo_paragraph_chars": 400,
    "min_paragraph_chars": 50,
    "min_chunk_words": 30,
    "min_chunk_chars": 100,
    # synthesis
    "category": "general",
    "chunks_per_flashcard": 4,
    "related_top_k": 3,
    "distractor_top_k": 5,
    "enable_applications": _env_flag("ENABLE_APPLICATION_CARDS"),
    "flashcards_per_application": 3,
    "max_application_groups_per_chapter": 5,
    "max_flashcards_per_chapter": 40,
    "overview_source_chunks": 5,
    # validation
    "validate_cards": not _env_flag("SKIP_CARD_VALIDATION"),
    # backpressure
    "generation_concurrency": int(os.getenv("GENERATION_CONCURRENCY", 3)),
    "batch_delay_seconds": float(os.getenv("GENERATION_BATCH_DELAY", 1.0)),
}

_ALIASES = {
    "doc_id": "content_id",
    "document_id": "content_id",
    "debug": "debug_tier_cache",
    "qa_workers": "generation_concurrency",
    "concurrency": "generation_concurrency",
}


def normalize_settings(settings: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Normalize common alias keys."""
    if settings is None:
        return {}
    normalized = dict(settings)
    for alias, canonical in _ALIASES.items():
        if normalized.get(alias) is not None and normalized.get(canonical) is None:
            normalized[canonical] = normalized[alias]
    return normalized


def merged_settings(overrides: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Defaults overlaid with non-null overrides."""
    merged = dict(DEFAULT_PIPELINE_SETTINGS)
    if overrides:
        merged.update({k: v for k, v in normalize_settings(overrides).items() if v is not None})
    for key, value in list(merged.items()):
        if isinstance(value, Path):
            merged[key] = str(value)
    return merged
