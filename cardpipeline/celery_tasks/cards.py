from __future__ import annotations

from typing import Any, Dict, Optional

from celery_app import celery_app  # type: ignore
from cardpipeline.utils.logging_config import get_logger
from cardpipeline.workflow.pipeline import LearningArtifactPipeline
from cardpipeline.workflow.registry import RedisRunRegistry
from cardpipeline.workflow.utils.request_models import GenerateCardsRequest
from cardpipeline.workflow.utils.settings import merged_settings, normalize_settings

logger = get_logger(__name__)


def build_pipeline(settings: Dict[str, Any]) -> LearningArtifactPipeline:
    """Worker pipeline: Redis cache and a Redis run registry shared by all workers."""
    registry = RedisRunRegistry(settings["cache_redis_url"], ttl_seconds=int(settings["run_lock_ttl_seconds"]))
    return LearningArtifactPipeline(settings=settings, registry=registry)


@celery_app.task(name="cardpipeline.generate-cards")
def generate_cards_task(payload: dict, settings: Optional[dict] = None) -> dict:
    """Run the card pipeline for one document and return the serialized result."""
    request = GenerateCardsRequest.model_validate(payload)
    overrides = {**normalize_settings(settings or {}), **normalize_settings(request.options)}
    if request.category:
        overrides["category"] = request.category
    merged = merged_settings(overrides)

    logger.info("Task start  | job=%s title=%s pages=%s", request.job_id, request.title, len(request.document.pages))
    pipeline = build_pipeline(merged)
    result = pipeline.run(
        request.document.to_document(),
        title=request.title,
        author=request.author,
        source=request.source,
        content_id=request.content_id,
        upload_timestamp=request.upload_timestamp,
        job_id=request.job_id,
    )
    payload_out = result.to_dict()
    payload_out["from_cache"] = result.from_cache
    logger.info("Task done   | job=%s content=%s cards=%s cached=%s", request.job_id, result.content_id, len(result.cards), result.from_cache)
    return payload_out
