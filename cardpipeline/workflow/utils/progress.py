from __future__ import annotations

import json
import os
from typing import Any, Dict

from redis import Redis
from redis.exceptions import RedisError

from cardpipeline.utils.logging_config import get_logger

logger = get_logger(__name__)

PROGRESS_REDIS_URL = os.getenv("PROGRESS_REDIS_URL", "redis://localhost:6379/2")


def emit_progress(job_id: str | None, content_id: str | None, status: str, current_step: str, progress: float | int = 0, extra: Dict[str, Any] | None = None, redis_url: str | None = None) -> None:
    """Push a progress snapshot to Redis hash + pubsub channel."""
    if not job_id:
        return

    payload: Dict[str, Any] = {
        "content_id": content_id,
        "progress": progress,
        "status": status,
        "current_step": current_step,
    }

    if extra:
        payload.update(extra)

    try:
        client = Redis.from_url(redis_url or PROGRESS_REDIS_URL, decode_responses=True)
        key = f"job:{job_id}"
        client.hset(key, mapping={k: str(v) for k, v in payload.items() if v is not None})
        client.publish(f"progress:{job_id}", json.dumps(payload))
    except RedisError:
        logger.warning("Failed to publish progress | job=%s step=%s", job_id, current_step, exc_info=True)
