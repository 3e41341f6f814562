from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import Iterator, Optional, Protocol

from redis import Redis

from cardpipeline.utils.logging_config import get_logger

logger = get_logger(__name__)


class RunInProgressError(RuntimeError):
    """A run for the same key is already active."""

    def __init__(self, run_key: str) -> None:
        super().__init__(f"A card generation run is already in progress for {run_key}")
        self.run_key = run_key


def run_key_for(content_id: str, upload_timestamp: Optional[str | int] = None) -> str:
    if upload_timestamp in (None, ""):
        return content_id
    return f"{content_id}:{upload_timestamp}"


class RunRegistry(Protocol):
    def try_acquire(self, run_key: str) -> bool:
        ...

    def release(self, run_key: str) -> None:
        ...


class InMemoryRunRegistry:
    """Process-local registry of active run keys."""

    def __init__(self) -> None:
        self._active: set[str] = set()
        self._lock = threading.Lock()

    def try_acquire(self, run_key: str) -> bool:
        with self._lock:
            if run_key in self._active:
                return False
            self._active.add(run_key)
            return True

    def release(self, run_key: str) -> None:
        with self._lock:
            self._active.discard(run_key)

    def is_active(self, run_key: str) -> bool:
        with self._lock:
            return run_key in self._active


class RedisRunRegistry:
    """Cross-worker registry; a key expires after ``ttl_seconds`` if a worker dies mid-run."""

    def __init__(self, url: str, ttl_seconds: int = 6 * 3600, prefix: str = "cardpipeline:run", client: Optional[Redis] = None) -> None:
        self.ttl_seconds = ttl_seconds
        self.prefix = prefix
        self._client = client or Redis.from_url(url, decode_responses=True)

    def _key(self, run_key: str) -> str:
        return f"{self.prefix}:{run_key}"

    def try_acquire(self, run_key: str) -> bool:
        return bool(self._client.set(self._key(run_key), "1", nx=True, ex=self.ttl_seconds))

    def release(self, run_key: str) -> None:
        self._client.delete(self._key(run_key))


@contextmanager
def acquire_run(registry: RunRegistry, run_key: str) -> Iterator[str]:
    """Hold ``run_key`` for the duration of the block; fail fast if it is taken."""
    if not registry.try_acquire(run_key):
        logger.warning("Run rejected | key=%s reason=in_progress", run_key)
        raise RunInProgressError(run_key)
    logger.debug("Run acquired | key=%s", run_key)
    try:
        yield run_key
    finally:
        registry.release(run_key)
        logger.debug("Run released | key=%s", run_key)
