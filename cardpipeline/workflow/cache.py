from __future__ import annotations

import datetime as dt
import hashlib
import json
import threading
from typing import Any, Dict, List, Optional, Protocol, Sequence

from redis import Redis
from redis.exceptions import RedisError

from cardpipeline.utils.cards import Card, dump_cards, load_cards
from cardpipeline.utils.logging_config import get_logger
from cardpipeline.utils.types import DocumentStructure, PipelineResult

logger = get_logger(__name__)

KIND_STRUCTURE = "structure"
KIND_FINAL = "final"


def tier_kind(tier_name: str) -> str:
    return f"tier:{tier_name}"


def content_id(title: str, author: str, source: str = "") -> str:
    """Stable identifier for a piece of content; the key of every cache entry."""
    seed = f"{title}-{author}-{source}"
    return hashlib.md5(seed.encode("utf-8")).hexdigest()


class CacheStore(Protocol):
    def get(self, key: str) -> Any:
        ...

    def set(self, key: str, value: Any) -> None:
        ...


class InMemoryCacheStore:
    """Process-local store; values are kept JSON-encoded like the Redis store."""

    def __init__(self) -> None:
        self._data: Dict[str, str] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Any:
        with self._lock:
            raw = self._data.get(key)
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("Corrupt cache entry ignored | key=%s", key)
            return None

    def set(self, key: str, value: Any) -> None:
        encoded = json.dumps(value, separators=(",", ":"), sort_keys=True)
        with self._lock:
            self._data[key] = encoded

    def keys(self) -> List[str]:
        with self._lock:
            return sorted(self._data)


class RedisCacheStore:
    """JSON values in Redis with a TTL; Redis failures read as a miss."""

    def __init__(self, url: str, ttl_seconds: Optional[int] = None, client: Optional[Redis] = None) -> None:
        self.url = url
        self.ttl_seconds = ttl_seconds
        self._client = client or Redis.from_url(url, decode_responses=True)

    def get(self, key: str) -> Any:
        try:
            raw = self._client.get(key)
        except RedisError:
            logger.warning("Cache read failed | key=%s", key, exc_info=True)
            return None
        if not raw:
            return None
        try:
            return json.loads(raw)
        except (TypeError, json.JSONDecodeError):
            logger.warning("Corrupt cache entry ignored | key=%s", key)
            return None

    def set(self, key: str, value: Any) -> None:
        encoded = json.dumps(value, separators=(",", ":"), sort_keys=True)
        try:
            self._client.set(key, encoded, ex=self.ttl_seconds or None)
        except RedisError:
            logger.warning("Cache write failed | key=%s", key, exc_info=True)


class PipelineCache:
    """Typed access to the structure, tier and final-result cache entries."""

    def __init__(self, store: CacheStore, namespace: str = "cardpipeline") -> None:
        self.store = store
        self.namespace = namespace

    def key(self, content_id: str, kind: str) -> str:
        return f"{self.namespace}:{content_id}:{kind}"

    def _read(self, content_id: str, kind: str) -> Any:
        entry = self.store.get(self.key(content_id, kind))
        if not isinstance(entry, dict) or "payload" not in entry:
            return None
        return entry["payload"]

    def _write(self, content_id: str, kind: str, payload: Any) -> None:
        entry = {"cached_at": dt.datetime.now(dt.timezone.utc).isoformat(), "payload": payload}
        self.store.set(self.key(content_id, kind), entry)

    def get_structure(self, content_id: str) -> Optional[DocumentStructure]:
        payload = self._read(content_id, KIND_STRUCTURE)
        if payload is None:
            return None
        try:
            structure = DocumentStructure.from_dict(payload)
        except (KeyError, TypeError, ValueError):
            logger.warning("Cached structure unreadable; recomputing | content=%s", content_id)
            return None
        if not structure.chapters:
            return None
        logger.info("Structure cache hit | content=%s chapters=%s method=%s", content_id, structure.total_chapters, structure.detection_method)
        return structure

    def set_structure(self, content_id: str, structure: DocumentStructure) -> None:
        self._write(content_id, KIND_STRUCTURE, structure.to_dict())

    def get_final(self, content_id: str) -> Optional[PipelineResult]:
        payload = self._read(content_id, KIND_FINAL)
        if payload is None:
            return None
        try:
            result = PipelineResult.from_dict(payload, from_cache=True)
        except (KeyError, TypeError, ValueError):
            logger.warning("Cached result unreadable; recomputing | content=%s", content_id)
            return None
        logger.info("Final cache hit | content=%s cards=%s", content_id, len(result.cards))
        return result

    def set_final(self, content_id: str, result: PipelineResult) -> None:
        self._write(content_id, KIND_FINAL, result.to_dict())

    def set_tier(self, content_id: str, tier_name: str, cards: Sequence[Card]) -> None:
        self._write(content_id, tier_kind(tier_name), {"tier": tier_name, "card_count": len(cards), "cards": dump_cards(cards)})
        logger.info("Tier cached | content=%s tier=%s cards=%s", content_id, tier_name, len(cards))

    def get_tier(self, content_id: str, tier_name: str) -> Optional[List[Card]]:
        payload = self._read(content_id, tier_kind(tier_name))
        if not isinstance(payload, dict):
            return None
        try:
            return load_cards(payload.get("cards") or [])
        except ValueError:
            return None
