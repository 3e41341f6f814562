from __future__ import annotations

from typing import Iterable, List, Optional, Protocol, Sequence

import numpy as np

from cardpipeline.utils.logging_config import get_logger
from cardpipeline.utils.types import Chunk, SearchHit

logger = get_logger(__name__)


class Embedder(Protocol):
    def encode(self, texts: Sequence[str]) -> np.ndarray:
        ...


class SemanticIndex:
    """Cosine-similarity index over the chunks of a single run.

    Vectors are L2-normalized, so similarity is a dot product. Chunks whose embedding
    fails are left out of the index; their ``embedding`` stays ``None``.
    """

    def __init__(self, embedder: Embedder) -> None:
        self.embedder = embedder
        self._chunks: List[Chunk] = []
        self._matrix: Optional[np.ndarray] = None

    def __len__(self) -> int:
        return len(self._chunks)

    @property
    def chunk_ids(self) -> List[str]:
        return [chunk.id for chunk in self._chunks]

    @staticmethod
    def _normalize(vectors: np.ndarray) -> np.ndarray:
        vectors = np.asarray(vectors, dtype=np.float32)
        if vectors.ndim == 1:
            vectors = vectors.reshape(1, -1)
        norms = np.linalg.norm(vectors, axis=1, keepdims=True)
        norms[norms == 0] = 1.0
        return vectors / norms

    def _encode_each(self, chunks: Sequence[Chunk]) -> List[Optional[np.ndarray]]:
        vectors: List[Optional[np.ndarray]] = []
        for chunk in chunks:
            try:
                vectors.append(self._normalize(self.embedder.encode([chunk.text]))[0])
            except Exception:
                logger.warning("Embedding failed; chunk excluded | chunk=%s", chunk.id, exc_info=True)
                vectors.append(None)
        return vectors

    def build(self, chunks: Sequence[Chunk]) -> "SemanticIndex":
        """Embed every chunk in place and index the ones that succeeded."""
        if not chunks:
            self._chunks, self._matrix = [], None
            return self

        try:
            batch = self._normalize(self.embedder.encode([chunk.text for chunk in chunks]))
            if batch.shape[0] != len(chunks):
                raise ValueError(f"expected {len(chunks)} embeddings, got {batch.shape[0]}")
            vectors: List[Optional[np.ndarray]] = list(batch)
        except Exception:
            logger.warning("Batch embedding failed; retrying per chunk | chunks=%s", len(chunks), exc_info=True)
            vectors = self._encode_each(chunks)

        indexed: List[Chunk] = []
        rows: List[np.ndarray] = []
        for chunk, vector in zip(chunks, vectors):
            if vector is None or not np.all(np.isfinite(vector)):
                chunk.embedding = None
                continue
            chunk.embedding = [float(value) for value in vector]
            indexed.append(chunk)
            rows.append(vector)

        self._chunks = indexed
        self._matrix = np.vstack(rows) if rows else None
        logger.info("Indexed     | chunks=%s excluded=%s", len(indexed), len(chunks) - len(indexed))
        return self

    def query(self, text: str, k: int = 5, exclude_ids: Optional[Iterable[str]] = None) -> List[SearchHit]:
        """Top ``k`` chunks by similarity; ties keep chunk order."""
        if self._matrix is None or k <= 0 or not (text or "").strip():
            return []
        excluded = set(exclude_ids or ())
        try:
            query_vector = self._normalize(self.embedder.encode([text]))[0]
        except Exception:
            logger.warning("Query embedding failed; no context retrieved", exc_info=True)
            return []
        scores = self._matrix @ query_vector
        # stable sort on negated scores keeps document order among equal scores
        order = np.argsort(-scores, kind="stable")
        hits: List[SearchHit] = []
        for position in order:
            chunk = self._chunks[int(position)]
            if chunk.id in excluded:
                continue
            hits.append(SearchHit(chunk_id=chunk.id, similarity=float(scores[position]), text=chunk.text, chapter_title=chunk.chapter_title))
            if len(hits) >= k:
                break
        return hits
