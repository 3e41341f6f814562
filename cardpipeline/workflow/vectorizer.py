from __future__ import annotations

from typing import Optional, Sequence

import numpy as np
from sentence_transformers import SentenceTransformer

from cardpipeline.utils.logging_config import get_logger

logger = get_logger(__name__)


class Chunkvectorizer:
    """Encodes chunk text into L2-normalized sentence embeddings."""

    _MODEL_CACHE: dict[str, SentenceTransformer] = {}

    def __init__(self, model_name: str = "sentence-transformers/all-MiniLM-L6-v2", batch_size: int = 32) -> None:
        self.model_name = model_name
        self.batch_size = batch_size
        if model_name in self._MODEL_CACHE:
            self._model = self._MODEL_CACHE[model_name]
            logger.info("Reusing cached embedding model %s", model_name)
        else:
            self._model = SentenceTransformer(model_name)
            self._MODEL_CACHE[model_name] = self._model
            logger.info("Loaded embedding model %s", model_name)

    @property
    def dimension(self) -> Optional[int]:
        return self._model.get_sentence_embedding_dimension()

    def encode(self, texts: Sequence[str]) -> np.ndarray:
        if not texts:
            return np.zeros((0, self.dimension or 0), dtype=np.float32)
        return self._model.encode(list(texts), batch_size=self.batch_size, convert_to_numpy=True, normalize_embeddings=True)
