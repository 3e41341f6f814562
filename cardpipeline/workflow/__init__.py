from .cache import InMemoryCacheStore, PipelineCache, RedisCacheStore
from .chunking import Chunker
from .llm import LLMClient, ProviderError
from .registry import InMemoryRunRegistry, RedisRunRegistry, RunInProgressError
from .semantic_index import SemanticIndex
from .structure import StructureDetector
from .synthesis import CardSynthesizer
from .validation import CardValidator
from .vectorizer import Chunkvectorizer
from .pipeline import LearningArtifactPipeline

__all__ = [
    "CardSynthesizer",
    "CardValidator",
    "Chunker",
    "Chunkvectorizer",
    "InMemoryCacheStore",
    "InMemoryRunRegistry",
    "LLMClient",
    "LearningArtifactPipeline",
    "PipelineCache",
    "ProviderError",
    "RedisCacheStore",
    "RedisRunRegistry",
    "RunInProgressError",
    "SemanticIndex",
    "StructureDetector",
]
