"""
Pytest configuration and shared doubles for the docqa test suite.

Provides settings built from a controlled environment plus fake embedding
providers, vector indexes and stores so that no test touches watsonx.ai,
Milvus or a sentence-transformers download.
"""

from unittest.mock import Mock

import numpy as np
import pytest

from docqa.config import Settings
from docqa.errors import EmbeddingUnavailable
from docqa.models import DocumentChunk, Metric, ScoredMatch
from docqa.rag.context import ContextAssembler
from docqa.rag.embeddings import EmbeddingProvider, FallbackEmbeddingPolicy
from docqa.rag.generator import AnswerGenerator
from docqa.rag.pipeline import Pipeline
from docqa.rag.relevance import RelevanceFilter
from docqa.rag.vectorstore import IndexCatalog, VectorIndex, VectorStore

CHAT_MODEL = "mistralai/mixtral-8x7b-instruct-v01"

_ENV_KEYS = [
    "IBM_CLOUD_API_KEY", "WATSONX_REGION", "WATSONX_PROJECT_ID",
    "WATSONX_EMBED_MODEL", "WATSONX_GEN_MODEL", "WATSONX_GEN_FALLBACK_MODELS",
    "LOCAL_EMBED_MODEL",
    "VECTOR_BACKEND", "MILVUS_HOST", "MILVUS_PORT", "MILVUS_DB", "MILVUS_TLS",
    "FAISS_DIR", "VECTOR_METRIC", "RELEVANCE_THRESHOLD", "TOP_K",
    "DEBUG_EXCERPT_CHARS", "TEMPERATURE", "MAX_NEW_TOKENS",
    "GENERATION_MAX_RETRIES", "GENERATION_TIMEOUT",
    "EMBEDDING_MAX_RETRIES", "EMBEDDING_TIMEOUT",
    "JSON_INDEX_NAME", "JSON_KEY_PREFIX", "PDF_INDEX_NAME", "PDF_KEY_PREFIX",
    "JSON_CONTENT_FIELD", "JSON_TITLE_FIELD", "JSON_CHUNK_SIZE", "JSON_CHUNK_OVERLAP",
    "PDF_CHUNK_SIZE", "PDF_CHUNK_OVERLAP",
]


@pytest.fixture
def clean_env(monkeypatch):
    for key in _ENV_KEYS:
        monkeypatch.delenv(key, raising=False)
    return monkeypatch


@pytest.fixture
def settings(clean_env, tmp_path) -> Settings:
    clean_env.setenv("IBM_CLOUD_API_KEY", "test-key")
    clean_env.setenv("WATSONX_PROJECT_ID", "test-project")
    clean_env.setenv("WATSONX_GEN_MODEL", CHAT_MODEL)
    clean_env.setenv("GENERATION_MAX_RETRIES", "1")
    clean_env.setenv("EMBEDDING_MAX_RETRIES", "0")
    clean_env.setenv("FAISS_DIR", str(tmp_path / "faiss"))
    return Settings.from_env()


def make_chunk(chunk_id: str, content: str, title: str | None = None, **meta) -> DocumentChunk:
    metadata = dict(meta)
    if title:
        metadata["title"] = title
    return DocumentChunk(chunk_id=chunk_id, content=content, metadata=metadata)


def make_match(chunk_id: str, score: float, content: str = "text", title: str | None = None) -> ScoredMatch:
    return ScoredMatch(chunk=make_chunk(chunk_id, content, title), score=score)


class FakeProvider(EmbeddingProvider):
    def __init__(self, model_id: str, dim: int = 4, fail: bool = False):
        self.model_id = model_id
        self.dim = dim
        self.fail = fail
        self.calls: list[str] = []

    def embed(self, text: str) -> np.ndarray:
        self.calls.append(text)
        if self.fail:
            raise EmbeddingUnavailable(f"{self.model_id} is down")
        vec = np.zeros(self.dim, dtype=np.float32)
        vec[len(text) % self.dim] = 1.0
        return vec


class FakeIndex(VectorIndex):
    def __init__(self, name: str, matches: list[ScoredMatch] | None = None, metric: Metric = Metric.COSINE):
        self.name = name
        self.metric = metric
        self.matches = list(matches or [])
        self.searches: list[tuple[np.ndarray, int]] = []
        self.error: Exception | None = None

    def search(self, query_vector, k=3):
        self.searches.append((query_vector, k))
        if self.error is not None:
            raise self.error
        return self.matches[:k]

    def upsert(self, chunks, vectors):
        for chunk in chunks:
            self.matches.append(ScoredMatch(chunk=chunk, score=1.0))
        return len(chunks)

    def count(self):
        return len(self.matches)


class FakeStore(VectorStore):
    def __init__(self, indexes: dict[str, FakeIndex] | None = None):
        super().__init__(Metric.COSINE)
        self.fake_indexes = dict(indexes or {})
        self.open = False
        self.connects = 0
        self.closes = 0

    @property
    def is_open(self):
        return self.open

    def _open(self):
        self.connects += 1
        self.open = True

    def _close(self):
        self.closes += 1
        self.open = False

    def _make_index(self, name):
        if name not in self.fake_indexes:
            self.fake_indexes[name] = FakeIndex(name)
        return self.fake_indexes[name]


def generation_response(text: str) -> dict:
    return {"results": [{"generated_text": text}]}


@pytest.fixture
def model_client():
    client = Mock()
    client.generate.return_value = generation_response(
        "[INST] ignored prompt [/INST] X reduces latency and improves throughput."
    )
    return client


@pytest.fixture
def primary():
    return FakeProvider("ibm/granite-embedding-30m-english")


@pytest.fixture
def local():
    return FakeProvider("sentence-transformers/all-MiniLM-L6-v2")


@pytest.fixture
def json_index(settings):
    return FakeIndex(settings.json_index_name)


@pytest.fixture
def store(settings, json_index):
    return FakeStore({settings.json_index_name: json_index})


@pytest.fixture
def make_pipeline(settings, store, primary, local, model_client):
    def _make(threshold: float = 0.5, metric: Metric = Metric.COSINE, chat_model: str = CHAT_MODEL, generator=None):
        factory = Mock(return_value=local)
        pipeline = Pipeline(
            store=store,
            catalog=IndexCatalog.from_settings(settings, store),
            embeddings=FallbackEmbeddingPolicy(primary, factory),
            relevance=RelevanceFilter.for_metric(metric, threshold),
            assembler=ContextAssembler(settings.debug_excerpt_chars),
            generator=generator or AnswerGenerator(settings, client=model_client, retry_delay=0),
            chat_model=chat_model,
            default_k=settings.top_k,
        )
        pipeline.fallback_factory = factory
        return pipeline

    return _make

