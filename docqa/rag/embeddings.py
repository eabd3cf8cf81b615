import logging
from abc import ABC, abstractmethod
from threading import Lock
from typing import Callable

import numpy as np
from ibm_watsonx_ai import Credentials
from ibm_watsonx_ai.foundation_models import Embeddings as WXEmbeddings

from docqa.config import Settings
from docqa.errors import EmbeddingUnavailable
from docqa.rag.retry import with_retries

logger = logging.getLogger(__name__)


class EmbeddingProvider(ABC):
    """Turns text into a fixed-dimension float32 vector."""

    model_id: str

    @abstractmethod
    def embed(self, text: str) -> np.ndarray:
        """Embed one text.

        Raises:
            EmbeddingUnavailable: If the backend cannot produce a vector.
        """

    def embed_many(self, texts: list[str]) -> list[np.ndarray]:
        return [self.embed(t) for t in texts]


def _as_vector(values) -> np.ndarray:
    vector = np.asarray(values, dtype=np.float32)
    if vector.ndim != 1 or vector.size == 0:
        raise EmbeddingUnavailable(f"Embedding backend returned shape {vector.shape}")
    return vector


class WatsonxEmbeddingProvider(EmbeddingProvider):
    """Remote embeddings from watsonx.ai; the client is created on first use."""

    def __init__(self, settings: Settings, retry_delay: float = 0.5):
        self.settings = settings
        self.model_id = settings.watsonx_embed_model
        self.retry_delay = retry_delay
        self._client: WXEmbeddings | None = None

    def _get_client(self) -> WXEmbeddings:
        if self._client is None:
            credentials = Credentials(
                api_key=self.settings.ibm_cloud_api_key,
                url=self.settings.watsonx_url,
            )
            self._client = WXEmbeddings(
                model_id=self.settings.watsonx_embed_model,
                project_id=self.settings.watsonx_project_id,
                credentials=credentials,
            )
        return self._client

    def _embed_query(self, text: str) -> list[float]:
        result = self._get_client().embed_query(text)
        data = result.get_result() if hasattr(result, "get_result") else result
        if isinstance(data, dict):
            # {"results": [{"embedding"|"vector"|"values": [...]}, ...]}
            if (
                "results" in data
                and isinstance(data["results"], list)
                and data["results"]
            ):
                first = data["results"][0]
                if isinstance(first, dict):
                    for key in ("embedding", "vector", "values"):
                        if key in first:
                            return first[key]
            if "embedding" in data:
                return data["embedding"]
            if data.get("embeddings"):
                return data["embeddings"][0]
        # list-shaped: either a single vector or list of vectors
        if isinstance(data, list) and data:
            if isinstance(data[0], list):
                return data[0]
            if isinstance(data[0], (int, float)):
                return data
        if hasattr(result, "embedding"):
            return result.embedding
        raise RuntimeError(
            f"Unexpected query embedding response format from watsonx.ai: {type(data)} keys={list(data.keys()) if isinstance(data, dict) else 'n/a'}"
        )

    def embed(self, text: str) -> np.ndarray:
        try:
            values = with_retries(
                lambda: self._embed_query(text),
                max_retries=self.settings.embedding_max_retries,
                timeout=self.settings.embedding_timeout,
                delay=self.retry_delay,
                label=f"watsonx embedding ({self.model_id})",
            )
        except Exception as e:
            raise EmbeddingUnavailable(
                f"Remote embedding model {self.model_id} unavailable: {e}"
            ) from e
        return _as_vector(values)

    def _embed_documents(self, texts: list[str]) -> list[list[float]]:
        result = self._get_client().embed_documents(texts)
        data = result.get_result() if hasattr(result, "get_result") else result
        # {"results": [{"embedding"|"vector"|"values": [...]}, ...]}
        if isinstance(data, dict) and isinstance(data.get("results"), list):
            out = []
            for item in data["results"]:
                if isinstance(item, dict):
                    for key in ("embedding", "vector", "values"):
                        if key in item:
                            out.append(item[key])
                            break
            if out:
                return out
        if isinstance(data, dict) and "embeddings" in data:
            return data["embeddings"]
        if isinstance(data, list) and data and isinstance(data[0], list):
            return data
        if hasattr(result, "embeddings"):
            return result.embeddings
        raise RuntimeError(
            f"Unexpected embeddings response format from watsonx.ai: {type(data)} keys={list(data.keys()) if isinstance(data, dict) else 'n/a'}"
        )

    def embed_many(self, texts: list[str]) -> list[np.ndarray]:
        if not texts:
            return []
        try:
            vectors = with_retries(
                lambda: self._embed_documents(texts),
                max_retries=self.settings.embedding_max_retries,
                timeout=self.settings.embedding_timeout,
                delay=self.retry_delay,
                label=f"watsonx batch embedding ({self.model_id})",
            )
        except Exception as e:
            raise EmbeddingUnavailable(
                f"Remote embedding model {self.model_id} unavailable: {e}"
            ) from e
        if len(vectors) != len(texts):
            raise EmbeddingUnavailable(
                f"Remote embedding model {self.model_id} returned {len(vectors)} vectors for {len(texts)} texts"
            )
        return [_as_vector(v) for v in vectors]


class LocalEmbeddingProvider(EmbeddingProvider):
    """sentence-transformers model computed in-process, loaded on first use."""

    def __init__(self, model_name: str = "sentence-transformers/all-MiniLM-L6-v2"):
        self.model_id = model_name
        self._model = None
        self._lock = Lock()

    def _get_model(self):
        if self._model is None:
            with self._lock:
                if self._model is None:
                    from sentence_transformers import SentenceTransformer

                    self._model = SentenceTransformer(self.model_id)
                    logger.info(f"Local embedding model loaded: {self.model_id}")
        return self._model

    def embed(self, text: str) -> np.ndarray:
        try:
            vector = self._get_model().encode(
                [text],
                show_progress_bar=False,
                convert_to_numpy=True,
                normalize_embeddings=True,
            )[0]
        except Exception as e:
            raise EmbeddingUnavailable(
                f"Local embedding model {self.model_id} unavailable: {e}"
            ) from e
        return _as_vector(vector)

    def embed_many(self, texts: list[str]) -> list[np.ndarray]:
        if not texts:
            return []
        try:
            vectors = self._get_model().encode(
                texts,
                batch_size=32,
                show_progress_bar=False,
                convert_to_numpy=True,
                normalize_embeddings=True,
            )
        except Exception as e:
            raise EmbeddingUnavailable(
                f"Local embedding model {self.model_id} unavailable: {e}"
            ) from e
        return [_as_vector(v) for v in vectors]


class FallbackEmbeddingPolicy:
    """Chooses between the primary provider and a lazily built fallback.

    The fallback is instantiated on the first failure of the primary and
    reused for the rest of the session.
    """

    def __init__(
        self,
        primary: EmbeddingProvider,
        fallback_factory: Callable[[], EmbeddingProvider],
    ):
        self.primary = primary
        self._fallback_factory = fallback_factory
        self._fallback: EmbeddingProvider | None = None

    @property
    def fallback_loaded(self) -> bool:
        return self._fallback is not None

    def fallback(self) -> EmbeddingProvider:
        if self._fallback is None:
            self._fallback = self._fallback_factory()
            logger.warning(
                f"Switching to fallback embeddings: {self._fallback.model_id}"
            )
        return self._fallback

    @classmethod
    def from_settings(cls, settings: Settings) -> "FallbackEmbeddingPolicy":
        return cls(
            primary=WatsonxEmbeddingProvider(settings),
            fallback_factory=lambda: LocalEmbeddingProvider(settings.local_embed_model),
        )
