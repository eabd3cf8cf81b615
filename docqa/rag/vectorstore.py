import logging
from abc import ABC, abstractmethod

import numpy as np
from pymilvus import (
    Collection,
    CollectionSchema,
    DataType,
    FieldSchema,
    connections,
    utility,
)
from pymilvus.exceptions import (
    ConnectionNotExistException,
    MilvusException,
    MilvusUnavailableException,
)

from docqa.config import Settings
from docqa.errors import IndexNotFound, IndexUnavailable, SearchRejected
from docqa.models import DocumentChunk, Metric, ScoredMatch, SourceCollection

logger = logging.getLogger(__name__)

_UNAVAILABLE_CODES = {"UNAVAILABLE", "DEADLINE_EXCEEDED"}
_UNAVAILABLE_MESSAGES = (
    "retry timeout",
    "retry run out",
    "failed to connect",
    "deadline exceeded",
    "unavailable",
)


def is_unavailable(error: Exception) -> bool:
    """Whether a pymilvus error means the server could not be reached."""
    if isinstance(error, (ConnectionNotExistException, MilvusUnavailableException)):
        return True
    code = getattr(error, "code", None)
    if getattr(code, "name", None) in _UNAVAILABLE_CODES:
        return True
    message = str(getattr(error, "message", "") or error).lower()
    return any(m in message for m in _UNAVAILABLE_MESSAGES)



class VectorIndex(ABC):
    """Named collection of (vector, text, metadata) rows."""

    name: str
    metric: Metric

    @abstractmethod
    def search(self, query_vector: np.ndarray, k: int = 3) -> list[ScoredMatch]:
        """Return up to ``k`` nearest chunks, best first.

        Raises:
            IndexUnavailable: If the store is unreachable or not connected.
            IndexNotFound: If the collection does not exist.
            SearchRejected: If the store refuses the query vector.
        """

    @abstractmethod
    def upsert(self, chunks: list[DocumentChunk], vectors: list[np.ndarray]) -> int:
        """Insert or replace rows keyed by chunk id; returns the row count."""

    @abstractmethod
    def count(self) -> int:
        """Number of stored rows."""


class VectorStore(ABC):
    """Connection handle shared by every named index of one backend.

    ``connect`` and ``close`` are idempotent; a store that is already open is
    never connected twice.
    """

    def __init__(self, metric: Metric = Metric.COSINE):
        self.metric = Metric(metric)
        self._indexes: dict[str, VectorIndex] = {}

    @property
    @abstractmethod
    def is_open(self) -> bool: ...

    @abstractmethod
    def _open(self) -> None: ...

    @abstractmethod
    def _close(self) -> None: ...

    @abstractmethod
    def _make_index(self, name: str) -> VectorIndex: ...

    def connect(self) -> None:
        if self.is_open:
            return
        self._open()

    def close(self) -> None:
        self._indexes.clear()
        if not self.is_open:
            return
        self._close()

    def ensure_open(self) -> None:
        if not self.is_open:
            raise IndexUnavailable(f"{type(self).__name__} is not connected")

    def index(self, name: str) -> VectorIndex:
        if name not in self._indexes:
            self._indexes[name] = self._make_index(name)
        return self._indexes[name]

    def __enter__(self) -> "VectorStore":
        self.connect()
        return self

    def __exit__(self, *exc) -> None:
        self.close()


class MilvusIndex(VectorIndex):
    _OUTPUT_FIELDS = ["id", "content", "metadata", "source_collection"]

    def __init__(self, store: "MilvusVectorStore", name: str):
        self.store = store
        self.name = name
        self.metric = store.metric
        self._collection: Collection | None = None

    def _unreachable(self, e: MilvusException) -> IndexUnavailable:
        return IndexUnavailable(f"Milvus unreachable while using {self.name}: {e}")

    def _exists(self) -> bool:
        self.store.ensure_open()
        try:
            return utility.has_collection(self.name, using=self.store.alias)
        except MilvusException as e:
            raise self._unreachable(e) from e

    def _get_collection(self) -> Collection:
        if self._collection is None:
            if not self._exists():
                raise IndexNotFound(self.name)
            try:
                collection = Collection(self.name, using=self.store.alias)
                collection.load()
            except MilvusException as e:
                if is_unavailable(e):
                    raise self._unreachable(e) from e
                raise IndexUnavailable(f"Cannot load Milvus collection {self.name}: {e}") from e
            self._collection = collection
        return self._collection

    def _ensure_collection(self, dim: int) -> Collection:
        if self._exists():
            return self._get_collection()
        fields = [
            FieldSchema(name="id", dtype=DataType.VARCHAR, is_primary=True, max_length=128),
            FieldSchema(name="content", dtype=DataType.VARCHAR, max_length=8192),
            FieldSchema(name="metadata", dtype=DataType.JSON),
            FieldSchema(name="source_collection", dtype=DataType.VARCHAR, max_length=16),
            FieldSchema(name="embedding", dtype=DataType.FLOAT_VECTOR, dim=dim),
        ]
        schema = CollectionSchema(fields=fields, description="docqa chunks")
        try:
            collection = Collection(self.name, schema=schema, using=self.store.alias)
            collection.create_index(
                field_name="embedding",
                index_params={
                    "index_type": "IVF_FLAT",
                    "metric_type": self.metric.value,
                    "params": {"nlist": 1024},
                },
            )
            collection.load()
        except MilvusException as e:
            if is_unavailable(e):
                raise self._unreachable(e) from e
            raise SearchRejected(f"Milvus refused to create {self.name}: {e}") from e
        logger.info(f"Created Milvus collection {self.name} (dim={dim}, metric={self.metric.value})")
        self._collection = collection
        return collection

    def search(self, query_vector: np.ndarray, k: int = 3) -> list[ScoredMatch]:
        collection = self._get_collection()
        try:
            results = collection.search(
                data=[np.asarray(query_vector, dtype=np.float32).tolist()],
                anns_field="embedding",
                param={"metric_type": self.metric.value, "params": {"nprobe": 16}},
                limit=k,
                output_fields=self._OUTPUT_FIELDS,
            )
        except MilvusException as e:
            if is_unavailable(e):
                raise self._unreachable(e) from e
            raise SearchRejected(f"Milvus rejected search on {self.name}: {e}") from e

        matches: list[ScoredMatch] = []
        for hit in results[0]:
            metadata = hit.entity.get("metadata") or {}
            chunk = DocumentChunk(
                chunk_id=str(hit.id),
                content=hit.entity.get("content") or "",
                metadata={str(key): str(value) for key, value in metadata.items()},
                source_collection=hit.entity.get("source_collection") or SourceCollection.JSON,
            )
            matches.append(ScoredMatch(chunk=chunk, score=float(hit.distance)))
        return matches

    def upsert(self, chunks: list[DocumentChunk], vectors: list[np.ndarray]) -> int:
        if not chunks:
            return 0
        if len(chunks) != len(vectors):
            raise ValueError("chunks and vectors must have the same length")
        collection = self._ensure_collection(dim=int(np.asarray(vectors[0]).shape[0]))
        try:
            collection.upsert(
                [
                    [c.chunk_id for c in chunks],
                    [c.content for c in chunks],
                    [dict(c.metadata) for c in chunks],
                    [c.source_collection.value for c in chunks],
                    [np.asarray(v, dtype=np.float32).tolist() for v in vectors],
                ]
            )
            collection.flush()
        except MilvusException as e:
            if is_unavailable(e):
                raise self._unreachable(e) from e
            raise SearchRejected(f"Milvus rejected upsert into {self.name}: {e}") from e
        return len(chunks)

    def count(self) -> int:
        collection = self._get_collection()
        try:
            return collection.num_entities
        except MilvusException as e:
            raise self._unreachable(e) from e


class MilvusVectorStore(VectorStore):
    """One pymilvus connection alias, shared by every MilvusIndex.

    An alias that is already connected when the store opens is reused and
    left connected on close.
    """

    def __init__(
        self,
        settings: Settings,
        alias: str = "docqa",
        metric: Metric = Metric.COSINE,
    ):
        super().__init__(metric)
        self.settings = settings
        self.alias = alias
        self._opened = False
        self._owns_connection = False

    @property
    def is_open(self) -> bool:
        return self._opened and connections.has_connection(self.alias)

    def _open(self) -> None:
        if connections.has_connection(self.alias):
            self._opened = True
            self._owns_connection = False
            return
        kwargs = {}
        if self.settings.milvus_db:
            kwargs["db_name"] = self.settings.milvus_db
        try:
            connections.connect(
                alias=self.alias,
                host=self.settings.milvus_host,
                port=str(self.settings.milvus_port),
                secure=self.settings.milvus_tls,
                **kwargs,
            )
        except Exception as e:
            raise IndexUnavailable(
                f"Cannot connect to Milvus at {self.settings.milvus_host}:{self.settings.milvus_port}: {e}"
            ) from e
        self._opened = True
        self._owns_connection = True
        logger.info(f"Connected to Milvus ({self.alias})")

    def _close(self) -> None:
        if not self._owns_connection:
            self._opened = False
            return
        try:
            connections.disconnect(self.alias)
        finally:
            self._opened = False
            self._owns_connection = False
        logger.info(f"Disconnected from Milvus ({self.alias})")

    def _make_index(self, name: str) -> VectorIndex:
        return MilvusIndex(self, name)


class IndexCatalog:
    """Maps each document collection to a named index on a shared store."""

    def __init__(
        self,
        store: VectorStore,
        index_names: dict[SourceCollection, str],
        key_prefixes: dict[SourceCollection, str] | None = None,
    ):
        self.store = store
        self.index_names = dict(index_names)
        self.key_prefixes = dict(key_prefixes or {})

    def name_for(self, search_type: SourceCollection | str) -> str:
        return self.index_names[SourceCollection(search_type)]

    def key_prefix_for(self, search_type: SourceCollection | str) -> str:
        return self.key_prefixes.get(SourceCollection(search_type), "")

    def index_for(self, search_type: SourceCollection | str) -> VectorIndex:
        return self.store.index(self.name_for(search_type))

    @classmethod
    def from_settings(cls, settings: Settings, store: VectorStore) -> "IndexCatalog":
        return cls(
            store,
            index_names={
                SourceCollection.JSON: settings.json_index_name,
                SourceCollection.PDF: settings.pdf_index_name,
            },
            key_prefixes={
                SourceCollection.JSON: settings.json_key_prefix,
                SourceCollection.PDF: settings.pdf_key_prefix,
            },
        )


def build_vector_store(settings: Settings) -> VectorStore:
    """Create the configured backend without connecting it."""
    metric = Metric(settings.vector_metric)
    if settings.vector_backend == "faiss":
        from docqa.rag.faiss_store import FaissVectorStore

        return FaissVectorStore(settings.faiss_dir, metric=metric)
    return MilvusVectorStore(settings, metric=metric)
