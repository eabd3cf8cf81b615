import json
import logging
import os

import faiss
import numpy as np

from docqa.errors import IndexNotFound, SearchRejected
from docqa.models import DocumentChunk, Metric, ScoredMatch
from docqa.rag.vectorstore import VectorIndex, VectorStore

logger = logging.getLogger(__name__)


class FaissIndex(VectorIndex):
    """One FAISS file plus a JSON row list, stored under the store directory."""

    def __init__(self, store: "FaissVectorStore", name: str):
        self.store = store
        self.name = name
        self.metric = store.metric
        self.index_path = os.path.join(store.directory, f"{name}.faiss")
        self.meta_path = os.path.join(store.directory, f"{name}.meta.json")
        self.index = None
        self.rows: list[dict] = []
        self._load()

    @staticmethod
    def _normalize(vecs: np.ndarray) -> np.ndarray:
        norms = np.linalg.norm(vecs, axis=1, keepdims=True) + 1e-12
        return vecs / norms

    def _prepare(self, vecs: np.ndarray) -> np.ndarray:
        vecs = np.asarray(vecs, dtype=np.float32)
        if self.metric is Metric.COSINE:
            vecs = self._normalize(vecs)
        return np.ascontiguousarray(vecs, dtype=np.float32)

    def _create_index(self, dim: int):
        if self.metric is Metric.L2:
            return faiss.IndexFlatL2(dim)
        # Inner product on normalized vectors = cosine similarity
        return faiss.IndexFlatIP(dim)

    def _load(self) -> None:
        if os.path.exists(self.index_path) and os.path.exists(self.meta_path):
            self.index = faiss.read_index(self.index_path)
            with open(self.meta_path, "r", encoding="utf-8") as f:
                self.rows = json.load(f)
        else:
            # Defer index creation until first upsert so we can infer dim
            self.index = None
            self.rows = []

    def _save(self) -> None:
        faiss.write_index(self.index, self.index_path)
        with open(self.meta_path, "w", encoding="utf-8") as f:
            json.dump(self.rows, f, ensure_ascii=False)

    def search(self, query_vector: np.ndarray, k: int = 3) -> list[ScoredMatch]:
        self.store.ensure_open()
        if self.index is None:
            raise IndexNotFound(self.name)
        if self.index.ntotal == 0:
            return []
        q = self._prepare(np.asarray([query_vector], dtype=np.float32))
        if q.shape[1] != self.index.d:
            raise SearchRejected(
                f"Query dimension {q.shape[1]} does not match index {self.name} dimension {self.index.d}"
            )
        scores, idxs = self.index.search(q, k)
        hits: list[ScoredMatch] = []
        for score, idx in zip(scores[0].tolist(), idxs[0].tolist()):
            if idx < 0 or idx >= len(self.rows):
                continue
            row = self.rows[idx]
            chunk = DocumentChunk(
                chunk_id=row["id"],
                content=row["content"],
                metadata=row.get("metadata", {}),
                source_collection=row.get("source_collection", "json"),
            )
            hits.append(ScoredMatch(chunk=chunk, score=float(score)))
        return hits

    def upsert(self, chunks: list[DocumentChunk], vectors: list[np.ndarray]) -> int:
        self.store.ensure_open()
        if not chunks:
            return 0
        if len(chunks) != len(vectors):
            raise ValueError("chunks and vectors must have the same length")
        new_vecs = self._prepare(np.asarray(vectors, dtype=np.float32))
        dim = new_vecs.shape[1]
        if self.index is not None and self.index.ntotal > 0 and self.index.d != dim:
            raise SearchRejected(
                f"FAISS index dimension mismatch: index.d={self.index.d} vs embeddings.d={dim}. "
                f"Delete {self.index_path} and {self.meta_path} to rebuild {self.name} with the new model."
            )

        # Rows are keyed by chunk id; a repeated id replaces the stored row.
        if self.index is not None and self.index.ntotal > 0:
            stored = self.index.reconstruct_n(0, self.index.ntotal)
        else:
            stored = np.zeros((0, dim), dtype=np.float32)
        position = {row["id"]: i for i, row in enumerate(self.rows)}
        rows = list(self.rows)
        matrix = list(stored)
        for chunk, vec in zip(chunks, new_vecs):
            row = {
                "id": chunk.chunk_id,
                "content": chunk.content,
                "metadata": dict(chunk.metadata),
                "source_collection": chunk.source_collection.value,
            }
            if chunk.chunk_id in position:
                rows[position[chunk.chunk_id]] = row
                matrix[position[chunk.chunk_id]] = vec
            else:
                position[chunk.chunk_id] = len(rows)
                rows.append(row)
                matrix.append(vec)

        index = self._create_index(dim)
        index.add(np.ascontiguousarray(np.vstack(matrix), dtype=np.float32))
        self.index = index
        self.rows = rows
        self._save()
        return len(chunks)

    def count(self) -> int:
        self.store.ensure_open()
        if self.index is None:
            raise IndexNotFound(self.name)
        return int(self.index.ntotal)


class FaissVectorStore(VectorStore):
    """Directory of FAISS indexes; opening it only checks the directory."""

    def __init__(self, directory: str, metric: Metric = Metric.COSINE):
        super().__init__(metric)
        self.directory = directory
        self._open_flag = False

    @property
    def is_open(self) -> bool:
        return self._open_flag

    def _open(self) -> None:
        os.makedirs(self.directory, exist_ok=True)
        self._open_flag = True
        logger.info(f"Opened FAISS store at {self.directory}")

    def _close(self) -> None:
        self._open_flag = False

    def _make_index(self, name: str) -> VectorIndex:
        self.ensure_open()
        return FaissIndex(self, name)
