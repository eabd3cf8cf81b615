"""Data models for the question-answering pipeline.

This module defines Pydantic models for document chunks, search matches,
generation requests and pipeline results. All models are immutable.
"""

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class SourceCollection(str, Enum):
    """Document collection a chunk was ingested from; selects the index."""

    JSON = "json"
    PDF = "pdf"


class Metric(str, Enum):
    """Vector index metric.

    COSINE and IP report similarities (higher is better), L2 reports a
    distance (lower is better).
    """

    COSINE = "COSINE"
    IP = "IP"
    L2 = "L2"

    @property
    def is_similarity(self) -> bool:
        return self is not Metric.L2


class Direction(str, Enum):
    """Comparison applied by the relevance filter."""

    AT_LEAST = "at_least"
    AT_MOST = "at_most"


class GenerationStatus(str, Enum):
    GENERATED = "generated"
    NO_CONTEXT = "no_context"
    CONFIG_MISSING = "config_missing"
    FAILED = "failed"


class DocumentChunk(BaseModel):
    """Retrievable unit of text.

    Attributes:
        chunk_id: Unique chunk identifier (key prefix + content hash).
        content: Chunk text content.
        metadata: String metadata; ``title``, ``source``, ``page`` and
            ``offset`` are recognised.
        source_collection: Collection the chunk belongs to.
    """

    model_config = ConfigDict(frozen=True)

    chunk_id: str
    content: str
    metadata: dict[str, str] = Field(default_factory=dict)
    source_collection: SourceCollection = SourceCollection.JSON

    @property
    def title(self) -> str | None:
        return self.metadata.get("title") or None


class ScoredMatch(BaseModel):
    """Search hit; the meaning of ``score`` depends on the index metric."""

    model_config = ConfigDict(frozen=True)

    chunk: DocumentChunk
    score: float


class RelevantContext(BaseModel):
    """Matches that passed the relevance filter, in filter order.

    Attributes:
        matches: Surviving matches.
        threshold: Threshold that was applied.
        direction: Comparison that was applied.
    """

    model_config = ConfigDict(frozen=True)

    matches: list[ScoredMatch] = Field(default_factory=list)
    threshold: float
    direction: Direction

    def __len__(self) -> int:
        return len(self.matches)

    @property
    def is_empty(self) -> bool:
        return not self.matches

    @property
    def chunk_ids(self) -> list[str]:
        return [m.chunk.chunk_id for m in self.matches]


class AssembledContext(BaseModel):
    """Context for the language model plus a truncated view for humans."""

    model_config = ConfigDict(frozen=True)

    context_text: str
    debug_view: str
    is_empty: bool


class GenerationRequest(BaseModel):
    model_config = ConfigDict(frozen=True)

    query: str
    context_text: str = ""
    model_id: str = ""


class GenerationOutcome(BaseModel):
    model_config = ConfigDict(frozen=True)

    text: str
    status: GenerationStatus
    model_id: str = ""

    @property
    def failed(self) -> bool:
        return self.status is GenerationStatus.FAILED


class PipelineResult(BaseModel):
    """Answer and diagnostics for one query.

    Attributes:
        query: Query text as received.
        answer: User-facing answer (generated or canned).
        raw_match_count: Matches returned by the index before filtering.
        filtered_match_count: Matches that passed the relevance filter.
        embedding_model_used: Embedding model that produced the search vector.
        embedding_degraded: Whether the fallback embedding provider was used.
        generation_failed: Whether the language-model call failed.
        generation_status: Final state of the answer generator.
        search_type: Collection that was searched.
        chat_model: Chat model that answered, or the configured one when
            no model answered (empty when not configured).
        debug_view: Human-readable summary of the relevant chunks.
        chunk_ids: Identifiers of the relevant chunks, in filter order.
        retrieval_error: Error text when both embedding providers failed.
        latency_ms: Per-stage latency in milliseconds.
    """

    model_config = ConfigDict(frozen=True)

    query: str
    answer: str
    raw_match_count: int
    filtered_match_count: int
    embedding_model_used: str
    embedding_degraded: bool = False
    generation_failed: bool = False
    generation_status: GenerationStatus
    search_type: SourceCollection
    chat_model: str = ""
    debug_view: str = ""
    chunk_ids: list[str] = Field(default_factory=list)
    retrieval_error: str | None = None
    latency_ms: dict[str, float] = Field(default_factory=dict)
