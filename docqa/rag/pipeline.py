"""Retrieval-and-answer pipeline.

This module provides the Pipeline class that sequences one query through
embedding, vector search, relevance filtering, context assembly and answer
generation, and the report formatter used by the CLI.
"""

import logging
import time
from contextlib import contextmanager
from datetime import datetime
from typing import Iterator

from docqa.config import Settings
from docqa.errors import EmbeddingUnavailable, SearchRejected
from docqa.models import (
    GenerationRequest,
    Metric,
    PipelineResult,
    ScoredMatch,
    SourceCollection,
)
from docqa.rag.context import ContextAssembler
from docqa.rag.embeddings import EmbeddingProvider, FallbackEmbeddingPolicy
from docqa.rag.generator import AnswerGenerator
from docqa.rag.relevance import RelevanceFilter
from docqa.rag.vectorstore import IndexCatalog, VectorStore, build_vector_store

logger = logging.getLogger(__name__)


class Pipeline:
    """Answers one query at a time against a named vector index.

    Every stage is injected so that tests can replace any of them with a
    double. The pipeline owns no domain logic beyond sequencing.
    """

    def __init__(
        self,
        store: VectorStore,
        catalog: IndexCatalog,
        embeddings: FallbackEmbeddingPolicy,
        relevance: RelevanceFilter,
        assembler: ContextAssembler,
        generator: AnswerGenerator,
        chat_model: str = "",
        default_k: int = 3,
    ) -> None:
        """Initialize the pipeline.

        Args:
            store: Connection handle shared by all indexes.
            catalog: Maps a search type to its named index.
            embeddings: Primary/fallback embedding policy.
            relevance: Threshold filter for raw matches.
            assembler: Builds generation context and debug view.
            generator: Language-model answer generator.
            chat_model: Chat model ID passed with each generation request.
            default_k: Result count when the caller does not give one.
        """
        self.store = store
        self.catalog = catalog
        self.embeddings = embeddings
        self.relevance = relevance
        self.assembler = assembler
        self.generator = generator
        self.chat_model = chat_model
        self.default_k = default_k

    @classmethod
    def from_settings(cls, settings: Settings) -> "Pipeline":
        """Wire the production stages from settings; nothing is connected yet."""
        store = build_vector_store(settings)
        return cls(
            store=store,
            catalog=IndexCatalog.from_settings(settings, store),
            embeddings=FallbackEmbeddingPolicy.from_settings(settings),
            relevance=RelevanceFilter.for_metric(
                Metric(settings.vector_metric), settings.relevance_threshold
            ),
            assembler=ContextAssembler(settings.debug_excerpt_chars),
            generator=AnswerGenerator(settings),
            chat_model=settings.watsonx_gen_model,
            default_k=settings.top_k,
        )

    @contextmanager
    def session(self) -> Iterator["Pipeline"]:
        """Keep the store connection open across several queries."""
        opened_here = not self.store.is_open
        self.store.connect()
        try:
            yield self
        finally:
            if opened_here:
                self.store.close()

    def _search_with(
        self, provider: EmbeddingProvider, query: str, search_type: SourceCollection, k: int
    ) -> list[ScoredMatch]:
        vector = provider.embed(query)
        return self.catalog.index_for(search_type).search(vector, k)

    def _retrieve(
        self, query: str, search_type: SourceCollection, k: int
    ) -> tuple[list[ScoredMatch], str, bool, str | None]:
        """Search with the primary provider, falling back once on failure.

        Returns:
            Tuple of (matches, embedding_model_used, degraded, error).
        """
        primary = self.embeddings.primary
        try:
            return self._search_with(primary, query, search_type, k), primary.model_id, False, None
        except (EmbeddingUnavailable, SearchRejected) as e:
            logger.warning(f"Primary embedding search failed ({primary.model_id}): {e}")

        try:
            fallback = self.embeddings.fallback()
        except Exception as e:
            logger.error(f"Fallback embedding provider could not be created: {e}")
            return [], primary.model_id, True, str(e)

        try:
            matches = self._search_with(fallback, query, search_type, k)
        except (EmbeddingUnavailable, SearchRejected) as e:
            logger.error(f"Fallback embedding search failed ({fallback.model_id}): {e}")
            return [], fallback.model_id, True, str(e)
        return matches, fallback.model_id, True, None

    def run(
        self,
        query: str,
        k: int | None = None,
        search_type: SourceCollection | str = SourceCollection.JSON,
    ) -> PipelineResult:
        """Answer a query.

        Args:
            query: User question.
            k: Number of nearest chunks to retrieve (defaults to ``default_k``).
            search_type: Collection to search ("json" or "pdf").

        Returns:
            PipelineResult with the answer and diagnostics.

        Raises:
            IndexUnavailable: If the vector store cannot be reached.
            IndexNotFound: If the selected index does not exist.
        """
        search_type = SourceCollection(search_type)
        k = k if k and k > 0 else self.default_k
        latency_ms: dict[str, float] = {}
        overall_start = time.perf_counter()

        opened_here = False
        if not self.store.is_open:
            self.store.connect()
            opened_here = True
        try:
            logger.info(f"Searching {search_type.value} index for: {query!r}")
            start = time.perf_counter()
            matches, model_used, degraded, error = self._retrieve(query, search_type, k)
            latency_ms["retrieve"] = (time.perf_counter() - start) * 1000.0

            relevant = self.relevance.filter(matches)
            assembled = self.assembler.assemble(relevant)

            start = time.perf_counter()
            outcome = self.generator.answer(
                GenerationRequest(
                    query=query,
                    context_text="" if assembled.is_empty else assembled.context_text,
                    model_id=self.chat_model,
                )
            )
            latency_ms["generate"] = (time.perf_counter() - start) * 1000.0
        finally:
            if opened_here:
                self.store.close()

        latency_ms["total"] = (time.perf_counter() - overall_start) * 1000.0
        return PipelineResult(
            query=query,
            answer=outcome.text,
            raw_match_count=len(matches),
            filtered_match_count=len(relevant),
            embedding_model_used=model_used,
            embedding_degraded=degraded,
            generation_failed=outcome.failed,
            generation_status=outcome.status,
            search_type=search_type,
            chat_model=outcome.model_id or self.chat_model,
            debug_view=assembled.debug_view,
            chunk_ids=relevant.chunk_ids,
            retrieval_error=error,
            latency_ms=latency_ms,
        )


def format_report(result: PipelineResult) -> str:
    """Render the diagnostic panel shown after each answer."""
    embedding = result.embedding_model_used
    if result.embedding_degraded:
        embedding += " (local fallback)"
    lines = [
        "## Document analysis",
        "",
        "### Search context",
        f'- Query: "{result.query}"',
        f"- Index: {result.search_type.value}",
        f"- Raw results: {result.raw_match_count}",
        f"- Relevant results: {result.filtered_match_count}",
        f"- Embedding model: {embedding}",
        "",
        "### Results after relevance filter",
        result.debug_view,
        "",
        "### Technical details",
        f"- Chat model: {result.chat_model or 'not configured'}",
        f"- Generation: {result.generation_status.value}",
        f"- Time: {datetime.now().strftime('%H:%M:%S')} ({result.latency_ms.get('total', 0.0):.0f} ms)",
    ]
    if result.retrieval_error:
        lines.append(f"- Retrieval error: {result.retrieval_error}")
    return "\n".join(lines)
