"""Document loading and index population.

Loads JSON records and PDF files into DocumentChunks and writes them, with
their embeddings, into a named vector index.
"""

import hashlib
import json
import logging
from pathlib import Path

from docqa.config import Settings
from docqa.models import DocumentChunk, SourceCollection
from docqa.rag.chunker import chunk_text
from docqa.rag.embeddings import EmbeddingProvider
from docqa.rag.pdf_extractor import read_pdf
from docqa.rag.vectorstore import VectorIndex

logger = logging.getLogger(__name__)


def make_chunk_id(key_prefix: str, source: str, offset: int, content: str) -> str:
    """Deterministic chunk id, so re-ingesting a file replaces its rows."""
    digest = hashlib.sha1(f"{source}\x00{offset}\x00{content}".encode("utf-8")).hexdigest()
    return f"{key_prefix}{digest[:32]}"


def _resolve_field(record: dict, field: str):
    value = record
    for part in field.strip("/").split("/"):
        if not isinstance(value, dict) or part not in value:
            return None
        value = value[part]
    return value


def _chunks_from_text(
    text: str,
    metadata: dict[str, str],
    source_collection: SourceCollection,
    key_prefix: str,
    chunk_size: int,
    chunk_overlap: int,
) -> list[DocumentChunk]:
    chunks = []
    for piece, offset in chunk_text(text, chunk_size, chunk_overlap):
        meta = dict(metadata)
        if offset >= 0:
            meta["offset"] = str(offset)
        source_key = f"{meta.get('source', '')}:{meta.get('page', meta.get('record', ''))}"
        chunks.append(
            DocumentChunk(
                chunk_id=make_chunk_id(key_prefix, source_key, offset, piece),
                content=piece,
                metadata=meta,
                source_collection=source_collection,
            )
        )
    return chunks


def load_json_documents(
    directory: str | Path,
    content_field: str = "content",
    title_field: str = "title",
    chunk_size: int = 600,
    chunk_overlap: int = 50,
    key_prefix: str = "",
) -> list[DocumentChunk]:
    """Load every ``*.json`` file in a directory.

    Each file holds one record or a list of records. The text is read from
    ``content_field`` (a "/"-separated path for nested records) and the
    optional ``title_field`` (same path syntax) is kept as the title.
    """
    chunks: list[DocumentChunk] = []
    for path in sorted(Path(directory).glob("*.json")):
        with open(path, "r", encoding="utf-8") as f:
            payload = json.load(f)
        records = payload if isinstance(payload, list) else [payload]
        for i, record in enumerate(records):
            if not isinstance(record, dict):
                logger.warning(f"Skipping non-object record {i} in {path.name}")
                continue
            text = _resolve_field(record, content_field)
            if not isinstance(text, str) or not text.strip():
                logger.warning(f"Record {i} in {path.name} has no '{content_field}' text")
                continue
            metadata = {"source": path.name, "record": str(i)}
            title = _resolve_field(record, title_field)
            if title:
                metadata["title"] = str(title)
            chunks.extend(
                _chunks_from_text(
                    text, metadata, SourceCollection.JSON, key_prefix, chunk_size, chunk_overlap
                )
            )
    logger.info(f"Loaded {len(chunks)} chunks from JSON files in {directory}")
    return chunks


def load_pdf_documents(
    directory: str | Path,
    chunk_size: int = 500,
    chunk_overlap: int = 100,
    key_prefix: str = "",
) -> list[DocumentChunk]:
    """Load every ``*.pdf`` file in a directory, chunked page by page."""
    chunks: list[DocumentChunk] = []
    for path in sorted(Path(directory).glob("*.pdf")):
        title, pages = read_pdf(path)
        for page_num, page_text in enumerate(pages, start=1):
            if not page_text.strip():
                continue
            metadata = {"source": path.name, "page": str(page_num), "title": title}
            chunks.extend(
                _chunks_from_text(
                    page_text, metadata, SourceCollection.PDF, key_prefix, chunk_size, chunk_overlap
                )
            )
    logger.info(f"Loaded {len(chunks)} chunks from PDF files in {directory}")
    return chunks


def populate_index(
    index: VectorIndex,
    chunks: list[DocumentChunk],
    provider: EmbeddingProvider,
    batch_size: int = 64,
) -> int:
    """Embed chunks and upsert them into ``index`` in batches.

    Returns:
        Number of rows written.
    """
    written = 0
    for start in range(0, len(chunks), batch_size):
        batch = chunks[start : start + batch_size]
        vectors = provider.embed_many([c.content for c in batch])
        written += index.upsert(batch, vectors)
        logger.info(f"Indexed {written}/{len(chunks)} chunks into {index.name}")
    return written


def load_documents(
    settings: Settings, search_type: SourceCollection | str, directory: str | Path
) -> list[DocumentChunk]:
    """Load a directory with the loader and chunking settings of a collection."""
    search_type = SourceCollection(search_type)
    if search_type is SourceCollection.PDF:
        return load_pdf_documents(
            directory,
            chunk_size=settings.pdf_chunk_size,
            chunk_overlap=settings.pdf_chunk_overlap,
            key_prefix=settings.pdf_key_prefix,
        )
    return load_json_documents(
        directory,
        content_field=settings.json_content_field,
        title_field=settings.json_title_field,
        chunk_size=settings.json_chunk_size,
        chunk_overlap=settings.json_chunk_overlap,
        key_prefix=settings.json_key_prefix,
    )
