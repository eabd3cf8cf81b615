"""Text chunking utilities.

This module provides functions for splitting text into chunks.
"""

from typing import List, Tuple

from langchain_text_splitters import RecursiveCharacterTextSplitter


def chunk_text(text: str, chunk_size: int, chunk_overlap: int) -> List[Tuple[str, int]]:
    """Split text into chunks, keeping each chunk's start offset.

    Args:
        text: Text to chunk.
        chunk_size: Target size for each chunk, in characters.
        chunk_overlap: Overlap between consecutive chunks.

    Returns:
        List of (chunk_text, start_offset) tuples.
    """
    if not text.strip():
        return []
    splitter = RecursiveCharacterTextSplitter(
        chunk_size=chunk_size,
        chunk_overlap=chunk_overlap,
        length_function=len,
        separators=["\n\n", "\n", " ", ""],
        add_start_index=True,
    )
    docs = splitter.create_documents([text])
    return [(d.page_content, int(d.metadata.get("start_index", -1))) for d in docs]
