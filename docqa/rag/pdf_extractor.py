from pathlib import Path
from typing import BinaryIO, List

from pypdf import PdfReader


def extract_text_per_page(fileobj: BinaryIO) -> List[str]:
    reader = PdfReader(fileobj)
    pages: List[str] = []
    for page in reader.pages:
        text = page.extract_text() or ""
        normalized = " ".join(text.split())
        pages.append(normalized)
    return pages


def extract_title(fileobj: BinaryIO, fallback: str) -> str:
    """Return the document title from PDF metadata, or ``fallback``."""
    reader = PdfReader(fileobj)
    meta = reader.metadata
    title = (meta.title if meta is not None else None) or ""
    title = " ".join(str(title).split())
    return title or fallback


def read_pdf(path: Path) -> tuple[str, List[str]]:
    """Read a PDF file into (title, page texts)."""
    with open(path, "rb") as fh:
        title = extract_title(fh, fallback=path.stem)
        fh.seek(0)
        pages = extract_text_per_page(fh)
    return title, pages
