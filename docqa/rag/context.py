from docqa.models import AssembledContext, RelevantContext, ScoredMatch

NO_DOCUMENTS_FOUND = "No relevant documents found after filtering."


class ContextAssembler:
    """Builds the generation context and a truncated debug view.

    The language model always receives full chunk contents; only the debug
    view is cut to ``max_chars_per_chunk`` characters per chunk.
    """

    def __init__(self, max_chars_per_chunk: int = 300):
        if max_chars_per_chunk < 1:
            raise ValueError("max_chars_per_chunk must be positive")
        self.max_chars_per_chunk = max_chars_per_chunk

    def excerpt(self, text: str) -> str:
        if len(text) <= self.max_chars_per_chunk:
            return text
        return text[: self.max_chars_per_chunk] + "..."

    def _provenance(self, match: ScoredMatch) -> str | None:
        meta = match.chunk.metadata
        source = meta.get("source")
        if not source:
            return None
        parts = [source]
        if meta.get("page"):
            parts.append(f"page {meta['page']}")
        if meta.get("offset"):
            parts.append(f"offset {meta['offset']}")
        return ", ".join(parts)

    def _debug_block(self, index: int, match: ScoredMatch) -> str:
        lines = [
            f"### Document {index} (Score: {match.score:.3f})",
            f"**Title:** {match.chunk.title or 'Untitled'}",
        ]
        provenance = self._provenance(match)
        if provenance:
            lines.append(f"**Source:** {provenance}")
        lines.append(f"**Excerpt:** {self.excerpt(match.chunk.content)}")
        return "\n".join(lines)

    def assemble(self, relevant: RelevantContext) -> AssembledContext:
        if relevant.is_empty:
            return AssembledContext(
                context_text=NO_DOCUMENTS_FOUND,
                debug_view=NO_DOCUMENTS_FOUND,
                is_empty=True,
            )
        context_text = "\n\n".join(
            f"Document {i}:\n{m.chunk.content}"
            for i, m in enumerate(relevant.matches, start=1)
        )
        debug_view = "\n\n".join(
            self._debug_block(i, m) for i, m in enumerate(relevant.matches, start=1)
        )
        return AssembledContext(
            context_text=context_text, debug_view=debug_view, is_empty=False
        )
