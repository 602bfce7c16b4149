"""Fixed-window memory chunker with token overlap."""

from __future__ import annotations

from memindex.db.models import Chunk
from memindex.ingest.base import BaseChunker


class WindowChunker(BaseChunker):
    """Split a memory document into fixed-size windows.

    A document whose estimate fits the token budget stays whole. Longer
    documents are cut into ``tokens``-sized windows that share ``overlap``
    tokens with their neighbours.
    """

    def chunk(self, path: str, content: str) -> list[Chunk]:
        if not content.strip():
            return []
        if self.count_tokens(content) <= self.tokens:
            return self._make_chunks(path, content, [(0, content)])
        segments = self._split_fixed_window(content)
        return self._make_chunks(path, content, segments)


def chunk_text(text: str, tokens: int = 400, overlap: int = 80, path: str = "") -> list[Chunk]:
    """Chunk *text* with a throwaway WindowChunker. Pure; no I/O."""
    return WindowChunker(tokens=tokens, overlap=overlap).chunk(path, text)
