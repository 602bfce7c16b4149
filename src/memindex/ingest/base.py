"""Base chunker interface for memory documents."""

from __future__ import annotations

import hashlib
from abc import ABC, abstractmethod

from memindex.db.models import Chunk


def hash_text(text: str) -> str:
    """SHA-256 hex digest of *text* encoded as UTF-8."""
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


class BaseChunker(ABC):
    """Abstract base for all chunkers.

    Subclasses implement ``chunk()`` and may use ``_split_fixed_window()``
    and ``_make_chunks()`` for the fixed-window path.

    Token counting uses a 4-chars-per-token approximation; no external
    tokenizer dependency is required.
    """

    def __init__(self, tokens: int = 400, overlap: int = 80) -> None:
        if tokens < 1:
            raise ValueError("tokens must be >= 1")
        if not 0 <= overlap < tokens:
            raise ValueError("overlap must be in [0, tokens)")
        self.tokens = tokens
        self.overlap = overlap

    @abstractmethod
    def chunk(self, path: str, content: str) -> list[Chunk]:
        """Split *content* into Chunk objects for the document at *path*.

        Returns:
            Ordered list of Chunk objects with sequential ``chunk_index``.
            Empty when *content* is blank.
        """

    @staticmethod
    def count_tokens(text: str) -> int:
        """Approximate token count: 4 characters ≈ 1 token.

        Fast, dependency-free approximation consistent with GPT tokeniser
        averages for English prose and technical documentation.
        """
        return max(1, len(text) // 4)

    def _split_fixed_window(self, text: str) -> list[tuple[int, str]]:
        """Split *text* into fixed-window segments with overlap.

        Window size = ``self.tokens * 4`` characters.
        Step        = ``(self.tokens - self.overlap) * 4`` characters, so
        neighbouring windows share exactly ``self.overlap * 4`` characters.
        Segments are not stripped, which keeps the shared span exact;
        whitespace-only segments are omitted.

        Returns:
            ``(start_offset, segment)`` pairs in document order.
        """
        if not text.strip():
            return []

        char_size = self.tokens * 4
        step = (self.tokens - self.overlap) * 4

        segments: list[tuple[int, str]] = []
        pos = 0
        length = len(text)

        while pos < length:
            end = min(pos + char_size, length)
            segment = text[pos:end]
            if segment.strip():
                segments.append((pos, segment))
            if end >= length:
                break
            pos += step

        return segments

    def _make_chunks(
        self, path: str, content: str, segments: list[tuple[int, str]]
    ) -> list[Chunk]:
        """Convert ``(offset, text)`` segments into sequentially indexed Chunks."""
        chunks: list[Chunk] = []
        for i, (offset, text) in enumerate(segments):
            start_line = content.count("\n", 0, offset) + 1
            end_line = start_line + text.rstrip("\n").count("\n")
            chunks.append(
                Chunk(
                    path=path,
                    chunk_index=i,
                    text=text,
                    start_line=start_line,
                    end_line=end_line,
                    hash=hash_text(text),
                )
            )
        return chunks
