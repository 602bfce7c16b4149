"""Domain models for the memory index database layer."""

from __future__ import annotations

import json
from dataclasses import dataclass, field


@dataclass
class Document:
    """An indexed memory file. ``path`` is workspace-relative, POSIX style."""

    path: str
    digest: str
    mtime_ms: int = 0
    size: int = 0
    indexed_at: str | None = None


@dataclass
class Chunk:
    path: str
    chunk_index: int
    text: str
    start_line: int
    end_line: int
    hash: str
    model: str = ""
    embedding: list[float] = field(default_factory=list)
    created_at: str | None = None
    id: int | None = None  # set after insert; None for unsaved chunks

    @property
    def token_estimate(self) -> int:
        return max(1, len(self.text) // 4)

    @property
    def embedding_json(self) -> str:
        return json.dumps(self.embedding)
