"""Memory document discovery and chunking."""

from memindex.ingest.base import BaseChunker, hash_text
from memindex.ingest.files import DocumentEntry, build_document_entry, list_memory_files
from memindex.ingest.window import WindowChunker, chunk_text

__all__ = [
    "BaseChunker",
    "DocumentEntry",
    "WindowChunker",
    "build_document_entry",
    "chunk_text",
    "hash_text",
    "list_memory_files",
]
