"""Embedding providers and the two embedding execution paths."""

from memindex.embeddings.batch import BatchJob, RemoteBatchPipeline, correlation_id
from memindex.embeddings.direct import DirectEmbeddingPath, RetryPolicy, split_by_bytes
from memindex.embeddings.provider import (
    BatchTransport,
    EmbeddingProvider,
    LiteLLMEmbeddingProvider,
    create_embedding_provider,
)

__all__ = [
    "BatchJob",
    "BatchTransport",
    "DirectEmbeddingPath",
    "EmbeddingProvider",
    "LiteLLMEmbeddingProvider",
    "RemoteBatchPipeline",
    "RetryPolicy",
    "correlation_id",
    "create_embedding_provider",
    "split_by_bytes",
]
