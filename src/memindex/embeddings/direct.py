"""Direct embedding path: byte-budgeted sub-batches with transient retry."""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, TypeVar

import structlog
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_result,
    stop_after_attempt,
    wait_exponential,
    wait_random,
)

from memindex.db.models import Chunk
from memindex.embeddings.outcome import Outcome, capture, is_transient, unwrap
from memindex.embeddings.provider import EmbeddingProvider
from memindex.errors import FatalProviderError

logger = structlog.get_logger()

T = TypeVar("T")

EMBEDDING_BATCH_MAX_BYTES = 8_000


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff for transient provider failures.

    Attributes:
        attempts: Total tries, including the first one.
        base_delay: First backoff in seconds; doubles per retry.
        max_delay: Cap on any single backoff, in seconds.
        jitter: Random extra delay added to each backoff, in seconds.
    """

    attempts: int = 3
    base_delay: float = 0.5
    max_delay: float = 8.0
    jitter: float = 0.1

    def retrying(self, label: str) -> AsyncRetrying:
        wait = wait_exponential(multiplier=self.base_delay, max=self.max_delay)
        if self.jitter > 0:
            wait = wait + wait_random(0, self.jitter)
        return AsyncRetrying(
            stop=stop_after_attempt(max(1, self.attempts)),
            wait=wait,
            retry=retry_if_result(is_transient),
            # Hand back the last Transient instead of raising RetryError.
            retry_error_callback=lambda state: state.outcome.result(),
            before_sleep=lambda state: _log_retry(label, state, self.attempts),
        )


NO_WAIT = RetryPolicy(base_delay=0.0, max_delay=0.0, jitter=0.0)


def _log_retry(label: str, state: RetryCallState, attempts: int) -> None:
    outcome = state.outcome.result() if state.outcome else None
    logger.warning(
        "embedding_retry",
        operation=label,
        attempt=state.attempt_number,
        max_attempts=attempts,
        error=str(getattr(outcome, "error", "")),
    )


async def call_with_retry(
    policy: RetryPolicy,
    label: str,
    fn: Callable[..., Awaitable[T]],
    *args: Any,
) -> Outcome[T]:
    """Run *fn* until it returns, fails fatally, or attempts run out."""
    return await policy.retrying(label)(capture, fn, *args)


def split_by_bytes(chunks: list[Chunk], max_bytes: int = EMBEDDING_BATCH_MAX_BYTES) -> list[list[Chunk]]:
    """Group chunks so each group's UTF-8 text size stays within *max_bytes*.

    A single chunk larger than the budget forms a group of its own.
    """
    groups: list[list[Chunk]] = []
    current: list[Chunk] = []
    current_bytes = 0
    for chunk in chunks:
        size = len(chunk.text.encode("utf-8"))
        if current and current_bytes + size > max_bytes:
            groups.append(current)
            current = []
            current_bytes = 0
        current.append(chunk)
        current_bytes += size
    if current:
        groups.append(current)
    return groups


class DirectEmbeddingPath:
    """Embeds chunks through ``provider.embed_batch`` one sub-batch at a time.

    Vectors are written onto ``Chunk.embedding`` in place. After each
    sub-batch ``on_batch`` is awaited with the chunks it embedded, so callers
    can commit documents as soon as they are complete.
    """

    def __init__(
        self,
        provider: EmbeddingProvider,
        *,
        policy: RetryPolicy | None = None,
        max_bytes: int = EMBEDDING_BATCH_MAX_BYTES,
    ) -> None:
        self._provider = provider
        self._policy = policy or RetryPolicy()
        self._max_bytes = max_bytes

    async def embed(
        self,
        chunks: list[Chunk],
        on_batch: Callable[[list[Chunk]], Awaitable[None]] | None = None,
    ) -> None:
        """Embed every chunk with non-blank text.

        Raises:
            TransientProviderError: A sub-batch still failed after the last attempt.
            FatalProviderError: The provider rejected a sub-batch.
        """
        pending = [c for c in chunks if c.text.strip()]
        groups = split_by_bytes(pending, self._max_bytes)
        for i, group in enumerate(groups, start=1):
            texts = [c.text for c in group]
            outcome = await call_with_retry(
                self._policy, "embed_batch", self._provider.embed_batch, texts
            )
            vectors = unwrap(outcome)
            if len(vectors) != len(group):
                raise FatalProviderError(
                    f"Provider returned {len(vectors)} embeddings for {len(group)} inputs"
                )
            for chunk, vector in zip(group, vectors):
                chunk.embedding = list(vector)
                chunk.model = self._provider.model
            logger.debug("embedding_batch_done", batch=i, batches=len(groups), chunks=len(group))
            if on_batch is not None:
                await on_batch(group)
