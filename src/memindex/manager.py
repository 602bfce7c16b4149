"""Memory index manager: keeps a workspace's memory documents indexed and searchable.

One manager per (agent, workspace, settings). It decides which documents need
(re)embedding, picks the remote batch or direct embedding path, commits each
document atomically, answers hybrid queries, and owns the lifecycle of the
watcher, the batch HTTP client and the SQLite handle.

Typical use::

    result = await get_memory_search_manager(config, "main", registry=registry)
    if result.manager is not None:
        await result.manager.sync(reason="startup")
        hits = await result.manager.query("deployment checklist")
"""

from __future__ import annotations

import asyncio
import json
import sqlite3
import time
from collections.abc import Callable
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any

import httpx
import structlog

from memindex.config import MemindexConfig, ResolvedMemorySearch, resolve_memory_search_config
from memindex.db.connection import Database
from memindex.db.migrations import initialize
from memindex.db.models import Chunk, Document
from memindex.db.repository import Repository
from memindex.db.vectors import ensure_vec_table, model_to_slug, vec_table_dims, vec_table_name
from memindex.embeddings.batch import BatchJob, RemoteBatchPipeline
from memindex.embeddings.direct import DirectEmbeddingPath, RetryPolicy, call_with_retry
from memindex.embeddings.outcome import unwrap
from memindex.embeddings.provider import EmbeddingProvider, create_embedding_provider
from memindex.errors import (
    BatchPipelineError,
    ConfigError,
    DocumentIOError,
    ManagerClosedError,
    ProviderError,
    StoreError,
)
from memindex.ingest.files import (
    DocumentEntry,
    build_document_entry,
    list_memory_files,
    read_memory_file,
)
from memindex.ingest.window import WindowChunker
from memindex.search import RankedChunk, search_index
from memindex.watcher import MemoryWatcher

logger = structlog.get_logger()

_META_MODEL = "embedding_model"
_META_VECTOR_DIMS = "vector_dims"
_META_BATCH_HEALTH = "batch_health"

BATCH_LABEL = "Indexing memory files (batch)…"
DIRECT_LABEL = "Indexing memory files…"


# ---------------------------------------------------------------------------
# State + status models
# ---------------------------------------------------------------------------


@dataclass
class SyncProgress:
    completed: int
    total: int
    label: str | None = None


ProgressCallback = Callable[[SyncProgress], None]


@dataclass
class BatchHealth:
    """Circuit breaker for the remote batch pipeline.

    ``failures`` counts consecutive pipeline failures and resets on any
    success. Reaching ``limit`` disables batch mode until re-enabled.
    """

    enabled: bool = True
    failures: int = 0
    limit: int = 2
    last_error: str | None = None
    pending_job: BatchJob | None = None

    def record_failure(self, message: str) -> bool:
        """Count one failure. Returns True when batch mode is (now) disabled."""
        if not self.enabled:
            return True
        self.failures += 1
        self.last_error = message
        if self.failures >= self.limit:
            self.enabled = False
        return not self.enabled

    def record_success(self) -> None:
        self.failures = 0
        self.last_error = None

    def reenable(self) -> None:
        self.enabled = True
        self.failures = 0
        self.last_error = None

    def to_json(self) -> str:
        return json.dumps(
            {"enabled": self.enabled, "failures": self.failures, "last_error": self.last_error}
        )

    def load_json(self, raw: str) -> None:
        data = json.loads(raw)
        self.enabled = bool(data.get("enabled", True))
        self.failures = int(data.get("failures", 0))
        self.last_error = data.get("last_error")


@dataclass
class SyncState:
    dirty: bool = True
    last_sync: float | None = None
    last_error: str | None = None
    batch: BatchHealth = field(default_factory=BatchHealth)


@dataclass
class BatchStatus:
    enabled: bool
    failures: int
    limit: int
    wait: bool
    poll_interval_ms: int
    timeout_minutes: int
    available: bool
    last_error: str | None = None
    pending_job: dict[str, Any] | None = None


@dataclass
class VectorStatus:
    enabled: bool
    available: bool
    dims: int | None = None
    error: str | None = None


@dataclass
class CacheStatus:
    enabled: bool
    entries: int
    max_entries: int | None = None


@dataclass
class MemoryStatus:
    documents: int
    chunks: int
    dirty: bool
    workspace_dir: str
    db_path: str
    provider: str
    model: str
    vector: VectorStatus
    fts_available: bool
    cache: CacheStatus
    batch: BatchStatus | None = None
    last_sync: float | None = None
    last_error: str | None = None
    closed: bool = False


@dataclass
class EmbeddingProbe:
    ok: bool
    error: str | None = None


@dataclass
class FileContent:
    path: str
    text: str


# ---------------------------------------------------------------------------
# Manager
# ---------------------------------------------------------------------------


class MemoryIndexManager:
    """Index + search façade for one agent workspace.

    Construct through get_memory_search_manager(); direct construction is for
    tests that inject a provider. Call ``await start()`` before use and
    ``await close()`` when done.
    """

    def __init__(
        self,
        resolved: ResolvedMemorySearch,
        provider: EmbeddingProvider,
        *,
        http_transport: httpx.AsyncBaseTransport | None = None,
        retry_policy: RetryPolicy | None = None,
        registry: ManagerRegistry | None = None,
        cache_key: str | None = None,
    ) -> None:
        self.agent_id = resolved.agent_id
        self.workspace_dir = resolved.workspace_dir
        self.db_path = resolved.db_path
        self.settings = resolved.settings
        self.provider = provider
        self._registry = registry
        self._cache_key = cache_key
        self._policy = retry_policy or RetryPolicy()

        store = self.settings.store
        self._db = Database(
            self.db_path,
            load_vector=store.vector.enabled,
            extension_path=store.vector.extension_path,
        )
        try:
            self._conn = self._db.connect()
            fts_available = initialize(self._conn)
        except (sqlite3.Error, OSError) as exc:
            raise StoreError(f"Cannot open memory index '{self.db_path}': {exc}") from exc
        self._repo = Repository(self._conn, fts_available=fts_available)

        dims = self._repo.get_meta(_META_VECTOR_DIMS)
        self._vector_dims: int | None = int(dims) if dims else None
        self._vec_table: str | None = None

        self._chunker = WindowChunker(
            tokens=self.settings.chunking.tokens, overlap=self.settings.chunking.overlap
        )
        self._direct = DirectEmbeddingPath(provider, policy=self._policy)

        batch_cfg = self.settings.remote.batch
        self._state = SyncState(batch=BatchHealth(limit=batch_cfg.failure_limit))
        if batch_cfg.persist_health and (raw := self._repo.get_meta(_META_BATCH_HEALTH)):
            self._state.batch.load_json(raw)

        self._closing = asyncio.Event()
        self._pipeline: RemoteBatchPipeline | None = None
        if batch_cfg.enabled and provider.batch_transport is not None:
            self._pipeline = RemoteBatchPipeline(
                provider.batch_transport,
                agent_id=self.agent_id,
                policy=self._policy,
                poll_interval_ms=batch_cfg.poll_interval_ms,
                timeout_minutes=batch_cfg.timeout_minutes,
                http_transport=http_transport,
                closing=self._closing,
            )

        # Documents carried by a submitted, not yet reconciled batch job.
        self._inflight: dict[str, tuple[DocumentEntry, list[Chunk]]] = {}
        self._sync_task: asyncio.Task[None] | None = None
        self._background: set[asyncio.Task[None]] = set()
        self._interval_task: asyncio.Task[None] | None = None
        self._watcher: MemoryWatcher | None = None
        self._warm_sessions: set[str] = set()
        self._last_counts = (0, 0, 0)
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def start(self) -> None:
        """Start the watcher and the interval sync, as configured."""
        sync_cfg = self.settings.sync
        if sync_cfg.watch and self._watcher is None:
            self._watcher = MemoryWatcher(
                workspace_dir=self.workspace_dir,
                on_change=self._on_watch_change,
                extra_paths=self.settings.extra_paths,
                debounce_ms=sync_cfg.watch_debounce_ms,
            )
            await self._watcher.start()
        if sync_cfg.interval_minutes > 0 and self._interval_task is None:
            self._interval_task = asyncio.create_task(
                self._interval_loop(sync_cfg.interval_minutes * 60)
            )

    # ------------------------------------------------------------------
    # Sync
    # ------------------------------------------------------------------

    async def sync(
        self,
        reason: str | None = None,
        *,
        force: bool = False,
        progress: ProgressCallback | None = None,
    ) -> None:
        """Bring the index up to date with the workspace.

        Concurrent callers share the run already in flight.

        Raises:
            ManagerClosedError: If the manager is closed.
            ProviderError: Direct embedding failed after retries.
            StoreError: A document commit failed; it was rolled back.
        """
        if self._closed:
            raise ManagerClosedError("Memory index manager is closed")
        if self._sync_task is None or self._sync_task.done():
            self._sync_task = asyncio.create_task(self._run_sync(reason, force, progress))
        await asyncio.shield(self._sync_task)

    async def _run_sync(
        self, reason: str | None, force: bool, progress: ProgressCallback | None
    ) -> None:
        log = logger.bind(agent=self.agent_id, reason=reason or "manual")
        started = time.monotonic()
        try:
            indexed = await self._sync_documents(force, progress, log)
        except ManagerClosedError:
            log.info("memory_sync_interrupted")
            raise
        except Exception as exc:
            self._state.last_error = str(exc) or type(exc).__name__
            log.warning("memory_sync_failed", error=self._state.last_error)
            raise
        if indexed:
            log.info(
                "memory_sync_done",
                documents=indexed,
                elapsed_ms=int((time.monotonic() - started) * 1000),
            )

    async def _sync_documents(
        self, force: bool, progress: ProgressCallback | None, log: Any
    ) -> int:
        """One sync pass. Returns the number of documents committed."""
        if self._check_model():
            force = True

        entries, unreadable = await asyncio.to_thread(self._scan)
        active = {e.path for e in entries} | unreadable

        committed = 0
        if self._state.batch.pending_job is not None:
            committed += await self._reconcile_pending(entries, log)

        stored = {d.path: d.digest for d in self._repo.list_documents()}
        stale = [p for p in stored if p not in active]
        for path in stale:
            self._repo.delete_document(path)
        if stale:
            log.info("memory_stale_removed", count=len(stale))

        stored = {d.path: d.digest for d in self._repo.list_documents()}
        dirty = [
            e
            for e in entries
            if (force or stored.get(e.path) != e.digest) and not self._is_inflight(e)
        ]
        if not dirty:
            if not stale and committed == 0:
                self._state.dirty = self._state.batch.pending_job is not None
                return 0
            self._finish_sync()
            return committed

        total = len(dirty)
        use_batch = self._batch_usable()
        tracker = _CommitTracker(self, total, progress)
        tracker.report(BATCH_LABEL if use_batch else DIRECT_LABEL)

        pending: list[Chunk] = []
        for entry in dirty:
            chunks = self._chunker.chunk(entry.path, entry.content)
            self._apply_cache(chunks)
            tracker.add(entry, chunks)
            pending.extend(c for c in chunks if not c.embedding)
        tracker.commit_ready()

        if pending and use_batch:
            pending = await self._embed_with_batch(pending, tracker, log)

        if pending:
            await self._direct.embed(pending, on_batch=tracker.on_batch)

        self._finish_sync()
        return committed + tracker.completed

    def _finish_sync(self) -> None:
        self._prune_cache()
        self._state.last_sync = time.time()
        self._state.last_error = None
        self._state.dirty = self._state.batch.pending_job is not None

    def _scan(self) -> tuple[list[DocumentEntry], set[str]]:
        """List and read memory files. Runs in a worker thread."""
        entries: list[DocumentEntry] = []
        unreadable: set[str] = set()
        for abs_path in list_memory_files(self.workspace_dir, self.settings.extra_paths):
            try:
                entries.append(build_document_entry(abs_path, self.workspace_dir))
            except DocumentIOError as exc:
                unreadable.add(exc.path)
                logger.warning("memory_document_unreadable", path=exc.path, error=str(exc.cause))
        return entries, unreadable

    def _check_model(self) -> bool:
        """Record the embedding model; True when it changed and embeddings were cleared."""
        stored = self._repo.get_meta(_META_MODEL)
        model = self.provider.model
        if stored == model:
            return False
        changed = stored is not None
        if changed:
            logger.info("memory_model_changed", previous=stored, model=model)
            self._repo.clear_embeddings()
            self._repo.delete_meta(_META_VECTOR_DIMS)
            self._vector_dims = None
            self._vec_table = None
            self._state.batch.pending_job = None
            self._inflight.clear()
        self._repo.set_meta(_META_MODEL, model)
        return changed

    def _is_inflight(self, entry: DocumentEntry) -> bool:
        held = self._inflight.get(entry.path)
        return held is not None and held[0].digest == entry.digest

    def _apply_cache(self, chunks: list[Chunk]) -> None:
        if not self.settings.cache.enabled or not chunks:
            return
        cached = self._repo.get_cached_embeddings(self.provider.model, (c.hash for c in chunks))
        for chunk in chunks:
            if chunk.hash in cached:
                chunk.embedding = cached[chunk.hash]
                chunk.model = self.provider.model

    def _prune_cache(self) -> None:
        max_entries = self.settings.cache.max_entries
        if self.settings.cache.enabled and max_entries is not None:
            removed = self._repo.prune_embedding_cache(max_entries)
            if removed:
                logger.debug("embedding_cache_pruned", removed=removed)

    # ------------------------------------------------------------------
    # Commit
    # ------------------------------------------------------------------

    def _commit(self, entry: DocumentEntry, chunks: list[Chunk]) -> None:
        if self._closing.is_set():
            raise ManagerClosedError("Closed during sync")
        fresh = {c.hash: c.embedding for c in chunks if c.embedding}
        if self.settings.cache.enabled and fresh:
            self._repo.put_cached_embeddings(self.provider.model, fresh)
        vec_table = self._ensure_vec_table(chunks)
        self._repo.replace_document(
            Document(path=entry.path, digest=entry.digest, mtime_ms=entry.mtime_ms, size=entry.size),
            chunks,
            vec_table,
        )

    def _ensure_vec_table(self, chunks: list[Chunk]) -> str | None:
        if not (self.settings.store.vector.enabled and self._db.vector_available):
            return None
        dims = next((len(c.embedding) for c in chunks if c.embedding), None)
        if dims is None:
            return self._vec_table
        if self._vec_table is None or dims != self._vector_dims:
            try:
                self._vec_table = ensure_vec_table(
                    self._conn, model_to_slug(self.provider.model), dims
                )
            except sqlite3.Error as exc:
                raise StoreError(f"Cannot create vector table: {exc}") from exc
            if dims != self._vector_dims:
                self._vector_dims = dims
                self._repo.set_meta(_META_VECTOR_DIMS, str(dims))
        return self._vec_table

    # ------------------------------------------------------------------
    # Remote batch
    # ------------------------------------------------------------------

    def _batch_usable(self) -> bool:
        if self._pipeline is None or not self._state.batch.enabled:
            return False
        # One outstanding job at a time; later documents take the direct path.
        return self._state.batch.pending_job is None

    async def _embed_with_batch(
        self, pending: list[Chunk], tracker: _CommitTracker, log: Any
    ) -> list[Chunk]:
        """Run the batch pipeline. Returns the chunks still needing the direct path."""
        assert self._pipeline is not None
        documents = {path: entry.digest for path, (entry, _) in tracker.documents.items()}
        wait = self.settings.remote.batch.wait
        try:
            if wait:
                await self._pipeline.run(pending, documents)
            else:
                job = await self._pipeline.submit(pending, documents)
        except BatchPipelineError as exc:
            self._record_batch_failure(str(exc), log)
            return pending

        if wait:
            self._record_batch_success()
            tracker.commit_ready()
            return []

        self._state.batch.pending_job = job
        handed_off = 0
        for path in job.documents:
            held = tracker.documents.pop(path, None)
            if held is not None:
                self._inflight[path] = held
                handed_off += 1
        log.info("memory_batch_submitted", job_id=job.job_id, documents=len(job.documents))
        tracker.commit_ready()
        tracker.total -= handed_off
        tracker.report(f"Batch job {job.job_id} submitted ({handed_off} documents)")
        return []

    async def _reconcile_pending(self, entries: list[DocumentEntry], log: Any) -> int:
        """Check a job submitted by an earlier sync (``remote.batch.wait = false``)."""
        health = self._state.batch
        job = health.pending_job
        assert job is not None and self._pipeline is not None

        if time.time() - job.created_at > self._pipeline.timeout:
            self._drop_pending(f"Batch job {job.job_id} timed out", log)
            return 0
        try:
            await self._pipeline.check(job)
            if job.is_failed:
                raise BatchPipelineError(f"Batch job {job.job_id} {job.status}", stage="poll")
            if not job.is_completed:
                log.debug("memory_batch_pending", job_id=job.job_id, status=job.status)
                return 0
            await self._pipeline.apply_results(job)
        except BatchPipelineError as exc:
            self._drop_pending(str(exc), log)
            return 0

        self._record_batch_success()
        current = {e.path: e.digest for e in entries}
        committed = 0
        for path, (entry, chunks) in self._inflight.items():
            if current.get(path) == entry.digest and all(c.embedding for c in chunks):
                self._commit(entry, chunks)
                committed += 1
        health.pending_job = None
        self._inflight.clear()
        log.info("memory_batch_reconciled", job_id=job.job_id, documents=committed)
        return committed

    def _drop_pending(self, message: str, log: Any) -> None:
        self._state.batch.pending_job = None
        self._inflight.clear()
        self._record_batch_failure(message, log)

    def _record_batch_failure(self, message: str, log: Any) -> None:
        health = self._state.batch
        disabled = health.record_failure(message)
        log.warning(
            "memory_batch_failed",
            failures=health.failures,
            limit=health.limit,
            disabled=disabled,
            error=message,
        )
        self._persist_health()

    def _record_batch_success(self) -> None:
        self._state.batch.record_success()
        self._persist_health()

    def _persist_health(self) -> None:
        if self.settings.remote.batch.persist_health:
            self._repo.set_meta(_META_BATCH_HEALTH, self._state.batch.to_json())

    def reenable_batch(self) -> None:
        """Turn remote batch mode back on after the circuit breaker tripped."""
        self._state.batch.reenable()
        self._persist_health()

    # ------------------------------------------------------------------
    # Query
    # ------------------------------------------------------------------

    async def query(
        self,
        text: str,
        *,
        min_score: float | None = None,
        max_results: int | None = None,
    ) -> list[RankedChunk]:
        """Hybrid search over the committed index. Never waits for a running sync."""
        if self._closed:
            return []
        if self.settings.sync.on_search and self._state.dirty:
            self._schedule_sync("search")
        cleaned = text.strip()
        if not cleaned:
            return []

        query_cfg = self.settings.query
        vec_table = self._query_vec_table()
        embedding: list[float] | None = None
        if vec_table is not None:
            try:
                embedding = await self.provider.embed_query(cleaned)
            except Exception as exc:  # noqa: BLE001 - degrade to keyword search
                logger.warning("memory_query_embedding_failed", error=str(exc))
        if self._closed:
            return []
        return search_index(
            self._repo,
            cleaned,
            query_embedding=embedding,
            vec_table=vec_table,
            hybrid=query_cfg.hybrid,
            max_results=max_results if max_results is not None else query_cfg.max_results,
            min_score=min_score if min_score is not None else query_cfg.min_score,
        )

    search = query

    def _query_vec_table(self) -> str | None:
        if not (self.settings.store.vector.enabled and self._db.vector_available):
            return None
        table = vec_table_name(model_to_slug(self.provider.model))
        try:
            if vec_table_dims(self._conn, table) is None:
                return None
        except sqlite3.Error:
            return None
        return table

    # ------------------------------------------------------------------
    # Triggers
    # ------------------------------------------------------------------

    def mark_dirty(self, paths: list[str | Path] | None = None) -> None:
        """Flag the index as needing a sync.

        *paths* are only logged; the next sync compares digests of every
        document, so changes the caller did not name are still picked up.
        """
        self._state.dirty = True
        if paths:
            logger.debug(
                "memory_marked_dirty", agent=self.agent_id, paths=[Path(p).as_posix() for p in paths]
            )

    async def warm_session(self, session_key: str | None = None) -> None:
        """Start a background sync once per session, when configured."""
        if not self.settings.sync.on_session_start or self._closed:
            return
        key = (session_key or "").strip()
        if key and key in self._warm_sessions:
            return
        self._schedule_sync("session-start")
        if key:
            self._warm_sessions.add(key)

    def _on_watch_change(self, paths: list[Path]) -> None:
        self.mark_dirty(paths)
        self._schedule_sync("watch")

    def _schedule_sync(self, reason: str) -> None:
        if self._closed:
            return
        task = asyncio.create_task(self._background_sync(reason))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _background_sync(self, reason: str) -> None:
        try:
            await self.sync(reason=reason)
        except ManagerClosedError:
            return
        except Exception as exc:  # noqa: BLE001 - recorded in status().last_error
            logger.warning("memory_background_sync_failed", reason=reason, error=str(exc))

    async def _interval_loop(self, seconds: float) -> None:
        while not self._closing.is_set():
            try:
                await asyncio.wait_for(self._closing.wait(), timeout=seconds)
            except TimeoutError:
                self._schedule_sync("interval")

    # ------------------------------------------------------------------
    # Status + probes
    # ------------------------------------------------------------------

    def status(self) -> MemoryStatus:
        """Snapshot of the index. Never raises; after close() counts are the last known."""
        if not self._closed:
            try:
                self._last_counts = (
                    self._repo.count_documents(),
                    self._repo.count_chunks(),
                    self._repo.count_cached_embeddings(),
                )
            except sqlite3.Error as exc:
                logger.debug("memory_status_counts_failed", error=str(exc))
        documents, chunks, cached = self._last_counts

        batch_cfg = self.settings.remote.batch
        health = self._state.batch
        batch = None
        if batch_cfg.enabled:
            batch = BatchStatus(
                enabled=health.enabled,
                failures=health.failures,
                limit=health.limit,
                wait=batch_cfg.wait,
                poll_interval_ms=batch_cfg.poll_interval_ms,
                timeout_minutes=batch_cfg.timeout_minutes,
                available=self._pipeline is not None,
                last_error=health.last_error,
                pending_job=health.pending_job.summary() if health.pending_job else None,
            )

        return MemoryStatus(
            documents=documents,
            chunks=chunks,
            dirty=self._state.dirty,
            workspace_dir=str(self.workspace_dir),
            db_path=str(self.db_path),
            provider=self.provider.id,
            model=self.provider.model,
            vector=VectorStatus(
                enabled=self.settings.store.vector.enabled,
                available=self._db.vector_available,
                dims=self._vector_dims,
                error=self._db.vector_error,
            ),
            fts_available=self._repo.fts_available,
            cache=CacheStatus(
                enabled=self.settings.cache.enabled,
                entries=cached,
                max_entries=self.settings.cache.max_entries,
            ),
            batch=batch,
            last_sync=self._state.last_sync,
            last_error=self._state.last_error,
            closed=self._closed,
        )

    async def probe_embedding_availability(self) -> EmbeddingProbe:
        try:
            unwrap(await call_with_retry(self._policy, "probe", self.provider.embed_batch, ["ping"]))
        except ProviderError as exc:
            return EmbeddingProbe(ok=False, error=str(exc))
        return EmbeddingProbe(ok=True)

    def probe_vector_availability(self) -> bool:
        return self.settings.store.vector.enabled and self._db.vector_available

    async def read_file(
        self, rel_path: str, from_line: int | None = None, lines: int | None = None
    ) -> FileContent:
        """Read a memory document (or a line range of it).

        Raises:
            ValueError: ``"path required"`` when the path is not a readable memory document.
        """
        text, path = await asyncio.to_thread(
            read_memory_file,
            self.workspace_dir,
            self.settings.extra_paths,
            rel_path,
            from_line,
            lines,
        )
        return FileContent(path=path, text=text)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def close(self) -> None:
        """Stop background work and release resources. Idempotent."""
        if self._closed:
            return
        self._closed = True
        self._closing.set()

        if self._watcher is not None:
            await self._watcher.stop()
            self._watcher = None
        if self._interval_task is not None:
            self._interval_task.cancel()
        tasks = [t for t in (self._sync_task, self._interval_task, *self._background) if t]
        # Outcomes were already logged and recorded by the tasks themselves.
        await asyncio.gather(*tasks, return_exceptions=True)

        if self._pipeline is not None:
            await self._pipeline.aclose()
        await self.provider.aclose()
        self._conn.close()
        if self._registry is not None and self._cache_key is not None:
            self._registry.discard(self._cache_key, self)
        logger.info("memory_manager_closed", agent=self.agent_id)


class _CommitTracker:
    """Commits each document once all of its chunks carry embeddings."""

    def __init__(
        self, manager: MemoryIndexManager, total: int, progress: ProgressCallback | None
    ) -> None:
        self._manager = manager
        self._progress = progress
        self.total = total
        self.completed = 0
        self.documents: dict[str, tuple[DocumentEntry, list[Chunk]]] = {}

    def add(self, entry: DocumentEntry, chunks: list[Chunk]) -> None:
        self.documents[entry.path] = (entry, chunks)

    def commit_ready(self) -> None:
        ready = [p for p, (_, chunks) in self.documents.items() if all(c.embedding for c in chunks)]
        for path in ready:
            entry, chunks = self.documents.pop(path)
            self._manager._commit(entry, chunks)
            self.completed += 1
            self.report()

    async def on_batch(self, embedded: list[Chunk]) -> None:
        self.commit_ready()
        remaining = sum(1 for _, chunks in self.documents.values() for c in chunks if not c.embedding)
        if remaining:
            self.report(f"Embedding chunks ({remaining} remaining)")

    def report(self, label: str | None = None) -> None:
        if self._progress is not None:
            self._progress(SyncProgress(completed=self.completed, total=self.total, label=label))


# ---------------------------------------------------------------------------
# Registry + factory
# ---------------------------------------------------------------------------


class ManagerRegistry:
    """Live managers keyed by agent, workspace and settings.

    Owned by the host application; a closed manager removes itself.
    """

    def __init__(self) -> None:
        self._managers: dict[str, MemoryIndexManager] = {}

    def get(self, key: str) -> MemoryIndexManager | None:
        return self._managers.get(key)

    def add(self, key: str, manager: MemoryIndexManager) -> None:
        self._managers[key] = manager

    def discard(self, key: str, manager: MemoryIndexManager) -> None:
        if self._managers.get(key) is manager:
            del self._managers[key]

    def __len__(self) -> int:
        return len(self._managers)

    async def close_all(self) -> None:
        for manager in list(self._managers.values()):
            await manager.close()


@dataclass
class ManagerResult:
    manager: MemoryIndexManager | None
    reason: str | None = None


def manager_cache_key(resolved: ResolvedMemorySearch) -> str:
    settings = json.dumps(asdict(resolved.settings), sort_keys=True, default=str)
    return f"{resolved.agent_id}:{resolved.workspace_dir}:{settings}"


async def get_memory_search_manager(
    config: MemindexConfig,
    agent_id: str,
    *,
    registry: ManagerRegistry | None = None,
    provider: EmbeddingProvider | None = None,
    http_transport: httpx.AsyncBaseTransport | None = None,
    retry_policy: RetryPolicy | None = None,
) -> ManagerResult:
    """Return the (shared, when *registry* is given) manager for *agent_id*.

    Never raises for configuration or store problems; ``reason`` explains a
    missing manager instead.
    """
    try:
        resolved = resolve_memory_search_config(config, agent_id)
    except ConfigError as exc:
        return ManagerResult(None, str(exc))
    if resolved is None:
        return ManagerResult(None, f"memory search is disabled for agent '{agent_id}'")

    key = manager_cache_key(resolved)
    if registry is not None and (existing := registry.get(key)) is not None:
        return ManagerResult(existing)

    try:
        manager = MemoryIndexManager(
            resolved,
            provider or create_embedding_provider(resolved.settings),
            http_transport=http_transport,
            retry_policy=retry_policy,
            registry=registry,
            cache_key=key,
        )
    except (ConfigError, StoreError) as exc:
        logger.warning("memory_manager_unavailable", agent=agent_id, error=str(exc))
        return ManagerResult(None, str(exc))

    await manager.start()
    if registry is not None:
        registry.add(key, manager)
    return ManagerResult(manager)
