"""Memory file watcher using watchfiles.

Watches the workspace (and extra paths) recursively, lets only memory
Markdown paths through, and hands each debounced batch of changed paths to
``on_change``. The watcher only reports; deciding what to reindex is the
manager's job.
"""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path

import structlog
from watchfiles import Change, awatch

from memindex.ingest.files import is_memory_path, normalize_extra_paths

logger = structlog.get_logger()

# Directories that never hold memory documents.
IGNORED_DIRS: frozenset[str] = frozenset({".git", ".hg", ".svn", "node_modules", ".venv", "__pycache__"})


@dataclass
class MemoryWatcher:
    """Async watcher for memory documents.

    Attributes:
        workspace_dir: Agent workspace root.
        on_change: Called with the changed paths of each debounced batch.
        extra_paths: Configured extra memory paths (files or directories).
        debounce_ms: Quiet period that closes a batch of changes.
    """

    workspace_dir: Path
    on_change: Callable[[list[Path]], None]
    extra_paths: list[str] = field(default_factory=list)
    debounce_ms: int = 1_500

    _extra_roots: list[Path] = field(default_factory=list, init=False)
    _watch_task: asyncio.Task[None] | None = field(default=None, init=False)
    _stop_event: asyncio.Event = field(default_factory=asyncio.Event, init=False)

    def __post_init__(self) -> None:
        self._extra_roots = normalize_extra_paths(self.workspace_dir, self.extra_paths)

    @property
    def running(self) -> bool:
        return self._watch_task is not None and not self._watch_task.done()

    def accepts(self, change: Change, path: str) -> bool:  # noqa: ARG002
        """watchfiles filter: True for memory documents only."""
        p = Path(path)
        if IGNORED_DIRS.intersection(p.parts):
            return False
        for root in self._extra_roots:
            if p == root or root in p.parents:
                return p.suffix == ".md"
        try:
            rel = p.relative_to(self.workspace_dir).as_posix()
        except ValueError:
            return False
        # The memory/ directory itself (created or removed as a whole).
        return rel == "memory" or is_memory_path(rel)

    async def start(self) -> None:
        """Start watching. No-op when already running or nothing exists to watch."""
        if self._watch_task is not None:
            return
        roots = [self.workspace_dir, *self._extra_roots]
        roots = [r for r in roots if r.exists()]
        if not roots:
            logger.warning("memory_watch_skipped", workspace=str(self.workspace_dir))
            return
        self._stop_event.clear()
        self._watch_task = asyncio.create_task(self._watch_loop(roots))
        logger.info(
            "memory_watcher_started",
            workspace=str(self.workspace_dir),
            roots=len(roots),
            debounce_ms=self.debounce_ms,
        )

    async def stop(self) -> None:
        """Stop watching. Safe to call more than once."""
        self._stop_event.set()
        if self._watch_task is not None:
            self._watch_task.cancel()
            with contextlib.suppress(asyncio.CancelledError, asyncio.TimeoutError):
                await asyncio.wait_for(self._watch_task, timeout=2.0)
            self._watch_task = None
            logger.info("memory_watcher_stopped")

    async def _watch_loop(self, roots: list[Path]) -> None:
        try:
            async for changes in awatch(
                *roots,
                watch_filter=self.accepts,
                debounce=self.debounce_ms,
                stop_event=self._stop_event,
                ignore_permission_denied=True,
            ):
                paths = sorted({Path(p) for _, p in changes})
                if not paths:
                    continue
                logger.info("memory_changes_detected", count=len(paths))
                self.on_change(paths)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            if not self._stop_event.is_set():
                logger.error("memory_watcher_error", error=str(e))
