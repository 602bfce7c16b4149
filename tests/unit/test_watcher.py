"""Tests for MemoryWatcher path filtering and lifecycle."""

from __future__ import annotations

import pytest
from watchfiles import Change

from memindex.watcher import MemoryWatcher


def _watcher(workspace, extra_paths=None) -> MemoryWatcher:
    return MemoryWatcher(
        workspace_dir=workspace,
        on_change=lambda paths: None,
        extra_paths=extra_paths or [],
        debounce_ms=50,
    )


@pytest.mark.parametrize("rel,expected", [
    ("MEMORY.md", True),
    ("memory.md", True),
    ("memory/today.md", True),
    ("memory/projects/alpha.md", True),
    ("memory", True),
    ("memory/draft.txt", False),
    ("README.md", False),
    ("src/memory/a.md", False),
    ("memory/.git/a.md", False),
    ("memory/node_modules/pkg/README.md", False),
])
def test_accepts_memory_paths_only(workspace, rel, expected):
    watcher = _watcher(workspace)
    assert watcher.accepts(Change.modified, str(workspace / rel)) is expected


def test_accepts_outside_workspace_rejected(workspace, tmp_path):
    watcher = _watcher(workspace)
    assert watcher.accepts(Change.added, str(tmp_path / "elsewhere" / "MEMORY.md")) is False


def test_accepts_extra_path_markdown(workspace, tmp_path):
    notes = tmp_path / "notes"
    notes.mkdir()
    watcher = _watcher(workspace, [str(notes)])
    assert watcher.accepts(Change.added, str(notes / "team.md")) is True
    assert watcher.accepts(Change.added, str(notes / "deep" / "x.md")) is True
    assert watcher.accepts(Change.added, str(notes / "team.json")) is False


def test_accepts_deleted_paths(workspace):
    watcher = _watcher(workspace)
    assert watcher.accepts(Change.deleted, str(workspace / "memory" / "gone.md")) is True


@pytest.mark.asyncio
async def test_start_and_stop(workspace):
    watcher = _watcher(workspace)
    await watcher.start()
    assert watcher.running
    await watcher.stop()
    assert not watcher.running
    await watcher.stop()  # idempotent


@pytest.mark.asyncio
async def test_start_without_existing_roots(tmp_path):
    watcher = _watcher(tmp_path / "missing")
    await watcher.start()
    assert not watcher.running
