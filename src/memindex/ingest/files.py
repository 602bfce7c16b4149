"""Memory document discovery and reading.

Memory documents are ``MEMORY.md`` / ``memory.md`` at the workspace root,
every ``*.md`` below ``memory/``, and any configured extra paths (Markdown
files, or directories searched recursively). Symlinks are never followed.
"""

from __future__ import annotations

import hashlib
import os
from dataclasses import dataclass, field
from pathlib import Path

import structlog

from memindex.errors import DocumentIOError

logger = structlog.get_logger()

_ROOT_MEMORY_FILES = ("MEMORY.md", "memory.md")
_MEMORY_DIR = "memory"


@dataclass
class DocumentEntry:
    """A memory file as found on disk at sync time.

    Attributes:
        path: Workspace-relative POSIX path (absolute POSIX path for extra
            paths outside the workspace). Used as the document key.
        abs_path: Absolute filesystem path.
        digest: SHA-256 hex digest of the UTF-8 content.
        content: Decoded text, read once while computing the digest.
    """

    path: str
    abs_path: Path
    digest: str
    mtime_ms: int
    size: int
    content: str = field(default="", repr=False)


def is_memory_path(rel_path: str) -> bool:
    """True for workspace-relative paths that name a memory document."""
    rel = rel_path.replace("\\", "/").removeprefix("./")
    if rel in _ROOT_MEMORY_FILES:
        return True
    return rel.startswith(f"{_MEMORY_DIR}/") and rel.endswith(".md")


def normalize_extra_paths(workspace_dir: Path, extra_paths: list[str]) -> list[Path]:
    """Resolve configured extra paths against the workspace, dropping duplicates."""
    seen: dict[Path, None] = {}
    for raw in extra_paths:
        raw = raw.strip()
        if not raw:
            continue
        p = Path(raw).expanduser()
        if not p.is_absolute():
            p = workspace_dir / p
        seen[Path(os.path.normpath(p))] = None
    return list(seen)


def _walk_markdown(root: Path) -> list[Path]:
    found: list[Path] = []
    for dirpath, dirnames, filenames in os.walk(root, followlinks=False):
        dirnames[:] = sorted(d for d in dirnames if not (Path(dirpath) / d).is_symlink())
        for name in sorted(filenames):
            candidate = Path(dirpath) / name
            if name.endswith(".md") and not candidate.is_symlink() and candidate.is_file():
                found.append(candidate)
    return found


def list_memory_files(workspace_dir: Path, extra_paths: list[str] | None = None) -> list[Path]:
    """Return absolute paths of every memory document, sorted and de-duplicated."""
    files: dict[Path, None] = {}

    for name in _ROOT_MEMORY_FILES:
        candidate = workspace_dir / name
        if candidate.is_file() and not candidate.is_symlink():
            files[candidate] = None

    memory_dir = workspace_dir / _MEMORY_DIR
    if memory_dir.is_dir() and not memory_dir.is_symlink():
        for p in _walk_markdown(memory_dir):
            files[p] = None

    for extra in normalize_extra_paths(workspace_dir, extra_paths or []):
        if extra.is_symlink():
            continue
        if extra.is_dir():
            for p in _walk_markdown(extra):
                files[p] = None
        elif extra.is_file() and extra.suffix == ".md":
            files[extra] = None

    return sorted(files)


def document_key(abs_path: Path, workspace_dir: Path) -> str:
    """Workspace-relative POSIX key, or the absolute POSIX path outside the workspace."""
    try:
        return abs_path.relative_to(workspace_dir).as_posix()
    except ValueError:
        return abs_path.as_posix()


def build_document_entry(abs_path: Path, workspace_dir: Path) -> DocumentEntry:
    """Read *abs_path* and describe it.

    Raises:
        DocumentIOError: If the file cannot be read or is not valid UTF-8.
    """
    key = document_key(abs_path, workspace_dir)
    try:
        raw = abs_path.read_bytes()
        stat = abs_path.stat()
        content = raw.decode("utf-8")
    except (OSError, UnicodeDecodeError) as exc:
        raise DocumentIOError(key, exc) from exc
    return DocumentEntry(
        path=key,
        abs_path=abs_path,
        digest=hashlib.sha256(raw).hexdigest(),
        mtime_ms=int(stat.st_mtime * 1000),
        size=stat.st_size,
        content=content,
    )


def _resolves_within(abs_path: Path, base: Path) -> bool:
    """True when no component of *abs_path* below *base* is a symlink."""
    return abs_path.resolve() == base.resolve() / abs_path.relative_to(base)


def read_memory_file(
    workspace_dir: Path,
    extra_paths: list[str],
    rel_path: str,
    from_line: int | None = None,
    lines: int | None = None,
) -> tuple[str, str]:
    """Read a memory document, optionally a line range of it.

    Only memory documents inside the workspace, or Markdown files under a
    configured extra path, may be read. Symlinks are refused.

    Returns:
        ``(text, path)`` where *path* is the document key.

    Raises:
        ValueError: ``"path required"`` for empty, disallowed or non-file paths.
        DocumentIOError: If the file exists but cannot be read.
    """
    raw = rel_path.strip()
    if not raw:
        raise ValueError("path required")
    candidate = Path(raw).expanduser()
    abs_path = Path(os.path.normpath(candidate if candidate.is_absolute() else workspace_dir / candidate))
    key = document_key(abs_path, workspace_dir)

    in_workspace = not Path(key).is_absolute() and not key.startswith("..")
    base: Path | None = workspace_dir if in_workspace and is_memory_path(key) else None
    if base is None:
        for extra in normalize_extra_paths(workspace_dir, extra_paths):
            if extra.is_symlink():
                continue
            if extra.is_dir() and (abs_path == extra or extra in abs_path.parents):
                base = extra
                break
            if extra.is_file() and abs_path == extra:
                base = extra.parent
                break
    if base is None or abs_path.suffix != ".md":
        raise ValueError("path required")
    if not abs_path.is_file() or not _resolves_within(abs_path, base):
        raise ValueError("path required")

    try:
        content = abs_path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as exc:
        raise DocumentIOError(key, exc) from exc

    if not from_line and not lines:
        return content, key
    all_lines = content.split("\n")
    start = max(1, from_line or 1)
    count = max(1, lines or len(all_lines))
    return "\n".join(all_lines[start - 1 : start - 1 + count]), key
