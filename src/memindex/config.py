"""memindex configuration loader.

Priority (high → low):
  1. Environment variables  (MEMINDEX_EMBEDDING_PROVIDER, MEMINDEX_EMBEDDING_MODEL)
  2. Per-project memindex.yaml
  3. Global ~/.memindex/config.yaml  (no API keys)
  4. Hardcoded defaults

Memory-search settings are resolved per agent: ``agents.defaults.memory_search``
deep-merged with the matching ``agents.list[].memory_search`` overrides.
All YAML reads use yaml.safe_load(), never yaml.load().
"""

from __future__ import annotations

import os
import re
import warnings
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from memindex.errors import ConfigError

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

_GLOBAL_CONFIG_DIR: Path = Path.home() / ".memindex"
_GLOBAL_CONFIG_PATH: Path = _GLOBAL_CONFIG_DIR / "config.yaml"
_PROJECT_CONFIG_NAME: str = "memindex.yaml"
_DEFAULT_STATE_DIR: Path = _GLOBAL_CONFIG_DIR / "state"

# Matches api_key, apikey, api-key, api_secret, *_token, token, *_secret, secret,
# password, passwd, credential(s). Leaves max_tokens / chunking.tokens alone.
_API_KEY_RE: re.Pattern[str] = re.compile(
    r"api[_\-]?(?:key|secret)"
    r"|_token$"
    r"|^token$"
    r"|_secret$"
    r"|^secret$"
    r"|passw(?:ord|d)"
    r"|credential",
    re.IGNORECASE,
)

_KNOWN_SECTIONS: frozenset[str] = frozenset(["agents", "logging"])

# Providers whose embeddings API speaks the OpenAI batch protocol.
BATCH_CAPABLE_PROVIDERS: frozenset[str] = frozenset(["openai"])


# ---------------------------------------------------------------------------
# Data model
# ---------------------------------------------------------------------------


@dataclass
class VectorCfg:
    """Optional sqlite-vec acceleration (memory_search.store.vector)."""

    enabled: bool = True
    extension_path: str | None = None


@dataclass
class StoreCfg:
    """Index location (memory_search.store:).

    Attributes:
        path: SQLite file. ``{agent_id}`` is substituted; None means
            ``~/.memindex/state/<agent_id>.sqlite``.
    """

    path: str | None = None
    vector: VectorCfg = field(default_factory=VectorCfg)


@dataclass
class ChunkingCfg:
    """Chunk size and overlap, both in estimated tokens."""

    tokens: int = 400
    overlap: int = 80


@dataclass
class SyncCfg:
    """When the index is brought up to date (memory_search.sync:)."""

    watch: bool = True
    watch_debounce_ms: int = 1_500
    on_session_start: bool = True
    on_search: bool = True
    interval_minutes: int = 0


@dataclass
class HybridCfg:
    """Vector + keyword blending (memory_search.query.hybrid:)."""

    enabled: bool = True
    vector_weight: float = 0.7
    text_weight: float = 0.3
    candidate_multiplier: int = 4


@dataclass
class QueryCfg:
    max_results: int = 6
    min_score: float = 0.35
    hybrid: HybridCfg = field(default_factory=HybridCfg)


@dataclass
class CacheCfg:
    """Embedding cache keyed by (model, chunk hash)."""

    enabled: bool = True
    max_entries: int | None = None


@dataclass
class BatchCfg:
    """Remote batch embedding settings (memory_search.remote.batch:).

    Attributes:
        enabled: Use the provider's asynchronous batch API when it has one.
        wait: Poll the job to completion inside sync(); when False the job is
            reconciled on a later sync.
        poll_interval_ms: Delay between job status checks.
        timeout_minutes: Upper bound on one job's lifetime before it is
            counted as a failure.
        failure_limit: Consecutive pipeline failures before batch mode is
            disabled for the rest of the process.
        persist_health: Store the enabled/failures state in the index so a
            disabled batch mode survives restarts.
    """

    enabled: bool = True
    wait: bool = True
    poll_interval_ms: int = 2_000
    timeout_minutes: int = 60
    failure_limit: int = 2
    persist_health: bool = False


@dataclass
class RemoteCfg:
    """Remote embedding endpoint overrides (memory_search.remote:).

    API keys are never read from config files; they come from the provider's
    environment variable.
    """

    base_url: str | None = None
    headers: dict[str, str] = field(default_factory=dict)
    batch: BatchCfg = field(default_factory=BatchCfg)


@dataclass
class MemorySearchCfg:
    """Resolved memory-search settings for one agent."""

    enabled: bool = True
    provider: str = "openai"
    model: str = "text-embedding-3-small"
    extra_paths: list[str] = field(default_factory=list)
    store: StoreCfg = field(default_factory=StoreCfg)
    chunking: ChunkingCfg = field(default_factory=ChunkingCfg)
    sync: SyncCfg = field(default_factory=SyncCfg)
    query: QueryCfg = field(default_factory=QueryCfg)
    cache: CacheCfg = field(default_factory=CacheCfg)
    remote: RemoteCfg = field(default_factory=RemoteCfg)


@dataclass
class AgentEntry:
    """One entry of ``agents.list``; ``memory_search`` holds raw overrides."""

    id: str
    default: bool = False
    workspace: str | None = None
    memory_search: dict[str, Any] = field(default_factory=dict)


@dataclass
class AgentsCfg:
    workspace: str = "~/memindex-workspace"
    memory_search: dict[str, Any] = field(default_factory=dict)
    list: list[AgentEntry] = field(default_factory=list)


@dataclass
class LoggingCfg:
    """Log output (logging:)."""

    level: str = "INFO"
    format: str = "console"  # console | json
    file: str | None = None


@dataclass
class MemindexConfig:
    """Root configuration object, built by load_config() from merged YAML layers."""

    agents: AgentsCfg = field(default_factory=AgentsCfg)
    logging: LoggingCfg = field(default_factory=LoggingCfg)


@dataclass
class ResolvedMemorySearch:
    """Per-agent settings plus the paths they resolve to."""

    agent_id: str
    workspace_dir: Path
    db_path: Path
    settings: MemorySearchCfg


# ---------------------------------------------------------------------------
# Validation helpers
# ---------------------------------------------------------------------------


def _check_no_api_keys(data: dict[str, Any], source: Path) -> None:
    """Raise ConfigError if *data* contains any API-key-like key names."""

    def _scan(obj: Any, path: str) -> None:
        if isinstance(obj, dict):
            for k, v in obj.items():
                full = f"{path}.{k}" if path else k
                # Header maps legitimately carry auth header *names*.
                if path.endswith("headers"):
                    continue
                if _API_KEY_RE.search(str(k)):
                    raise ConfigError(
                        f"Global config '{source}' contains a forbidden key '{full}'.\n"
                        f"  API keys must be set via environment variables, not config files.\n"
                        f"  Remove '{full}' from {source.name} and use:\n"
                        f"    export {str(k).upper().replace('-', '_')}=<value>"
                    )
                _scan(v, full)

    _scan(data, "")


def _warn_unknown_keys(data: dict[str, Any], source: Path | str) -> None:
    """Emit a UserWarning for unrecognised top-level keys."""
    for key in data:
        if key not in _KNOWN_SECTIONS:
            warnings.warn(
                f"Unknown config key '{key}' in '{source}'; ignored.",
                UserWarning,
                stacklevel=4,
            )


def _validate(cfg: MemorySearchCfg) -> None:
    if cfg.chunking.tokens < 1:
        raise ConfigError(f"chunking.tokens must be >= 1, got {cfg.chunking.tokens}")
    if not 0 <= cfg.chunking.overlap < cfg.chunking.tokens:
        raise ConfigError(
            f"chunking.overlap must be in [0, {cfg.chunking.tokens}), got {cfg.chunking.overlap}"
        )
    if not cfg.model.strip():
        raise ConfigError("memory_search.model must not be empty")
    if cfg.sync.interval_minutes < 0 or cfg.sync.watch_debounce_ms < 0:
        raise ConfigError("sync.interval_minutes and sync.watch_debounce_ms must be >= 0")
    hybrid = cfg.query.hybrid
    if hybrid.vector_weight < 0 or hybrid.text_weight < 0:
        raise ConfigError("query.hybrid weights must be >= 0")
    if hybrid.vector_weight == 0 and hybrid.text_weight == 0:
        raise ConfigError("query.hybrid.vector_weight and text_weight cannot both be 0")
    batch = cfg.remote.batch
    if batch.poll_interval_ms < 0 or batch.timeout_minutes < 1 or batch.failure_limit < 1:
        raise ConfigError(
            "remote.batch.poll_interval_ms must be >= 0, timeout_minutes and "
            "failure_limit must be >= 1"
        )
    if cfg.store.path and cfg.store.path.startswith(("http://", "https://")):
        raise ConfigError(f"store.path must be a local file path, not a URL: '{cfg.store.path}'")


# ---------------------------------------------------------------------------
# Merge + build
# ---------------------------------------------------------------------------


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Return a new dict that is *base* deep-merged with *override*."""
    result = dict(base)
    for k, v in override.items():
        if k in result and isinstance(result[k], dict) and isinstance(v, dict):
            result[k] = _deep_merge(result[k], v)
        else:
            result[k] = v
    return result


def _section(data: dict[str, Any], key: str) -> dict[str, Any]:
    value = data.get(key) or {}
    if not isinstance(value, dict):
        raise ConfigError(f"'{key}' must be a mapping, got {type(value).__name__}")
    return value


def _as_bool(value: Any, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "on"}
    return bool(value)


def _number(raw: dict[str, Any], key: str, default: Any, kind: type) -> Any:
    value = raw.get(key, default)
    if value is None:
        return default
    try:
        return kind(value)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"'{key}' must be a {kind.__name__}, got {value!r}") from exc


def memory_search_from_dict(data: dict[str, Any]) -> MemorySearchCfg:
    """Build and validate a *MemorySearchCfg* from a raw ``memory_search`` dict.

    Raises:
        ConfigError: On wrong types or out-of-range values.
    """
    d = MemorySearchCfg()

    store = _section(data, "store")
    vector = _section(store, "vector")
    chunking = _section(data, "chunking")
    sync = _section(data, "sync")
    query = _section(data, "query")
    hybrid = _section(query, "hybrid")
    cache = _section(data, "cache")
    remote = _section(data, "remote")
    batch = _section(remote, "batch")

    extra = data.get("extra_paths") or []
    if not isinstance(extra, list):
        raise ConfigError("extra_paths must be a list of paths")

    cfg = MemorySearchCfg(
        enabled=_as_bool(data.get("enabled"), d.enabled),
        provider=str(data.get("provider", d.provider)).strip().lower(),
        model=str(data.get("model", d.model)).strip(),
        extra_paths=[str(p) for p in extra if str(p).strip()],
        store=StoreCfg(
            path=store.get("path") or d.store.path,
            vector=VectorCfg(
                enabled=_as_bool(vector.get("enabled"), d.store.vector.enabled),
                extension_path=vector.get("extension_path") or d.store.vector.extension_path,
            ),
        ),
        chunking=ChunkingCfg(
            tokens=_number(chunking, "tokens", d.chunking.tokens, int),
            overlap=_number(chunking, "overlap", d.chunking.overlap, int),
        ),
        sync=SyncCfg(
            watch=_as_bool(sync.get("watch"), d.sync.watch),
            watch_debounce_ms=_number(sync, "watch_debounce_ms", d.sync.watch_debounce_ms, int),
            on_session_start=_as_bool(sync.get("on_session_start"), d.sync.on_session_start),
            on_search=_as_bool(sync.get("on_search"), d.sync.on_search),
            interval_minutes=_number(sync, "interval_minutes", d.sync.interval_minutes, int),
        ),
        query=QueryCfg(
            max_results=_number(query, "max_results", d.query.max_results, int),
            min_score=_number(query, "min_score", d.query.min_score, float),
            hybrid=HybridCfg(
                enabled=_as_bool(hybrid.get("enabled"), d.query.hybrid.enabled),
                vector_weight=_number(hybrid, "vector_weight", d.query.hybrid.vector_weight, float),
                text_weight=_number(hybrid, "text_weight", d.query.hybrid.text_weight, float),
                candidate_multiplier=_number(
                    hybrid, "candidate_multiplier", d.query.hybrid.candidate_multiplier, int
                ),
            ),
        ),
        cache=CacheCfg(
            enabled=_as_bool(cache.get("enabled"), d.cache.enabled),
            max_entries=_number(cache, "max_entries", None, int),
        ),
        remote=RemoteCfg(
            base_url=remote.get("base_url") or d.remote.base_url,
            headers={str(k): str(v) for k, v in _section(remote, "headers").items()},
            batch=BatchCfg(
                enabled=_as_bool(batch.get("enabled"), d.remote.batch.enabled),
                wait=_as_bool(batch.get("wait"), d.remote.batch.wait),
                poll_interval_ms=_number(
                    batch, "poll_interval_ms", d.remote.batch.poll_interval_ms, int
                ),
                timeout_minutes=_number(
                    batch, "timeout_minutes", d.remote.batch.timeout_minutes, int
                ),
                failure_limit=_number(batch, "failure_limit", d.remote.batch.failure_limit, int),
                persist_health=_as_bool(
                    batch.get("persist_health"), d.remote.batch.persist_health
                ),
            ),
        ),
    )
    _validate(cfg)
    return cfg


def config_from_dict(data: dict[str, Any]) -> MemindexConfig:
    """Build a *MemindexConfig* from a merged raw YAML dict."""
    cfg = MemindexConfig()

    if "logging" in data:
        lg = _section(data, "logging")
        cfg.logging = LoggingCfg(
            level=str(lg.get("level", cfg.logging.level)).upper(),
            format=str(lg.get("format", cfg.logging.format)),
            file=lg.get("file") or cfg.logging.file,
        )

    if "agents" in data:
        a = _section(data, "agents")
        defaults = _section(a, "defaults")
        entries: list[AgentEntry] = []
        for raw in a.get("list") or []:
            if not isinstance(raw, dict) or not str(raw.get("id", "")).strip():
                raise ConfigError("Every agents.list entry needs a non-empty 'id'")
            entries.append(
                AgentEntry(
                    id=str(raw["id"]).strip(),
                    default=bool(raw.get("default", False)),
                    workspace=raw.get("workspace"),
                    memory_search=_section(raw, "memory_search"),
                )
            )
        cfg.agents = AgentsCfg(
            workspace=str(defaults.get("workspace", cfg.agents.workspace)),
            memory_search=_section(defaults, "memory_search"),
            list=entries,
        )

    return cfg


def _apply_env_overrides(cfg: MemindexConfig) -> MemindexConfig:
    """Apply MEMINDEX_* environment variable overrides (top layer)."""
    overrides: dict[str, Any] = {}
    if provider := os.environ.get("MEMINDEX_EMBEDDING_PROVIDER"):
        overrides["provider"] = provider
    if model := os.environ.get("MEMINDEX_EMBEDDING_MODEL"):
        overrides["model"] = model
    if overrides:
        cfg.agents.memory_search = _deep_merge(cfg.agents.memory_search, overrides)
    return cfg


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def load_config(
    project_dir: Path | None = None,
    *,
    global_config_path: Path | None = None,
) -> MemindexConfig:
    """Load and return a merged *MemindexConfig*.

    Applies layers in order: global → per-project → env vars.

    Args:
        project_dir: Directory to search for *memindex.yaml*. Defaults to CWD.
        global_config_path: Override the global config path (for testing).

    Raises:
        ConfigError: If global config contains API-key-like fields or a
            section has the wrong shape.
    """
    global_path = global_config_path if global_config_path is not None else _GLOBAL_CONFIG_PATH
    search_dir = project_dir if project_dir is not None else Path.cwd()

    merged: dict[str, Any] = {}

    if global_path.exists():
        raw_global = yaml.safe_load(global_path.read_text(encoding="utf-8")) or {}
        _check_no_api_keys(raw_global, global_path)
        _warn_unknown_keys(raw_global, global_path)
        merged = _deep_merge(merged, raw_global)

    project_cfg_path = search_dir / _PROJECT_CONFIG_NAME
    if project_cfg_path.exists():
        raw_project = yaml.safe_load(project_cfg_path.read_text(encoding="utf-8")) or {}
        _warn_unknown_keys(raw_project, project_cfg_path)
        merged = _deep_merge(merged, raw_project)

    return _apply_env_overrides(config_from_dict(merged))


def resolve_memory_search_config(
    config: MemindexConfig, agent_id: str
) -> ResolvedMemorySearch | None:
    """Resolve the memory-search settings for *agent_id*.

    Returns None when memory search is disabled for the agent.

    Raises:
        ConfigError: If the merged settings are invalid.
    """
    entry = next((a for a in config.agents.list if a.id == agent_id), None)
    raw = config.agents.memory_search
    if entry is not None:
        raw = _deep_merge(raw, entry.memory_search)
    settings = memory_search_from_dict(raw)
    if not settings.enabled:
        return None

    workspace = (entry.workspace if entry and entry.workspace else config.agents.workspace)
    workspace_dir = Path(workspace).expanduser().resolve()

    if settings.store.path:
        db_path = Path(settings.store.path.replace("{agent_id}", agent_id)).expanduser()
    else:
        db_path = _DEFAULT_STATE_DIR / f"{agent_id}.sqlite"

    return ResolvedMemorySearch(
        agent_id=agent_id,
        workspace_dir=workspace_dir,
        db_path=db_path.resolve(),
        settings=settings,
    )


__all__ = [
    "BATCH_CAPABLE_PROVIDERS",
    "AgentEntry",
    "AgentsCfg",
    "BatchCfg",
    "CacheCfg",
    "ChunkingCfg",
    "ConfigError",
    "HybridCfg",
    "LoggingCfg",
    "MemindexConfig",
    "MemorySearchCfg",
    "QueryCfg",
    "RemoteCfg",
    "ResolvedMemorySearch",
    "StoreCfg",
    "SyncCfg",
    "VectorCfg",
    "config_from_dict",
    "load_config",
    "memory_search_from_dict",
    "resolve_memory_search_config",
]
