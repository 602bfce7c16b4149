"""Tests for the memindex config loader and per-agent resolution."""

from __future__ import annotations

import warnings
from pathlib import Path

import pytest
import yaml

from memindex.config import (
    ConfigError,
    MemindexConfig,
    config_from_dict,
    load_config,
    memory_search_from_dict,
    resolve_memory_search_config,
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _write_yaml(path: Path, data: dict) -> None:
    path.write_text(yaml.dump(data), encoding="utf-8")


def _missing(tmp_path: Path) -> Path:
    return tmp_path / "nonexistent" / "config.yaml"


# ---------------------------------------------------------------------------
# Defaults
# ---------------------------------------------------------------------------


def test_load_config_defaults_no_files(tmp_path: Path) -> None:
    """No config files → hardcoded defaults."""
    cfg = load_config(project_dir=tmp_path, global_config_path=_missing(tmp_path))
    assert isinstance(cfg, MemindexConfig)
    assert cfg.logging.level == "INFO"
    assert cfg.agents.list == []


def test_memory_search_defaults() -> None:
    cfg = memory_search_from_dict({})
    assert cfg.provider == "openai"
    assert cfg.model == "text-embedding-3-small"
    assert cfg.chunking.tokens == 400
    assert cfg.chunking.overlap == 80
    assert cfg.sync.watch is True
    assert cfg.query.min_score == pytest.approx(0.35)
    assert cfg.query.hybrid.vector_weight == pytest.approx(0.7)
    assert cfg.query.hybrid.text_weight == pytest.approx(0.3)
    assert cfg.remote.batch.enabled is True
    assert cfg.remote.batch.wait is True
    assert cfg.remote.batch.poll_interval_ms == 2_000
    assert cfg.remote.batch.failure_limit == 2
    assert cfg.remote.batch.persist_health is False
    assert cfg.cache.enabled is True
    assert cfg.cache.max_entries is None


# ---------------------------------------------------------------------------
# Layering
# ---------------------------------------------------------------------------


def test_project_config_overrides_global(tmp_path: Path) -> None:
    global_cfg = tmp_path / "global.yaml"
    _write_yaml(global_cfg, {"logging": {"level": "debug", "format": "json"}})
    _write_yaml(tmp_path / "memindex.yaml", {"logging": {"level": "warning"}})

    cfg = load_config(project_dir=tmp_path, global_config_path=global_cfg)
    assert cfg.logging.level == "WARNING"


def test_empty_global_file_gives_defaults(tmp_path: Path) -> None:
    global_cfg = tmp_path / "config.yaml"
    global_cfg.write_text("# nothing here\n", encoding="utf-8")
    cfg = load_config(project_dir=tmp_path, global_config_path=global_cfg)
    assert cfg.logging.format == "console"


def test_agent_memory_search_deep_merged_over_defaults(tmp_path: Path) -> None:
    _write_yaml(
        tmp_path / "memindex.yaml",
        {
            "agents": {
                "defaults": {
                    "workspace": str(tmp_path / "ws"),
                    "memory_search": {"chunking": {"tokens": 500, "overlap": 50}},
                },
                "list": [
                    {"id": "main", "memory_search": {"chunking": {"overlap": 10}}},
                ],
            }
        },
    )
    cfg = load_config(project_dir=tmp_path, global_config_path=_missing(tmp_path))
    resolved = resolve_memory_search_config(cfg, "main")
    assert resolved is not None
    assert resolved.settings.chunking.tokens == 500  # from defaults
    assert resolved.settings.chunking.overlap == 10  # agent override
    assert resolved.workspace_dir == (tmp_path / "ws").resolve()


def test_resolve_uses_agent_workspace(tmp_path: Path) -> None:
    cfg = config_from_dict(
        {
            "agents": {
                "defaults": {"workspace": str(tmp_path / "default")},
                "list": [{"id": "ops", "workspace": str(tmp_path / "ops")}],
            }
        }
    )
    resolved = resolve_memory_search_config(cfg, "ops")
    assert resolved.workspace_dir == (tmp_path / "ops").resolve()


def test_resolve_store_path_substitutes_agent_id(tmp_path: Path) -> None:
    cfg = config_from_dict(
        {
            "agents": {
                "defaults": {
                    "memory_search": {"store": {"path": str(tmp_path / "{agent_id}.sqlite")}}
                }
            }
        }
    )
    resolved = resolve_memory_search_config(cfg, "helper")
    assert resolved.db_path == (tmp_path / "helper.sqlite").resolve()


def test_resolve_disabled_returns_none() -> None:
    cfg = config_from_dict({"agents": {"defaults": {"memory_search": {"enabled": False}}}})
    assert resolve_memory_search_config(cfg, "main") is None


# ---------------------------------------------------------------------------
# Environment overrides
# ---------------------------------------------------------------------------


def test_env_overrides_model_and_provider(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.setenv("MEMINDEX_EMBEDDING_MODEL", "text-embedding-3-large")
    monkeypatch.setenv("MEMINDEX_EMBEDDING_PROVIDER", "OpenAI")
    cfg = load_config(project_dir=tmp_path, global_config_path=_missing(tmp_path))
    resolved = resolve_memory_search_config(cfg, "main")
    assert resolved.settings.model == "text-embedding-3-large"
    assert resolved.settings.provider == "openai"


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


def test_global_config_rejects_api_keys(tmp_path: Path) -> None:
    global_cfg = tmp_path / "config.yaml"
    _write_yaml(
        global_cfg,
        {"agents": {"defaults": {"memory_search": {"remote": {"api_key": "sk-123"}}}}},
    )
    with pytest.raises(ConfigError, match="api_key"):
        load_config(project_dir=tmp_path, global_config_path=global_cfg)


def test_global_config_allows_header_names_and_token_counts(tmp_path: Path) -> None:
    global_cfg = tmp_path / "config.yaml"
    _write_yaml(
        global_cfg,
        {
            "agents": {
                "defaults": {
                    "memory_search": {
                        "chunking": {"tokens": 300},
                        "remote": {"headers": {"X-Api-Key-Id": "team"}},
                    }
                }
            }
        },
    )
    cfg = load_config(project_dir=tmp_path, global_config_path=global_cfg)
    assert resolve_memory_search_config(cfg, "main").settings.chunking.tokens == 300


def test_unknown_top_level_key_warns(tmp_path: Path) -> None:
    _write_yaml(tmp_path / "memindex.yaml", {"retrieval": {"top_k": 3}})
    with warnings.catch_warnings(record=True) as caught:
        warnings.simplefilter("always")
        load_config(project_dir=tmp_path, global_config_path=_missing(tmp_path))
    assert any("retrieval" in str(w.message) for w in caught)


@pytest.mark.parametrize(
    "raw",
    [
        {"chunking": {"tokens": 0}},
        {"chunking": {"tokens": 100, "overlap": 100}},
        {"chunking": {"overlap": -1}},
        {"query": {"hybrid": {"vector_weight": 0, "text_weight": 0}}},
        {"sync": {"interval_minutes": -5}},
        {"remote": {"batch": {"failure_limit": 0}}},
        {"store": {"path": "https://example.com/index.sqlite"}},
        {"chunking": {"tokens": "many"}},
        {"extra_paths": "notes"},
    ],
)
def test_invalid_memory_search_raises(raw: dict) -> None:
    with pytest.raises(ConfigError):
        memory_search_from_dict(raw)


def test_config_error_is_value_error() -> None:
    assert issubclass(ConfigError, ValueError)


def test_agent_entry_requires_id() -> None:
    with pytest.raises(ConfigError):
        config_from_dict({"agents": {"list": [{"workspace": "/tmp/x"}]}})
