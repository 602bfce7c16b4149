"""Shared pytest fixtures."""

from __future__ import annotations

import json
from pathlib import Path

import httpx
import pytest

from memindex.config import config_from_dict
from memindex.db.connection import Database
from memindex.db.migrations import initialize
from memindex.embeddings.direct import NO_WAIT
from memindex.embeddings.provider import BatchTransport, EmbeddingProvider
from memindex.manager import get_memory_search_manager

BASE_URL = "https://api.openai.test/v1"


@pytest.fixture
def tmp_db(tmp_path):
    """File-based DB in tmp_path with schema initialized, closed after test."""
    db = Database(tmp_path / "index.sqlite", load_vector=False)
    conn = db.connect()
    initialize(conn)
    yield conn
    conn.close()


@pytest.fixture
def vec_db(tmp_path):
    """Like tmp_db but with sqlite-vec loaded; skipped where extensions cannot load."""
    db = Database(tmp_path / "vec.sqlite")
    conn = db.connect()
    if not db.vector_available:
        conn.close()
        pytest.skip(f"sqlite-vec unavailable: {db.vector_error}")
    initialize(conn)
    yield conn
    conn.close()


class FakeProvider(EmbeddingProvider):
    """Deterministic in-process provider that records every call.

    ``failures`` is a list of exceptions raised (in order) by the next
    embed_batch calls before it starts succeeding.
    """

    def __init__(
        self,
        *,
        model: str = "text-embedding-3-small",
        dims: int = 3,
        batch_transport: BatchTransport | None = None,
    ) -> None:
        self.id = "openai"
        self.model = model
        self.dims = dims
        self.batch_transport = batch_transport
        self.batch_calls: list[list[str]] = []
        self.query_calls: list[str] = []
        self.failures: list[Exception] = []
        self.query_error: Exception | None = None
        self.closed = False

    def vector_for(self, text: str) -> list[float]:
        words = text.lower().split()
        base = [float(len(words) or 1), float(len(text) % 7 + 1), 1.0]
        return (base * ((self.dims // 3) + 1))[: self.dims]

    async def embed_query(self, text: str) -> list[float]:
        self.query_calls.append(text)
        if self.query_error is not None:
            raise self.query_error
        return self.vector_for(text)

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        assert all(t.strip() for t in texts), "empty text sent to provider"
        self.batch_calls.append(list(texts))
        if self.failures:
            raise self.failures.pop(0)
        return [self.vector_for(t) for t in texts]

    async def aclose(self) -> None:
        self.closed = True


@pytest.fixture
def provider():
    return FakeProvider()


class FakeBatchAPI:
    """In-memory OpenAI-compatible file + batch API for httpx.MockTransport.

    ``create_responses`` holds (status, body) pairs returned by successive
    ``POST /batches`` calls; once exhausted every create succeeds.
    ``status_sequence`` holds the statuses returned by successive
    ``GET /batches/{id}`` calls; the last one repeats.
    """

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self.uploaded: list[dict] = []
        self.create_calls = 0
        self.create_responses: list[tuple[int, object]] = []
        self.status_sequence: list[str] = ["completed"]
        self.shuffle_output = False
        self.output_override: str | None = None

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handle)

    def handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        if request.method == "POST" and path.endswith("/files"):
            self.uploaded = _read_upload(request)
            return httpx.Response(200, json={"id": "file_1", "purpose": "batch"})
        if request.method == "POST" and path.endswith("/batches"):
            self.create_calls += 1
            if self.create_responses:
                status, body = self.create_responses.pop(0)
                if isinstance(body, str):
                    return httpx.Response(status, text=body)
                return httpx.Response(status, json=body)
            return httpx.Response(200, json={"id": "batch_1", "status": "in_progress"})
        if request.method == "GET" and path.endswith("/batches/batch_1"):
            status = self.status_sequence.pop(0) if len(self.status_sequence) > 1 else self.status_sequence[0]
            body = {"id": "batch_1", "status": status}
            if status == "completed":
                body["output_file_id"] = "file_out"
            return httpx.Response(200, json=body)
        if request.method == "GET" and path.endswith("/files/file_out/content"):
            if self.output_override is not None:
                return httpx.Response(200, text=self.output_override)
            lines = [
                json.dumps(
                    {
                        "custom_id": req["custom_id"],
                        "response": {
                            "status_code": 200,
                            "body": {"data": [{"embedding": [float(i + 1), 0.0, 0.0], "index": 0}]},
                        },
                    }
                )
                for i, req in enumerate(self.uploaded)
            ]
            if self.shuffle_output:
                lines.reverse()
            return httpx.Response(200, text="\n".join(lines))
        return httpx.Response(404, json={"error": f"unexpected {request.method} {path}"})

    def calls_to(self, suffix: str) -> int:
        return sum(1 for r in self.requests if r.url.path.endswith(suffix))


def _read_upload(request: httpx.Request) -> list[dict]:
    body = request.content.decode("utf-8", errors="replace")
    lines = [line for line in body.splitlines() if line.startswith('{"custom_id"')]
    return [json.loads(line) for line in lines]


@pytest.fixture
def batch_api():
    return FakeBatchAPI()


@pytest.fixture
def batch_transport():
    return BatchTransport(
        base_url=BASE_URL,
        model="text-embedding-3-small",
        headers={"Authorization": "Bearer test"},
    )


@pytest.fixture
def workspace(tmp_path) -> Path:
    ws = tmp_path / "workspace"
    (ws / "memory").mkdir(parents=True)
    return ws


def _make_config(workspace: Path, **memory_search) -> object:
    """Config dict → MemindexConfig with test-friendly memory_search defaults."""
    ms = {
        "provider": "openai",
        "model": "text-embedding-3-small",
        "store": {"path": str(workspace.parent / "index.sqlite"), "vector": {"enabled": False}},
        "sync": {"watch": False, "on_session_start": False, "on_search": False},
        "query": {"min_score": 0, "hybrid": {"enabled": True}},
        "remote": {"batch": {"enabled": False}},
    }
    for key, value in memory_search.items():
        if isinstance(value, dict) and isinstance(ms.get(key), dict):
            ms[key] = {**ms[key], **value}
        else:
            ms[key] = value
    return config_from_dict(
        {
            "agents": {
                "defaults": {"workspace": str(workspace), "memory_search": ms},
                "list": [{"id": "main", "default": True}],
            }
        }
    )


@pytest.fixture
def open_manager():
    """Factory that opens managers with the fake provider and closes them after the test."""
    opened = []

    async def _open(config, provider, *, http_transport=None, registry=None):
        result = await get_memory_search_manager(
            config,
            "main",
            provider=provider,
            http_transport=http_transport,
            retry_policy=NO_WAIT,
            registry=registry,
        )
        assert result.manager is not None, result.reason
        opened.append(result.manager)
        return result.manager

    yield _open
    # Managers are closed by the async tests themselves; this guards leaks.
    for manager in opened:
        if not manager.closed:
            manager._conn.close()


@pytest.fixture
def make_config():
    """``make_config(workspace, **memory_search)`` → MemindexConfig for agent ``main``."""
    return _make_config


@pytest.fixture
def make_provider():
    """``make_provider(**kwargs)`` → a fresh FakeProvider."""
    return FakeProvider
