"""Tests for the remote batch pipeline against an in-memory batch API."""

from __future__ import annotations

import asyncio
import json

import pytest

from memindex.db.models import Chunk
from memindex.embeddings.batch import (
    BATCH_ENDPOINT,
    BatchJob,
    RemoteBatchPipeline,
    correlation_id,
    parse_output,
)
from memindex.embeddings.direct import NO_WAIT
from memindex.errors import BatchPipelineError, ManagerClosedError


def _chunks(n: int = 3, path: str = "memory/log.md") -> list[Chunk]:
    return [
        Chunk(
            path=path,
            chunk_index=i,
            text=f"entry number {i}",
            start_line=i + 1,
            end_line=i + 1,
            hash=f"hash{i}",
        )
        for i in range(n)
    ]


def _pipeline(batch_transport, batch_api, **kwargs) -> RemoteBatchPipeline:
    kwargs.setdefault("poll_interval_ms", 1)
    return RemoteBatchPipeline(
        batch_transport,
        agent_id="main",
        policy=NO_WAIT,
        http_transport=batch_api.transport,
        **kwargs,
    )


def _output_line(custom_id: str, status: int = 200, embedding=None) -> str:
    return json.dumps(
        {
            "custom_id": custom_id,
            "response": {
                "status_code": status,
                "body": {"data": [{"embedding": embedding or [1.0, 0.0, 0.0], "index": 0}]},
            },
        }
    )


# --- correlation ids ---

def test_correlation_id_stable_and_distinct():
    a, b = _chunks(2)
    assert correlation_id(a) == correlation_id(_chunks(2)[0])
    assert correlation_id(a) != correlation_id(b)


def test_correlation_id_depends_on_content_hash():
    a = _chunks(1)[0]
    b = _chunks(1)[0]
    b.hash = "other"
    assert correlation_id(a) != correlation_id(b)


# --- full run ---

@pytest.mark.asyncio
async def test_run_applies_embeddings(batch_transport, batch_api):
    pipeline = _pipeline(batch_transport, batch_api)
    chunks = _chunks(3)
    job = await pipeline.run(chunks, {"memory/log.md": "digest"})
    await pipeline.aclose()

    assert job.is_completed
    assert [c.embedding for c in chunks] == [[1.0, 0, 0], [2.0, 0, 0], [3.0, 0, 0]]
    assert all(c.model == "text-embedding-3-small" for c in chunks)


@pytest.mark.asyncio
async def test_run_maps_out_of_order_results(batch_transport, batch_api):
    batch_api.shuffle_output = True
    pipeline = _pipeline(batch_transport, batch_api)
    chunks = _chunks(4)
    await pipeline.run(chunks, {"memory/log.md": "digest"})
    await pipeline.aclose()
    assert [c.embedding[0] for c in chunks] == [1.0, 2.0, 3.0, 4.0]


@pytest.mark.asyncio
async def test_upload_request_format(batch_transport, batch_api):
    pipeline = _pipeline(batch_transport, batch_api)
    chunks = _chunks(2)
    await pipeline.run(chunks, {})
    await pipeline.aclose()

    assert [line["custom_id"] for line in batch_api.uploaded] == [correlation_id(c) for c in chunks]
    first = batch_api.uploaded[0]
    assert first["method"] == "POST"
    assert first["url"] == BATCH_ENDPOINT
    assert first["body"] == {"model": "text-embedding-3-small", "input": "entry number 0"}

    upload = next(r for r in batch_api.requests if r.url.path.endswith("/files"))
    assert upload.url.path == "/v1/files"
    assert b'name="purpose"' in upload.content
    assert upload.headers["Authorization"] == "Bearer test"

    create = next(r for r in batch_api.requests if r.url.path.endswith("/batches"))
    body = json.loads(create.content)
    assert body["input_file_id"] == "file_1"
    assert body["endpoint"] == BATCH_ENDPOINT
    assert body["completion_window"] == "24h"
    assert body["metadata"]["agent"] == "main"


@pytest.mark.asyncio
async def test_blank_chunks_not_submitted(batch_transport, batch_api):
    chunks = _chunks(2)
    chunks[0].text = "   "
    pipeline = _pipeline(batch_transport, batch_api)
    job = await pipeline.run(chunks, {})
    await pipeline.aclose()
    assert len(job.mapping) == 1
    assert len(batch_api.uploaded) == 1


@pytest.mark.asyncio
async def test_submit_nothing_raises(batch_transport, batch_api):
    pipeline = _pipeline(batch_transport, batch_api)
    with pytest.raises(BatchPipelineError):
        await pipeline.submit([], {})
    await pipeline.aclose()
    assert batch_api.requests == []


# --- failures ---

@pytest.mark.asyncio
async def test_create_retried_on_transient_status(batch_transport, batch_api):
    batch_api.create_responses = [(503, {"error": {"message": "overloaded"}})]
    pipeline = _pipeline(batch_transport, batch_api)
    await pipeline.run(_chunks(1), {})
    await pipeline.aclose()
    assert batch_api.create_calls == 2


@pytest.mark.asyncio
async def test_create_fatal_status_raises(batch_transport, batch_api):
    batch_api.create_responses = [(400, {"error": {"message": "invalid file"}})]
    pipeline = _pipeline(batch_transport, batch_api)
    with pytest.raises(BatchPipelineError) as exc_info:
        await pipeline.run(_chunks(1), {})
    await pipeline.aclose()
    assert exc_info.value.stage == "create"
    assert exc_info.value.transient is False
    assert "HTTP 400" in str(exc_info.value)
    assert batch_api.create_calls == 1


@pytest.mark.asyncio
async def test_failed_job_raises(batch_transport, batch_api):
    batch_api.status_sequence = ["in_progress", "failed"]
    pipeline = _pipeline(batch_transport, batch_api)
    with pytest.raises(BatchPipelineError) as exc_info:
        await pipeline.run(_chunks(1), {})
    await pipeline.aclose()
    assert exc_info.value.stage == "poll"


@pytest.mark.asyncio
async def test_polls_until_completed(batch_transport, batch_api):
    batch_api.status_sequence = ["validating", "in_progress", "finalizing", "completed"]
    pipeline = _pipeline(batch_transport, batch_api)
    await pipeline.run(_chunks(1), {})
    await pipeline.aclose()
    assert batch_api.calls_to("/batches/batch_1") == 4


@pytest.mark.asyncio
async def test_wait_times_out(batch_transport, batch_api):
    batch_api.status_sequence = ["in_progress"]
    pipeline = _pipeline(batch_transport, batch_api, timeout_minutes=0)
    with pytest.raises(BatchPipelineError) as exc_info:
        await pipeline.run(_chunks(1), {})
    await pipeline.aclose()
    assert exc_info.value.transient is True


@pytest.mark.asyncio
async def test_closing_interrupts_poll_sleep(batch_transport, batch_api):
    batch_api.status_sequence = ["in_progress"]
    closing = asyncio.Event()
    pipeline = _pipeline(batch_transport, batch_api, poll_interval_ms=60_000, closing=closing)
    task = asyncio.create_task(pipeline.run(_chunks(1), {}))
    while batch_api.create_calls == 0:
        await asyncio.sleep(0.01)
    closing.set()
    with pytest.raises(ManagerClosedError):
        await asyncio.wait_for(task, timeout=5)
    await pipeline.aclose()


@pytest.mark.asyncio
async def test_missing_results_raise(batch_transport, batch_api):
    chunks = _chunks(2)
    batch_api.output_override = _output_line(correlation_id(chunks[0]))
    pipeline = _pipeline(batch_transport, batch_api)
    with pytest.raises(BatchPipelineError) as exc_info:
        await pipeline.run(chunks, {})
    await pipeline.aclose()
    assert exc_info.value.stage == "parse"


@pytest.mark.asyncio
async def test_apply_results_without_output_file(batch_transport, batch_api):
    pipeline = _pipeline(batch_transport, batch_api)
    job = BatchJob(job_id="batch_1", file_id="file_1", status="completed")
    with pytest.raises(BatchPipelineError) as exc_info:
        await pipeline.apply_results(job)
    await pipeline.aclose()
    assert exc_info.value.stage == "download"


# --- parse_output ---

def test_parse_output_reads_embeddings():
    text = "\n".join([_output_line("a", embedding=[0.5, 0.5]), "", _output_line("b")])
    assert parse_output(text) == {"a": [0.5, 0.5], "b": [1.0, 0.0, 0.0]}


def test_parse_output_error_line():
    with pytest.raises(BatchPipelineError, match="a"):
        parse_output(_output_line("a", status=500))


def test_parse_output_error_field():
    line = json.dumps({"custom_id": "a", "error": {"message": "boom"}, "response": None})
    with pytest.raises(BatchPipelineError):
        parse_output(line)


def test_parse_output_not_json():
    with pytest.raises(BatchPipelineError, match="line 1"):
        parse_output("not json")


def test_parse_output_empty_embedding():
    line = json.dumps({"custom_id": "a", "response": {"status_code": 200, "body": {"data": []}}})
    with pytest.raises(BatchPipelineError):
        parse_output(line)
