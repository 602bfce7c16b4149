"""Remote batch embedding pipeline for OpenAI-compatible batch APIs.

One pipeline run: serialize pending chunks as JSONL → upload to ``/files`` →
create a job on ``/batches`` → poll it → download the output file and map
every result line back to its chunk through the line's ``custom_id``.

Any unrecovered failure raises BatchPipelineError; the caller owns failure
accounting and the fallback to the direct path.
"""

from __future__ import annotations

import asyncio
import json
import time
from dataclasses import dataclass, field
from typing import Any

import httpx
import structlog

from memindex.db.models import Chunk
from memindex.embeddings.direct import RetryPolicy, call_with_retry
from memindex.embeddings.outcome import Ok, Transient
from memindex.embeddings.provider import BatchTransport
from memindex.errors import BatchPipelineError, ManagerClosedError
from memindex.ingest.base import hash_text

logger = structlog.get_logger()

BATCH_ENDPOINT = "/v1/embeddings"
COMPLETION_WINDOW = "24h"
_UPLOAD_FILENAME = "memory-embeddings.jsonl"
_COMPLETED = "completed"
_FAILED_STATES = frozenset({"failed", "expired", "cancelled", "cancelling"})


def correlation_id(chunk: Chunk) -> str:
    """Stable per-chunk request id; rebuilt identically from the same chunk."""
    return hash_text(
        f"memory:{chunk.path}:{chunk.start_line}:{chunk.end_line}:{chunk.hash}:{chunk.chunk_index}"
    )


@dataclass
class BatchJob:
    """A submitted remote job and the chunks it carries.

    Attributes:
        mapping: ``custom_id`` → chunk, in submission order.
        documents: ``path`` → digest of every document with chunks in the job.
        created_at: Wall-clock submission time (``time.time()``).
    """

    job_id: str
    file_id: str
    status: str
    mapping: dict[str, Chunk] = field(default_factory=dict)
    documents: dict[str, str] = field(default_factory=dict)
    output_file_id: str | None = None
    error_file_id: str | None = None
    created_at: float = field(default_factory=time.time)

    @property
    def is_completed(self) -> bool:
        return self.status == _COMPLETED

    @property
    def is_failed(self) -> bool:
        return self.status in _FAILED_STATES

    def summary(self) -> dict[str, Any]:
        return {
            "job_id": self.job_id,
            "status": self.status,
            "chunks": len(self.mapping),
            "documents": len(self.documents),
            "created_at": self.created_at,
        }


class RemoteBatchPipeline:
    """Drives one provider's file + batch endpoints over ``httpx.AsyncClient``.

    Args:
        transport: Base URL, auth headers and model of the provider.
        agent_id: Recorded in the job metadata.
        http_transport: Optional httpx transport (``httpx.MockTransport`` in tests).
        closing: Event set by the owner on shutdown; interrupts poll sleeps.
    """

    def __init__(
        self,
        transport: BatchTransport,
        *,
        agent_id: str = "main",
        policy: RetryPolicy | None = None,
        poll_interval_ms: int = 2_000,
        timeout_minutes: int = 60,
        http_transport: httpx.AsyncBaseTransport | None = None,
        closing: asyncio.Event | None = None,
    ) -> None:
        self._transport = transport
        self._agent_id = agent_id
        self._policy = policy or RetryPolicy()
        self.poll_interval = max(0, poll_interval_ms) / 1000
        self.timeout = timeout_minutes * 60
        self._closing = closing or asyncio.Event()
        self._client = httpx.AsyncClient(
            base_url=transport.base_url,
            headers=transport.headers,
            timeout=httpx.Timeout(60.0),
            transport=http_transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    # ------------------------------------------------------------------
    # Full run
    # ------------------------------------------------------------------

    async def run(self, chunks: list[Chunk], documents: dict[str, str]) -> BatchJob:
        """Submit, wait for and apply a job. Embeddings land on the chunks in place."""
        job = await self.submit(chunks, documents)
        await self.wait(job)
        await self.apply_results(job)
        return job

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    async def submit(self, chunks: list[Chunk], documents: dict[str, str]) -> BatchJob:
        """Upload the request file and create the job."""
        mapping: dict[str, Chunk] = {}
        lines: list[str] = []
        for chunk in chunks:
            if not chunk.text.strip():
                continue
            cid = correlation_id(chunk)
            mapping[cid] = chunk
            lines.append(
                json.dumps(
                    {
                        "custom_id": cid,
                        "method": "POST",
                        "url": BATCH_ENDPOINT,
                        "body": {"model": self._transport.model, "input": chunk.text},
                    }
                )
            )
        if not mapping:
            raise BatchPipelineError("No chunks to submit", stage="upload")

        file_id = await self._upload("\n".join(lines) + "\n")
        payload = await self._create(file_id)
        job = BatchJob(
            job_id=str(payload["id"]),
            file_id=file_id,
            status=str(payload.get("status", "validating")),
            mapping=mapping,
            documents=dict(documents),
        )
        self._update(job, payload)
        logger.info("batch_job_created", job_id=job.job_id, chunks=len(mapping))
        return job

    async def _upload(self, body: str) -> str:
        async def _post() -> dict[str, Any]:
            response = await self._client.post(
                "/files",
                data={"purpose": "batch"},
                files={"file": (_UPLOAD_FILENAME, body.encode("utf-8"), "application/jsonl")},
            )
            response.raise_for_status()
            return response.json()

        payload = await self._call("upload", _post, retry=False)
        file_id = payload.get("id")
        if not file_id:
            raise BatchPipelineError("Upload response carried no file id", stage="upload")
        return str(file_id)

    async def _create(self, file_id: str) -> dict[str, Any]:
        async def _post() -> dict[str, Any]:
            response = await self._client.post(
                "/batches",
                json={
                    "input_file_id": file_id,
                    "endpoint": BATCH_ENDPOINT,
                    "completion_window": COMPLETION_WINDOW,
                    "metadata": {"source": "memindex", "agent": self._agent_id},
                },
            )
            response.raise_for_status()
            return response.json()

        payload = await self._call("create", _post, retry=True)
        if not payload.get("id"):
            raise BatchPipelineError("Create response carried no job id", stage="create")
        return payload

    async def check(self, job: BatchJob) -> BatchJob:
        """Refresh *job* with one status request."""

        async def _get() -> dict[str, Any]:
            response = await self._client.get(f"/batches/{job.job_id}")
            response.raise_for_status()
            return response.json()

        self._update(job, await self._call("poll", _get, retry=True))
        return job

    async def wait(self, job: BatchJob) -> BatchJob:
        """Poll until *job* completes.

        Raises:
            BatchPipelineError: The job failed, expired or outlived the timeout.
            ManagerClosedError: The owner closed while waiting.
        """
        deadline = job.created_at + self.timeout
        while True:
            if job.is_completed:
                return job
            if job.is_failed:
                raise BatchPipelineError(f"Batch job {job.job_id} {job.status}", stage="poll")
            if time.time() >= deadline:
                raise BatchPipelineError(
                    f"Batch job {job.job_id} still {job.status} after "
                    f"{self.timeout / 60:g} minutes",
                    stage="poll",
                    transient=True,
                )
            logger.debug("batch_job_waiting", job_id=job.job_id, status=job.status)
            await self._sleep(self.poll_interval)
            await self.check(job)

    async def apply_results(self, job: BatchJob) -> None:
        """Download the output file and write each embedding onto its chunk."""
        if not job.output_file_id:
            raise BatchPipelineError(
                f"Batch job {job.job_id} completed without an output file", stage="download"
            )
        output_file_id = job.output_file_id

        async def _get() -> str:
            response = await self._client.get(f"/files/{output_file_id}/content")
            response.raise_for_status()
            return response.text

        text = await self._call("download", _get, retry=True)
        vectors = parse_output(text)

        missing = [cid for cid in job.mapping if cid not in vectors]
        if missing:
            raise BatchPipelineError(
                f"Batch output is missing {len(missing)} of {len(job.mapping)} results",
                stage="parse",
            )
        for cid, chunk in job.mapping.items():
            chunk.embedding = vectors[cid]
            chunk.model = self._transport.model
        logger.info("batch_job_applied", job_id=job.job_id, chunks=len(job.mapping))

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _update(job: BatchJob, payload: dict[str, Any]) -> None:
        job.status = str(payload.get("status", job.status))
        job.output_file_id = payload.get("output_file_id") or job.output_file_id
        job.error_file_id = payload.get("error_file_id") or job.error_file_id

    async def _call(self, stage: str, fn: Any, *, retry: bool) -> Any:
        policy = self._policy if retry else RetryPolicy(attempts=1)
        outcome = await call_with_retry(policy, f"batch_{stage}", fn)
        if isinstance(outcome, Ok):
            return outcome.value
        raise BatchPipelineError(
            f"Batch {stage} failed: {_describe(outcome.error)}",
            stage=stage,
            transient=isinstance(outcome, Transient),
        ) from outcome.error

    async def _sleep(self, seconds: float) -> None:
        if self._closing.is_set():
            raise ManagerClosedError("Closed while waiting for a batch job")
        try:
            await asyncio.wait_for(self._closing.wait(), timeout=seconds)
        except TimeoutError:
            return
        raise ManagerClosedError("Closed while waiting for a batch job")


def parse_output(text: str) -> dict[str, list[float]]:
    """Parse a batch output file into ``custom_id`` → embedding.

    Raises:
        BatchPipelineError: On malformed lines, error lines or non-200 results.
    """
    vectors: dict[str, list[float]] = {}
    for lineno, raw in enumerate(text.splitlines(), start=1):
        if not raw.strip():
            continue
        try:
            line = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise BatchPipelineError(f"Output line {lineno} is not JSON", stage="parse") from exc
        cid = line.get("custom_id")
        response = line.get("response") or {}
        if line.get("error") or response.get("status_code") != 200:
            detail = line.get("error") or response.get("body") or response.get("status_code")
            raise BatchPipelineError(
                f"Batch request {cid} failed: {detail}", stage="parse"
            )
        data = (response.get("body") or {}).get("data") or []
        embedding = data[0].get("embedding") if data else None
        if not cid or not isinstance(embedding, list) or not embedding:
            raise BatchPipelineError(f"Output line {lineno} carries no embedding", stage="parse")
        vectors[str(cid)] = [float(v) for v in embedding]
    return vectors


def _describe(exc: BaseException) -> str:
    if isinstance(exc, httpx.HTTPStatusError):
        return f"HTTP {exc.response.status_code}: {exc.response.text[:200]}"
    return str(exc) or type(exc).__name__
