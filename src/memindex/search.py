"""Hybrid memory search: vector similarity (sqlite-vec) + keyword (FTS5 / LIKE).

Scores are blended with configurable weights:
  score(c) = vector_weight * vector_score(c) + text_weight * text_score(c)

vector_score = 1 - cosine distance, clamped to [0, 1].
text_score   = bm25 relative to the best keyword hit (best hit = 1.0).

Without a usable vector channel (extension missing, disabled, or the query
embedding failed) ranking is lexical-only and score = text_score.
"""

from __future__ import annotations

import sqlite3
from dataclasses import dataclass

import structlog

from memindex.config import HybridCfg
from memindex.db.models import Chunk
from memindex.db.repository import Repository

logger = structlog.get_logger()

SNIPPET_MAX_CHARS = 700


@dataclass
class RankedChunk:
    """One search hit.

    Attributes:
        score: Blended relevance in [0, 1] (higher = more relevant).
        vector_score: Similarity from the vector channel, None if not retrieved there.
        text_score: Normalised keyword score, None if not retrieved there.
    """

    path: str
    start_line: int
    end_line: int
    snippet: str
    score: float
    vector_score: float | None = None
    text_score: float | None = None
    chunk_id: int | None = None


def search_index(
    repo: Repository,
    query: str,
    *,
    query_embedding: list[float] | None,
    vec_table: str | None,
    hybrid: HybridCfg,
    max_results: int,
    min_score: float,
) -> list[RankedChunk]:
    """Rank stored chunks for *query*, best-first.

    Never raises for SQLite failures; a failing channel contributes no hits.
    """
    cleaned = query.strip()
    if not cleaned or max_results < 1:
        return []
    candidates = max(1, max_results * max(1, hybrid.candidate_multiplier))

    use_vector = bool(vec_table and query_embedding)
    vector_hits: list[tuple[Chunk, float]] = []
    if use_vector:
        vector_hits = _safe(
            "vector", lambda: repo.search_vec(vec_table, query_embedding, limit=candidates)
        )

    keyword_hits: list[tuple[Chunk, float]] = []
    if hybrid.enabled or not use_vector:
        keyword_hits = _safe("keyword", lambda: repo.search_fts(cleaned, limit=candidates))

    if not use_vector:
        ranked = [_ranked(c, score=ts, text_score=ts) for c, ts in _text_scores(keyword_hits)]
    elif not hybrid.enabled:
        ranked = [
            _ranked(c, score=vs, vector_score=vs) for c, vs in _vector_scores(vector_hits)
        ]
    else:
        ranked = _merge(vector_hits, keyword_hits, hybrid)

    ranked.sort(key=lambda r: (-r.score, r.path, r.start_line))
    return [r for r in ranked if r.score >= min_score][:max_results]


# ------------------------------------------------------------------
# Scoring
# ------------------------------------------------------------------


def _vector_scores(hits: list[tuple[Chunk, float]]) -> list[tuple[Chunk, float]]:
    return [(chunk, min(1.0, max(0.0, 1.0 - distance))) for chunk, distance in hits]


def _text_scores(hits: list[tuple[Chunk, float]]) -> list[tuple[Chunk, float]]:
    """bm25 (negative, lower = better) → share of the best hit's score."""
    if not hits:
        return []
    best = min(score for _, score in hits)
    if best >= 0:
        return [(chunk, 1.0) for chunk, _ in hits]
    return [(chunk, max(0.0, score / best)) for chunk, score in hits]


def _merge(
    vector_hits: list[tuple[Chunk, float]],
    keyword_hits: list[tuple[Chunk, float]],
    hybrid: HybridCfg,
) -> list[RankedChunk]:
    total = hybrid.vector_weight + hybrid.text_weight
    vw, tw = hybrid.vector_weight / total, hybrid.text_weight / total

    chunk_map: dict[int, Chunk] = {}
    vec: dict[int, float] = {}
    text: dict[int, float] = {}
    for chunk, score in _vector_scores(vector_hits):
        if chunk.id is not None:
            chunk_map[chunk.id] = chunk
            vec[chunk.id] = score
    for chunk, score in _text_scores(keyword_hits):
        if chunk.id is not None:
            chunk_map.setdefault(chunk.id, chunk)
            text[chunk.id] = score

    return [
        _ranked(
            chunk,
            score=vw * vec.get(cid, 0.0) + tw * text.get(cid, 0.0),
            vector_score=vec.get(cid),
            text_score=text.get(cid),
        )
        for cid, chunk in chunk_map.items()
    ]


def _ranked(
    chunk: Chunk,
    *,
    score: float,
    vector_score: float | None = None,
    text_score: float | None = None,
) -> RankedChunk:
    return RankedChunk(
        path=chunk.path,
        start_line=chunk.start_line,
        end_line=chunk.end_line,
        snippet=chunk.text[:SNIPPET_MAX_CHARS],
        score=score,
        vector_score=vector_score,
        text_score=text_score,
        chunk_id=chunk.id,
    )


def _safe(channel: str, fn) -> list[tuple[Chunk, float]]:
    try:
        return fn()
    except sqlite3.Error as exc:
        logger.warning("search_channel_failed", channel=channel, error=str(exc))
        return []
