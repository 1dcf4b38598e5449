"""Read-only queries over the prompt database: filtering, ranking and semantic search."""

from __future__ import annotations

import logging
import sqlite3
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from .models import Prompt, PromptMetrics
from .storage import (
    Storage,
    StorageError,
    _from_db_time,
    _prompt_from_row,
    _to_db_time,
    average,
    bytes_to_floats,
    cosine_similarity,
)

log = logging.getLogger(__name__)

_ALL_PROMPTS_LIMIT = 100000
_MIN_CANDIDATES = 100
_MAX_CANDIDATES = 1000
_SEMANTIC_MIN_RELEVANCE = 0.1

_JOINED_COLUMNS = """
    p.id, p.content, p.content_hash, p.phase, p.provider, p.model, p.temperature,
    p.max_tokens, p.actual_tokens, p.tags, p.parent_id, p.source_type,
    p.enhancement_method, p.relevance_score, p.usage_count, p.generation_count,
    p.last_used_at, p.created_at, p.updated_at, p.embedding, p.embedding_model,
    p.embedding_provider, p.original_input, p.generation_request, p.generation_context,
    p.persona_used, p.target_model_family,
    mm.generation_model, mm.generation_provider, mm.embedding_model AS mm_embedding_model,
    mm.embedding_provider AS mm_embedding_provider, mm.processing_time, mm.total_tokens
"""


@dataclass
class SearchCriteria:
    """Filters for a plain prompt search."""

    phase: str = ""
    provider: str = ""
    model: str = ""
    tags: list[str] = field(default_factory=list)
    since: datetime | None = None
    limit: int = 0


@dataclass
class SemanticSearchCriteria:
    """Parameters for a search by embedding similarity."""

    query: str = ""
    query_embedding: list[float] | None = None
    limit: int = 0
    min_similarity: float = 0.0
    phase: str = ""
    provider: str = ""
    model: str = ""
    tags: list[str] = field(default_factory=list)
    since: datetime | None = None


@dataclass
class MetricsCriteria:
    """Filters for a metrics lookup."""

    phase: str = ""
    provider: str = ""
    since: datetime | None = None
    limit: int = 0


def _prompt_filters(
    phase: str, provider: str, model: str, tags: list[str], since: datetime | None
) -> tuple[str, list[Any]]:
    clauses: list[str] = []
    args: list[Any] = []
    if phase:
        clauses.append(" AND p.phase = ?")
        args.append(phase)
    if provider:
        clauses.append(" AND p.provider = ?")
        args.append(provider)
    if model:
        clauses.append(" AND p.model = ?")
        args.append(model)
    if tags:
        clauses.append(" AND p.tags LIKE ?")
        args.append(f"%{tags[0]}%")
    if since is not None:
        clauses.append(" AND p.created_at >= ?")
        args.append(_to_db_time(since))
    return "".join(clauses), args


def _prompts_from_rows(rows: list[sqlite3.Row]) -> list[Prompt]:
    prompts: list[Prompt] = []
    for row in rows:
        try:
            prompts.append(_prompt_from_row(row))
        except (ValueError, TypeError) as exc:
            log.warning("Failed to scan row: %s", exc)
    return prompts


def search_prompts(storage: Storage, criteria: SearchCriteria) -> list[Prompt]:
    """Prompts matching the criteria, newest first."""
    where, args = _prompt_filters(
        criteria.phase, criteria.provider, criteria.model, criteria.tags, criteria.since
    )
    query = (
        f"SELECT {_JOINED_COLUMNS} FROM prompts p "
        "LEFT JOIN model_metadata mm ON p.id = mm.prompt_id WHERE 1=1"
        f"{where} ORDER BY p.created_at DESC"
    )
    if criteria.limit > 0:
        query += f" LIMIT {int(criteria.limit)}"
    rows = storage.connection().execute(query, args).fetchall()
    return _prompts_from_rows(rows)


def list_prompts(storage: Storage, limit: int, offset: int) -> list[Prompt]:
    """A page of prompts, newest first, without their embeddings."""
    query = """
        SELECT id, content, content_hash, phase, provider, model, temperature, max_tokens,
               actual_tokens, tags, parent_id, source_type, enhancement_method,
               relevance_score, usage_count, generation_count, last_used_at, original_input,
               generation_request, generation_context, persona_used, target_model_family,
               created_at, updated_at, embedding_model, embedding_provider
        FROM prompts
        ORDER BY created_at DESC
        LIMIT ? OFFSET ?
    """
    try:
        rows = storage.connection().execute(query, (limit, offset)).fetchall()
    except sqlite3.Error as exc:
        raise StorageError(f"failed to list prompts: {exc}") from exc
    prompts = _prompts_from_rows(rows)
    for prompt in prompts:
        prompt.session_id = uuid.uuid4()
    return prompts


def get_all_prompts(storage: Storage) -> list[Prompt]:
    """Every stored prompt, for export or migration."""
    return list_prompts(storage, _ALL_PROMPTS_LIMIT, 0)


def get_prompts_by_relevance(storage: Storage, limit: int) -> list[Prompt]:
    """The most relevant prompts, then the most used, then the most recently used."""
    query = (
        f"SELECT {_JOINED_COLUMNS} FROM prompts p "
        "LEFT JOIN model_metadata mm ON p.id = mm.prompt_id "
        "ORDER BY p.relevance_score DESC, p.usage_count DESC, p.last_used_at DESC "
        "LIMIT ?"
    )
    rows = storage.connection().execute(query, (limit,)).fetchall()
    return _prompts_from_rows(rows)


def search_prompts_by_relevance(
    storage: Storage, min_relevance: float, limit: int
) -> list[Prompt]:
    """Prompts whose relevance is at least ``min_relevance``, most relevant first."""
    query = """
        SELECT id, content, phase, provider, model, temperature, max_tokens,
               actual_tokens, persona_used, parent_id, created_at, updated_at,
               embedding, embedding_model, embedding_provider, relevance_score,
               usage_count, last_used_at
        FROM prompts
        WHERE relevance_score >= ?
        ORDER BY relevance_score DESC, usage_count DESC
        LIMIT ?
    """
    try:
        rows = storage.connection().execute(query, (min_relevance, limit)).fetchall()
    except sqlite3.Error as exc:
        raise StorageError(f"failed to search prompts by relevance: {exc}") from exc
    return _prompts_from_rows(rows)


def search_prompts_semantic_fast(
    storage: Storage, criteria: SemanticSearchCriteria
) -> tuple[list[Prompt], list[float]]:
    """Prompts most similar to the query embedding, with their similarities."""
    if criteria.query_embedding is None:
        raise ValueError("query embedding is required for semantic search")

    where, args = _prompt_filters(
        criteria.phase, criteria.provider, criteria.model, criteria.tags, criteria.since
    )
    max_candidates = min(max(criteria.limit * 10, _MIN_CANDIDATES), _MAX_CANDIDATES)
    query = (
        "SELECT p.* FROM prompts p WHERE p.embedding IS NOT NULL "
        "AND p.relevance_score >= ?"
        f"{where} ORDER BY p.relevance_score DESC, p.usage_count DESC "
        f"LIMIT {max_candidates}"
    )
    try:
        rows = storage.connection().execute(
            query, [_SEMANTIC_MIN_RELEVANCE, *args]
        ).fetchall()
    except sqlite3.Error as exc:
        log.error("Failed to execute fast semantic search: %s", exc)
        raise StorageError(f"failed to execute fast semantic search: {exc}") from exc

    candidates: list[tuple[Prompt, float]] = []
    for row in rows:
        blob = row["embedding"]
        if not blob:
            continue
        embedding = bytes_to_floats(bytes(blob))
        if embedding is None or len(embedding) != len(criteria.query_embedding):
            continue
        similarity = cosine_similarity(criteria.query_embedding, embedding)
        if similarity < criteria.min_similarity:
            continue
        try:
            prompt = _prompt_from_row(row)
        except (ValueError, TypeError) as exc:
            log.warning("Failed to scan semantic search row: %s", exc)
            continue
        prompt.embedding = embedding
        candidates.append((prompt, similarity))

    candidates.sort(key=lambda pair: pair[1], reverse=True)
    limit = criteria.limit
    if limit <= 0 or limit > len(candidates):
        limit = len(candidates)
    top = candidates[:limit]
    prompts = [prompt for prompt, _ in top]
    similarities = [similarity for _, similarity in top]
    log.debug(
        "Fast semantic search completed: %d candidates, %d returned, avg similarity %.4f",
        len(candidates),
        len(prompts),
        average(similarities),
    )
    return prompts, similarities


def _metrics_from_row(row: sqlite3.Row) -> PromptMetrics:
    now = datetime.now(timezone.utc)
    return PromptMetrics(
        id=uuid.UUID(row["id"]),
        prompt_id=uuid.UUID(row["prompt_id"]),
        conversion_rate=row["conversion_rate"] or 0.0,
        engagement_score=row["engagement_score"] or 0.0,
        token_usage=row["token_usage"] or 0,
        response_time=row["response_time"] or 0,
        usage_count=row["usage_count"] or 0,
        created_at=_from_db_time(row["created_at"]) or now,
        updated_at=_from_db_time(row["updated_at"]) or now,
    )


def get_metrics(storage: Storage, criteria: MetricsCriteria) -> list[PromptMetrics]:
    """Metrics of prompts matching the criteria, most recently updated first."""
    query = """
        SELECT m.id, m.prompt_id, m.conversion_rate, m.engagement_score,
               m.token_usage, m.response_time, m.usage_count, m.created_at, m.updated_at
        FROM metrics m
        JOIN prompts p ON m.prompt_id = p.id
        WHERE 1=1
    """
    args: list[Any] = []
    if criteria.phase:
        query += " AND p.phase = ?"
        args.append(criteria.phase)
    if criteria.provider:
        query += " AND p.provider = ?"
        args.append(criteria.provider)
    if criteria.since is not None:
        query += " AND m.created_at >= ?"
        args.append(_to_db_time(criteria.since))
    query += " ORDER BY m.updated_at DESC"
    if criteria.limit > 0:
        query += f" LIMIT {int(criteria.limit)}"

    metrics: list[PromptMetrics] = []
    for row in storage.connection().execute(query, args).fetchall():
        try:
            metrics.append(_metrics_from_row(row))
        except (ValueError, TypeError) as exc:
            log.warning("Failed to scan metric row: %s", exc)
    return metrics