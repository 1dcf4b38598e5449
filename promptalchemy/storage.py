"""SQLite-backed persistence for prompts, their metadata, metrics and context."""

from __future__ import annotations

import hashlib
import json
import logging
import math
import os
import sqlite3
import struct
import uuid
from datetime import datetime, timezone
from typing import Any, Sequence

from .models import ModelMetadata, Prompt, PromptContext, PromptMetrics

log = logging.getLogger(__name__)

DATABASE_NAME = "prompts.db"

_SCHEMA = """
CREATE TABLE IF NOT EXISTS prompts (
    id TEXT PRIMARY KEY,
    content TEXT NOT NULL,
    content_hash TEXT,
    phase TEXT NOT NULL DEFAULT '',
    provider TEXT NOT NULL DEFAULT '',
    model TEXT NOT NULL DEFAULT '',
    temperature REAL DEFAULT 0.7,
    max_tokens INTEGER DEFAULT 0,
    actual_tokens INTEGER DEFAULT 0,
    tags TEXT DEFAULT '[]',
    parent_id TEXT,
    source_type TEXT,
    enhancement_method TEXT,
    relevance_score REAL DEFAULT 1.0,
    usage_count INTEGER DEFAULT 0,
    generation_count INTEGER DEFAULT 0,
    last_used_at TIMESTAMP,
    original_input TEXT,
    generation_request TEXT,
    generation_context TEXT,
    persona_used TEXT,
    target_model_family TEXT,
    created_at TIMESTAMP NOT NULL,
    updated_at TIMESTAMP NOT NULL,
    embedding BLOB,
    embedding_model TEXT,
    embedding_provider TEXT
);
CREATE INDEX IF NOT EXISTS idx_prompts_content_hash ON prompts(content_hash);
CREATE INDEX IF NOT EXISTS idx_prompts_phase ON prompts(phase);
CREATE INDEX IF NOT EXISTS idx_prompts_provider ON prompts(provider);
CREATE INDEX IF NOT EXISTS idx_prompts_created_at ON prompts(created_at);
CREATE INDEX IF NOT EXISTS idx_prompts_relevance ON prompts(relevance_score);

CREATE TABLE IF NOT EXISTS model_metadata (
    id TEXT PRIMARY KEY,
    prompt_id TEXT NOT NULL REFERENCES prompts(id) ON DELETE CASCADE,
    generation_model TEXT,
    generation_provider TEXT,
    embedding_model TEXT,
    embedding_provider TEXT,
    model_version TEXT,
    api_version TEXT,
    processing_time INTEGER DEFAULT 0,
    input_tokens INTEGER DEFAULT 0,
    output_tokens INTEGER DEFAULT 0,
    total_tokens INTEGER DEFAULT 0,
    cost REAL DEFAULT 0,
    created_at TIMESTAMP NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_model_metadata_prompt ON model_metadata(prompt_id);

CREATE TABLE IF NOT EXISTS metrics (
    id TEXT PRIMARY KEY,
    prompt_id TEXT NOT NULL REFERENCES prompts(id) ON DELETE CASCADE,
    conversion_rate REAL DEFAULT 0,
    engagement_score REAL DEFAULT 0,
    token_usage INTEGER DEFAULT 0,
    response_time INTEGER DEFAULT 0,
    usage_count INTEGER DEFAULT 0,
    created_at TIMESTAMP NOT NULL,
    updated_at TIMESTAMP NOT NULL
);

CREATE TABLE IF NOT EXISTS context (
    id TEXT PRIMARY KEY,
    prompt_id TEXT NOT NULL REFERENCES prompts(id) ON DELETE CASCADE,
    context_type TEXT,
    content TEXT,
    relevance_score REAL DEFAULT 0,
    created_at TIMESTAMP NOT NULL
);

CREATE TABLE IF NOT EXISTS usage_analytics (
    id TEXT PRIMARY KEY,
    prompt_id TEXT NOT NULL REFERENCES prompts(id) ON DELETE CASCADE,
    used_in_generation BOOLEAN DEFAULT 0,
    generated_prompt_id TEXT,
    usage_context TEXT,
    effectiveness_score REAL DEFAULT 0,
    created_at TIMESTAMP NOT NULL
);

CREATE TABLE IF NOT EXISTS prompt_relationships (
    id TEXT PRIMARY KEY,
    source_prompt_id TEXT NOT NULL,
    target_prompt_id TEXT NOT NULL,
    relationship_type TEXT NOT NULL,
    strength REAL DEFAULT 0,
    context TEXT,
    created_at TIMESTAMP NOT NULL,
    UNIQUE (source_prompt_id, target_prompt_id, relationship_type)
);

CREATE TABLE IF NOT EXISTS enhancement_history (
    id TEXT PRIMARY KEY,
    prompt_id TEXT NOT NULL,
    parent_prompt_id TEXT,
    enhancement_type TEXT,
    enhancement_method TEXT,
    improvement_score REAL DEFAULT 0,
    metadata TEXT,
    created_at TIMESTAMP NOT NULL
);

CREATE TABLE IF NOT EXISTS user_interactions (
    id TEXT PRIMARY KEY,
    prompt_id TEXT NOT NULL,
    session_id TEXT,
    action TEXT NOT NULL,
    score REAL DEFAULT 0,
    timestamp TIMESTAMP NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_user_interactions_prompt ON user_interactions(prompt_id);

CREATE TABLE IF NOT EXISTS database_config (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL
);
"""

_OPTIMIZATIONS = (
    "PRAGMA mmap_size = 268435456",
    "PRAGMA temp_store = memory",
    "PRAGMA threads = 4",
    "PRAGMA optimize",
    "PRAGMA analysis_limit = 1000",
)


class StorageError(Exception):
    """A storage operation failed."""


class DuplicatePromptError(StorageError):
    """A prompt with the same content is already stored."""


class PromptNotFoundError(StorageError, LookupError):
    """No prompt has the requested id."""


def _to_db_time(value: datetime | None) -> str | None:
    """Format a datetime as UTC text that SQLite's date functions understand."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime("%Y-%m-%d %H:%M:%S.%f")[:-3]


def _from_db_time(value: Any) -> datetime | None:
    if value is None or value == "":
        return None
    parsed = value if isinstance(value, datetime) else datetime.fromisoformat(str(value))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _now_text() -> str:
    return _to_db_time(datetime.now(timezone.utc))  # type: ignore[return-value]


def _uuid_or_none(value: Any) -> uuid.UUID | None:
    return None if value is None else uuid.UUID(str(value))


def floats_to_bytes(values: Sequence[float]) -> bytes:
    """Pack values as little-endian 32-bit floats."""
    return struct.pack(f"<{len(values)}f", *values)


def bytes_to_floats(data: bytes) -> list[float] | None:
    """Unpack little-endian 32-bit floats; None if the length is not a multiple of 4."""
    if len(data) % 4:
        return None
    return list(struct.unpack(f"<{len(data) // 4}f", data))


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine of the angle between two vectors; 0 for mismatched or zero vectors."""
    if len(a) != len(b):
        return 0.0
    dot = sum(x * y for x, y in zip(a, b))
    norm_a = sum(x * x for x in a)
    norm_b = sum(y * y for y in b)
    if norm_a == 0.0 or norm_b == 0.0:
        return 0.0
    return dot / (math.sqrt(norm_a) * math.sqrt(norm_b))


def average(values: Sequence[float]) -> float:
    """Arithmetic mean, or 0 for an empty sequence."""
    if not values:
        return 0.0
    return sum(values) / len(values)


def _content_hash(content: str) -> str:
    return "sha256_" + hashlib.sha256(content.encode("utf-8")).hexdigest()


def _prompt_from_row(row: sqlite3.Row) -> Prompt:
    """Build a Prompt from a row holding any subset of the prompts columns."""
    keys = set(row.keys())

    def value(name: str, default: Any = None) -> Any:
        found = row[name] if name in keys else None
        return default if found is None else found

    prompt = Prompt(
        id=uuid.UUID(row["id"]),
        content=value("content", ""),
        phase=value("phase", ""),
        provider=value("provider", ""),
        model=value("model", ""),
        temperature=float(value("temperature", 0.0)),
        max_tokens=int(value("max_tokens", 0)),
        actual_tokens=int(value("actual_tokens", 0)),
        parent_id=_uuid_or_none(value("parent_id")),
        source_type=value("source_type", ""),
        enhancement_method=value("enhancement_method", ""),
        relevance_score=float(value("relevance_score", 0.0)),
        usage_count=int(value("usage_count", 0)),
        generation_count=int(value("generation_count", 0)),
        last_used_at=_from_db_time(value("last_used_at")),
        original_input=value("original_input", ""),
        persona_used=value("persona_used", ""),
        target_model_family=value("target_model_family", ""),
        embedding_model=value("embedding_model", ""),
        embedding_provider=value("embedding_provider", ""),
    )
    created = _from_db_time(value("created_at"))
    if created is not None:
        prompt.created_at = created
    updated = _from_db_time(value("updated_at"))
    if updated is not None:
        prompt.updated_at = updated

    raw_tags = value("tags")
    if raw_tags is not None:
        try:
            prompt.tags = list(json.loads(raw_tags) or [])
        except (TypeError, ValueError):
            log.warning("Failed to unmarshal tags for prompt %s", prompt.id)

    blob = value("embedding")
    if blob:
        prompt.embedding = bytes_to_floats(bytes(blob))
    return prompt


def _metadata_from_row(row: sqlite3.Row) -> ModelMetadata:
    return ModelMetadata(
        id=uuid.UUID(row["id"]),
        prompt_id=uuid.UUID(row["prompt_id"]),
        generation_model=row["generation_model"] or "",
        generation_provider=row["generation_provider"] or "",
        embedding_model=row["embedding_model"] or "",
        embedding_provider=row["embedding_provider"] or "",
        model_version=row["model_version"] or "",
        api_version=row["api_version"] or "",
        processing_time=row["processing_time"] or 0,
        input_tokens=row["input_tokens"] or 0,
        output_tokens=row["output_tokens"] or 0,
        total_tokens=row["total_tokens"] or 0,
        cost=row["cost"] or 0.0,
        created_at=_from_db_time(row["created_at"]) or datetime.now(timezone.utc),
    )


class Storage:
    """A prompt database kept in ``prompts.db`` inside a data directory."""

    def __init__(self, data_dir: str | os.PathLike[str]) -> None:
        try:
            os.makedirs(data_dir, exist_ok=True)
        except OSError as exc:
            raise StorageError(f"failed to create data directory: {exc}") from exc

        self.db_path = os.path.join(os.fspath(data_dir), DATABASE_NAME)
        self.vector_optimized = True
        try:
            self._conn = sqlite3.connect(self.db_path)
        except sqlite3.Error as exc:
            raise StorageError(f"failed to connect to database: {exc}") from exc
        self._conn.row_factory = sqlite3.Row

        try:
            self._init_schema()
        except sqlite3.Error as exc:
            self._conn.close()
            raise StorageError(f"failed to initialize optimized schema: {exc}") from exc

    def _init_schema(self) -> None:
        log.info("Initializing vector-optimized database schema")
        for pragma in (
            "PRAGMA foreign_keys = ON",
            "PRAGMA journal_mode = WAL",
            "PRAGMA synchronous = NORMAL",
            "PRAGMA cache_size = 10000",
        ):
            self._conn.execute(pragma)
        self._conn.executescript(_SCHEMA)
        for pragma in _OPTIMIZATIONS:
            try:
                self._conn.execute(pragma)
            except sqlite3.Error as exc:
                log.warning("Failed to set pragma %r: %s", pragma, exc)
        log.info("Applied vector search optimizations")

    def connection(self) -> sqlite3.Connection:
        """The underlying database connection, for direct queries."""
        return self._conn

    def close(self) -> None:
        self._conn.close()

    def __enter__(self) -> Storage:
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()

    def save_prompt(self, prompt: Prompt) -> None:
        """Insert a prompt with its metadata, metrics and context in one transaction."""
        log.debug("Saving prompt %s (phase=%s, provider=%s)", prompt.id, prompt.phase, prompt.provider)
        content_hash = _content_hash(prompt.content)

        generation_request = ""
        if prompt.generation_request is not None:
            try:
                generation_request = json.dumps(prompt.generation_request)
            except (TypeError, ValueError) as exc:
                log.warning("Failed to marshal generation request: %s", exc)
        generation_context = ""
        if prompt.generation_context:
            generation_context = json.dumps(prompt.generation_context)

        with self._conn:
            existing = self._conn.execute(
                "SELECT id FROM prompts WHERE content_hash = ?", (content_hash,)
            ).fetchone()
            if existing is not None:
                log.info("Found duplicate prompt content, skipping save")
                raise DuplicatePromptError(
                    f"duplicate prompt content detected (existing ID: {existing['id']})"
                )

            try:
                self._conn.execute(
                    """
                    INSERT INTO prompts (
                        id, content, content_hash, phase, provider, model, temperature,
                        max_tokens, actual_tokens, tags, parent_id, source_type,
                        enhancement_method, relevance_score, usage_count, generation_count,
                        original_input, generation_request, generation_context, persona_used,
                        target_model_family, created_at, updated_at, embedding,
                        embedding_model, embedding_provider
                    ) VALUES (
                        :id, :content, :content_hash, :phase, :provider, :model, :temperature,
                        :max_tokens, :actual_tokens, :tags, :parent_id, :source_type,
                        :enhancement_method, :relevance_score, :usage_count, :generation_count,
                        :original_input, :generation_request, :generation_context, :persona_used,
                        :target_model_family, :created_at, :updated_at, :embedding,
                        :embedding_model, :embedding_provider
                    )
                    """,
                    {
                        "id": str(prompt.id),
                        "content": prompt.content,
                        "content_hash": content_hash,
                        "phase": prompt.phase,
                        "provider": prompt.provider,
                        "model": prompt.model,
                        "temperature": prompt.temperature,
                        "max_tokens": prompt.max_tokens,
                        "actual_tokens": prompt.actual_tokens,
                        "tags": json.dumps(prompt.tags),
                        "parent_id": None if prompt.parent_id is None else str(prompt.parent_id),
                        "source_type": prompt.source_type,
                        "enhancement_method": prompt.enhancement_method,
                        "relevance_score": prompt.relevance_score,
                        "usage_count": prompt.usage_count,
                        "generation_count": prompt.generation_count,
                        "original_input": prompt.original_input,
                        "generation_request": generation_request,
                        "generation_context": generation_context,
                        "persona_used": prompt.persona_used,
                        "target_model_family": prompt.target_model_family,
                        "created_at": _to_db_time(prompt.created_at),
                        "updated_at": _to_db_time(prompt.updated_at),
                        "embedding": None
                        if prompt.embedding is None
                        else floats_to_bytes(prompt.embedding),
                        "embedding_model": prompt.embedding_model,
                        "embedding_provider": prompt.embedding_provider,
                    },
                )
            except sqlite3.Error as exc:
                raise StorageError(f"failed to insert prompt: {exc}") from exc

            if prompt.model_metadata is not None:
                self._insert_metadata(prompt)
            if prompt.metrics is not None:
                self._insert_metrics(prompt)
            for entry in prompt.context:
                try:
                    self._conn.execute(
                        """
                        INSERT INTO context (
                            id, prompt_id, context_type, content, relevance_score, created_at
                        ) VALUES (?, ?, ?, ?, ?, ?)
                        """,
                        (
                            str(uuid.uuid4()),
                            str(prompt.id),
                            entry.context_type,
                            entry.content,
                            entry.relevance_score,
                            _now_text(),
                        ),
                    )
                except sqlite3.Error as exc:
                    raise StorageError(f"failed to insert context: {exc}") from exc

        log.info("Saved prompt %s (content hash %s)", prompt.id, content_hash)

    def _insert_metadata(self, prompt: Prompt) -> None:
        meta = prompt.model_metadata
        assert meta is not None
        try:
            self._conn.execute(
                """
                INSERT INTO model_metadata (
                    id, prompt_id, generation_model, generation_provider, embedding_model,
                    embedding_provider, model_version, api_version, processing_time,
                    input_tokens, output_tokens, total_tokens, cost, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    str(uuid.uuid4()),
                    str(prompt.id),
                    meta.generation_model,
                    meta.generation_provider,
                    meta.embedding_model,
                    meta.embedding_provider,
                    meta.model_version,
                    meta.api_version,
                    meta.processing_time,
                    meta.input_tokens,
                    meta.output_tokens,
                    meta.total_tokens,
                    meta.cost,
                    _now_text(),
                ),
            )
        except sqlite3.Error as exc:
            raise StorageError(f"failed to insert model metadata: {exc}") from exc

    def _insert_metrics(self, prompt: Prompt) -> None:
        metrics = prompt.metrics
        assert metrics is not None
        now = _now_text()
        try:
            self._conn.execute(
                """
                INSERT INTO metrics (
                    id, prompt_id, conversion_rate, engagement_score, token_usage,
                    response_time, usage_count, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    str(uuid.uuid4()),
                    str(prompt.id),
                    metrics.conversion_rate,
                    metrics.engagement_score,
                    metrics.token_usage,
                    metrics.response_time,
                    metrics.usage_count,
                    now,
                    now,
                ),
            )
        except sqlite3.Error as exc:
            raise StorageError(f"failed to insert metrics: {exc}") from exc

    def get_prompt(self, prompt_id: uuid.UUID) -> Prompt:
        """Load one prompt with its model metadata."""
        row = self._conn.execute("SELECT * FROM prompts WHERE id = ?", (str(prompt_id),)).fetchone()
        if row is None:
            raise PromptNotFoundError("prompt not found")
        prompt = _prompt_from_row(row)
        try:
            prompt.model_metadata = self._model_metadata(prompt.id)
        except (sqlite3.Error, ValueError) as exc:
            log.warning("Failed to load model metadata: %s", exc)
        return prompt

    def _model_metadata(self, prompt_id: uuid.UUID) -> ModelMetadata | None:
        row = self._conn.execute(
            "SELECT * FROM model_metadata WHERE prompt_id = ?", (str(prompt_id),)
        ).fetchone()
        return None if row is None else _metadata_from_row(row)

    def update_prompt(self, prompt: Prompt) -> None:
        """Overwrite a stored prompt's main fields and, if given, its model metadata."""
        with self._conn:
            try:
                cursor = self._conn.execute(
                    """
                    UPDATE prompts SET
                        content = :content,
                        phase = :phase,
                        provider = :provider,
                        model = :model,
                        temperature = :temperature,
                        max_tokens = :max_tokens,
                        actual_tokens = :actual_tokens,
                        tags = :tags,
                        parent_id = :parent_id,
                        updated_at = :updated_at,
                        embedding = :embedding,
                        embedding_model = :embedding_model,
                        embedding_provider = :embedding_provider
                    WHERE id = :id
                    """,
                    {
                        "id": str(prompt.id),
                        "content": prompt.content,
                        "phase": prompt.phase,
                        "provider": prompt.provider,
                        "model": prompt.model,
                        "temperature": prompt.temperature,
                        "max_tokens": prompt.max_tokens,
                        "actual_tokens": prompt.actual_tokens,
                        "tags": json.dumps(prompt.tags),
                        "parent_id": None if prompt.parent_id is None else str(prompt.parent_id),
                        "updated_at": _now_text(),
                        "embedding": None
                        if prompt.embedding is None
                        else floats_to_bytes(prompt.embedding),
                        "embedding_model": prompt.embedding_model,
                        "embedding_provider": prompt.embedding_provider,
                    },
                )
            except sqlite3.Error as exc:
                raise StorageError(f"failed to update prompt: {exc}") from exc
            if cursor.rowcount == 0:
                raise PromptNotFoundError("prompt not found")

            meta = prompt.model_metadata
            if meta is not None:
                try:
                    self._conn.execute(
                        """
                        UPDATE model_metadata SET
                            generation_model = ?, generation_provider = ?,
                            embedding_model = ?, embedding_provider = ?,
                            model_version = ?, api_version = ?, processing_time = ?,
                            input_tokens = ?, output_tokens = ?, total_tokens = ?, cost = ?
                        WHERE prompt_id = ?
                        """,
                        (
                            meta.generation_model,
                            meta.generation_provider,
                            meta.embedding_model,
                            meta.embedding_provider,
                            meta.model_version,
                            meta.api_version,
                            meta.processing_time,
                            meta.input_tokens,
                            meta.output_tokens,
                            meta.total_tokens,
                            meta.cost,
                            str(meta.prompt_id),
                        ),
                    )
                except sqlite3.Error as exc:
                    raise StorageError(f"failed to update model metadata: {exc}") from exc

    def delete_prompt(self, prompt_id: uuid.UUID) -> None:
        """Remove a prompt together with its context, metrics and model metadata."""
        key = str(prompt_id)
        with self._conn:
            for table in ("context", "metrics", "model_metadata"):
                try:
                    self._conn.execute(f"DELETE FROM {table} WHERE prompt_id = ?", (key,))
                except sqlite3.Error as exc:
                    raise StorageError(f"failed to delete {table}: {exc}") from exc
            try:
                cursor = self._conn.execute("DELETE FROM prompts WHERE id = ?", (key,))
            except sqlite3.Error as exc:
                raise StorageError(f"failed to delete prompt: {exc}") from exc
            if cursor.rowcount == 0:
                raise PromptNotFoundError("prompt not found")

    def save_metrics(self, metrics: PromptMetrics) -> None:
        """Insert metrics, or update the row that has the same id."""
        with self._conn:
            self._conn.execute(
                """
                INSERT INTO metrics (
                    id, prompt_id, conversion_rate, engagement_score,
                    token_usage, response_time, usage_count, created_at, updated_at
                ) VALUES (
                    :id, :prompt_id, :conversion_rate, :engagement_score,
                    :token_usage, :response_time, :usage_count, :created_at, :updated_at
                ) ON CONFLICT(id) DO UPDATE SET
                    conversion_rate = :conversion_rate,
                    engagement_score = :engagement_score,
                    token_usage = :token_usage,
                    response_time = :response_time,
                    usage_count = :usage_count,
                    updated_at = :updated_at
                """,
                {
                    "id": str(metrics.id),
                    "prompt_id": str(metrics.prompt_id),
                    "conversion_rate": metrics.conversion_rate,
                    "engagement_score": metrics.engagement_score,
                    "token_usage": metrics.token_usage,
                    "response_time": metrics.response_time,
                    "usage_count": metrics.usage_count,
                    "created_at": _to_db_time(metrics.created_at),
                    "updated_at": _to_db_time(metrics.updated_at),
                },
            )

    def save_context(self, context: PromptContext) -> None:
        """Insert one context entry."""
        with self._conn:
            self._conn.execute(
                """
                INSERT INTO context (
                    id, prompt_id, context_type, content, relevance_score, created_at
                ) VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    str(context.id),
                    str(context.prompt_id),
                    context.context_type,
                    context.content,
                    context.relevance_score,
                    _to_db_time(context.created_at),
                ),
            )

    def _config_value(self, key: str) -> str | None:
        row = self._conn.execute(
            "SELECT value FROM database_config WHERE key = ?", (key,)
        ).fetchone()
        return None if row is None else str(row["value"])

    def get_config_int(self, key: str, default: int) -> int:
        """An integer setting from ``database_config``, or ``default`` if unset."""
        value = self._config_value(key)
        if value is None:
            return default
        try:
            return int(value)
        except ValueError as exc:
            raise StorageError(f"invalid config value for {key}: {exc}") from exc

    def get_config_float(self, key: str, default: float) -> float:
        """A float setting from ``database_config``, or ``default`` if unset."""
        value = self._config_value(key)
        if value is None:
            return default
        try:
            return float(value)
        except ValueError as exc:
            raise StorageError(f"invalid config value for {key}: {exc}") from exc