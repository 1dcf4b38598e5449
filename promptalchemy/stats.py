"""Embedding coverage statistics and migration of non-standard embeddings."""

from __future__ import annotations

import logging
import sqlite3
from typing import Any, Sequence

from .storage import Storage, StorageError, _now_text

log = logging.getLogger(__name__)


def migrate_legacy_embeddings(
    storage: Storage, standard_model: str, standard_dimensions: int, batch_size: int
) -> int:
    """Clear embeddings whose model or size differs from the standard.

    Cleared prompts are left to be embedded again later. Returns the number
    of prompts whose embedding was cleared.
    """
    log.info(
        "Starting legacy embedding migration (model=%s, dimensions=%d, batch=%d)",
        standard_model,
        standard_dimensions,
        batch_size,
    )
    conn = storage.connection()
    try:
        rows = conn.execute(
            """
            SELECT id, embedding_model, LENGTH(embedding)/4 AS dimensions
            FROM prompts
            WHERE embedding IS NOT NULL
            AND (embedding_model != ? OR LENGTH(embedding)/4 != ?)
            ORDER BY created_at DESC
            """,
            (standard_model, standard_dimensions),
        ).fetchall()
    except sqlite3.Error as exc:
        raise StorageError(f"failed to query legacy embeddings: {exc}") from exc

    if not rows:
        log.info("No legacy embeddings found - migration complete")
        return 0

    log.info("Found %d legacy embeddings to migrate", len(rows))
    cleared = 0
    for index, row in enumerate(rows):
        if index > 0 and batch_size > 0 and index % batch_size == 0:
            log.info("Migration batch processed: %d", index)
        try:
            with conn:
                conn.execute(
                    """
                    UPDATE prompts
                    SET embedding = NULL,
                        embedding_model = NULL,
                        embedding_provider = NULL,
                        updated_at = ?
                    WHERE id = ?
                    """,
                    (_now_text(), row["id"]),
                )
        except sqlite3.Error as exc:
            log.error("Failed to clear legacy embedding for %s: %s", row["id"], exc)
            continue
        cleared += 1
        log.debug(
            "Cleared legacy embedding for %s (old model %s, old dimensions %s)",
            row["id"],
            row["embedding_model"] or "",
            row["dimensions"],
        )

    log.info(
        "Legacy embedding migration completed: %d migrated to %s/%d",
        cleared,
        standard_model,
        standard_dimensions,
    )
    return cleared


def validate_embedding_standard(
    embedding: Sequence[float], model: str, standard_model: str, standard_dimensions: int
) -> bool:
    """Whether an embedding comes from the standard model and has the standard size."""
    if model != standard_model:
        log.debug("Embedding model %s does not match standard %s", model, standard_model)
        return False
    if len(embedding) != standard_dimensions:
        log.debug(
            "Embedding dimensions %d do not match standard %d",
            len(embedding),
            standard_dimensions,
        )
        return False
    return True


def get_embedding_stats(storage: Storage) -> dict[str, Any]:
    """Embedding coverage (as a percentage) and the spread of models and sizes."""
    conn = storage.connection()
    stats: dict[str, Any] = {}
    try:
        total = conn.execute("SELECT COUNT(*) FROM prompts").fetchone()[0]
    except sqlite3.Error as exc:
        raise StorageError(f"failed to count total prompts: {exc}") from exc
    stats["total_prompts"] = total

    try:
        with_embeddings = conn.execute(
            "SELECT COUNT(*) FROM prompts WHERE embedding IS NOT NULL"
        ).fetchone()[0]
    except sqlite3.Error as exc:
        raise StorageError(f"failed to count prompts with embeddings: {exc}") from exc
    stats["prompts_with_embeddings"] = with_embeddings
    stats["embedding_coverage"] = with_embeddings / total * 100 if total > 0 else 0.0

    try:
        model_rows = conn.execute(
            """
            SELECT embedding_model, LENGTH(embedding)/4 AS dimensions, COUNT(*) AS count
            FROM prompts
            WHERE embedding IS NOT NULL
            GROUP BY embedding_model, LENGTH(embedding)
            ORDER BY count DESC
            """
        ).fetchall()
    except sqlite3.Error as exc:
        raise StorageError(f"failed to get embedding model stats: {exc}") from exc
    stats["models"] = [
        {
            "model": row["embedding_model"] or "",
            "dimensions": row["dimensions"],
            "count": row["count"],
        }
        for row in model_rows
    ]

    try:
        dimension_rows = conn.execute(
            """
            SELECT LENGTH(embedding)/4 AS dimensions, COUNT(*) AS count
            FROM prompts
            WHERE embedding IS NOT NULL
            GROUP BY LENGTH(embedding)
            ORDER BY count DESC
            """
        ).fetchall()
    except sqlite3.Error as exc:
        raise StorageError(f"failed to get dimension stats: {exc}") from exc
    stats["dimensions"] = [
        {"dimensions": row["dimensions"], "count": row["count"]} for row in dimension_rows
    ]
    return stats


def get_vector_stats(storage: Storage) -> dict[str, Any]:
    """Vector counts, coverage (as a fraction), mean relevance and model distribution."""
    conn = storage.connection()
    stats: dict[str, Any] = {"vector_optimized": storage.vector_optimized}
    try:
        vectors = conn.execute(
            "SELECT COUNT(*) FROM prompts WHERE embedding IS NOT NULL"
        ).fetchone()[0]
        stats["vector_count"] = vectors
        prompts = conn.execute("SELECT COUNT(*) FROM prompts").fetchone()[0]
        stats["prompt_count"] = prompts
    except sqlite3.Error as exc:
        raise StorageError(f"failed to count vectors: {exc}") from exc
    stats["vector_coverage"] = vectors / prompts if prompts > 0 else 0.0

    try:
        avg = conn.execute(
            "SELECT AVG(relevance_score) FROM prompts WHERE embedding IS NOT NULL"
        ).fetchone()[0]
    except sqlite3.Error as exc:
        log.warning("Failed to compute average relevance: %s", exc)
        avg = None
    if avg is not None:
        stats["avg_relevance_score"] = float(avg)

    try:
        rows = conn.execute(
            "SELECT embedding_model, COUNT(*) AS count FROM prompts "
            "WHERE embedding IS NOT NULL GROUP BY embedding_model"
        ).fetchall()
    except sqlite3.Error as exc:
        log.warning("Failed to read embedding model distribution: %s", exc)
    else:
        stats["embedding_models"] = {
            (row["embedding_model"] or ""): row["count"] for row in rows
        }
    return stats