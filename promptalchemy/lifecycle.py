"""Relevance decay and pruning of prompts that are no longer useful."""

from __future__ import annotations

import logging
import sqlite3

from .storage import Storage, StorageError

log = logging.getLogger(__name__)

_DEFAULT_DECAY_RATE = 0.95
_DEFAULT_MAX_PROMPTS = 1000
_DEFAULT_MIN_RELEVANCE = 0.3
_DEFAULT_MAX_UNUSED_DAYS = 30
_CLEANUP_MARGIN = 50
_DAYS_PER_YEAR = 365.0


def update_relevance_scores(storage: Storage) -> None:
    """Multiply the relevance of prompts unused for a day by the configured decay rate."""
    try:
        decay_rate = storage.get_config_float("relevance_decay_rate", _DEFAULT_DECAY_RATE)
    except (StorageError, sqlite3.Error) as exc:
        raise StorageError(f"failed to get decay rate: {exc}") from exc

    conn = storage.connection()
    try:
        with conn:
            conn.execute(
                """
                UPDATE prompts
                SET relevance_score = relevance_score * ?
                WHERE last_used_at IS NULL OR last_used_at < datetime('now', '-1 day')
                """,
                (decay_rate,),
            )
    except sqlite3.Error as exc:
        raise StorageError(f"failed to update relevance scores: {exc}") from exc
    log.info("Updated relevance scores with decay")


def cleanup_old_prompts(storage: Storage) -> int:
    """Delete stale, low-relevance prompts once the store exceeds its limit.

    Returns the number of prompts deleted.
    """
    try:
        max_prompts = storage.get_config_int("max_prompts", _DEFAULT_MAX_PROMPTS)
    except (StorageError, sqlite3.Error) as exc:
        raise StorageError(f"failed to get max prompts: {exc}") from exc
    try:
        min_relevance = storage.get_config_float("min_relevance_score", _DEFAULT_MIN_RELEVANCE)
    except (StorageError, sqlite3.Error) as exc:
        raise StorageError(f"failed to get min relevance: {exc}") from exc
    try:
        max_unused_days = storage.get_config_int("max_unused_days", _DEFAULT_MAX_UNUSED_DAYS)
    except (StorageError, sqlite3.Error) as exc:
        raise StorageError(f"failed to get max unused days: {exc}") from exc

    conn = storage.connection()
    try:
        current = conn.execute("SELECT COUNT(*) FROM prompts").fetchone()[0]
    except sqlite3.Error as exc:
        raise StorageError(f"failed to count prompts: {exc}") from exc

    if current <= max_prompts:
        log.info("No cleanup needed (%d prompts)", current)
        return 0

    to_delete = current - max_prompts + _CLEANUP_MARGIN
    try:
        with conn:
            cursor = conn.execute(
                """
                DELETE FROM prompts
                WHERE id IN (
                    SELECT id FROM prompts
                    WHERE (
                        relevance_score < ? OR
                        (last_used_at IS NOT NULL
                         AND last_used_at < datetime('now', '-' || ? || ' days'))
                    )
                    ORDER BY relevance_score ASC, last_used_at ASC
                    LIMIT ?
                )
                """,
                (min_relevance, max_unused_days, to_delete),
            )
    except sqlite3.Error as exc:
        raise StorageError(f"failed to cleanup prompts: {exc}") from exc

    deleted = max(cursor.rowcount, 0)
    log.info("Cleaned up %d old prompts", deleted)
    return deleted


def run_lifecycle_maintenance(storage: Storage) -> int:
    """Decay relevance scores, then prune old prompts; returns the number deleted."""
    log.info("Starting lifecycle maintenance")
    try:
        update_relevance_scores(storage)
    except StorageError as exc:
        log.error("Failed to update relevance scores: %s", exc)
        raise
    try:
        deleted = cleanup_old_prompts(storage)
    except StorageError as exc:
        log.error("Failed to cleanup old prompts: %s", exc)
        raise
    log.info("Completed lifecycle maintenance")
    return deleted


def decay_relevance_scores(storage: Storage, decay_rate: float) -> None:
    """Apply time-based decay to positive relevance scores and clamp them to [0, 1]."""
    decay_factor = max(1.0 - decay_rate, 0.0)
    conn = storage.connection()
    try:
        with conn:
            conn.execute(
                """
                UPDATE prompts
                SET relevance_score = CASE
                    WHEN last_used_at IS NULL THEN relevance_score * ?
                    ELSE relevance_score
                         * (1.0 - (? * (julianday('now') - julianday(last_used_at))))
                END
                WHERE relevance_score > 0
                """,
                (decay_factor, decay_rate / _DAYS_PER_YEAR),
            )
            conn.execute(
                "UPDATE prompts SET relevance_score = MAX(0.0, MIN(1.0, relevance_score))"
            )
    except sqlite3.Error as exc:
        raise StorageError(f"failed to decay relevance scores: {exc}") from exc