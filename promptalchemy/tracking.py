"""Recording of prompt usage, relationships, enhancements and user interactions."""

from __future__ import annotations

import json
import logging
import sqlite3
import uuid
from datetime import datetime, timezone
from typing import Any, Mapping

from .models import UsageAnalytics, UserInteraction
from .storage import Storage, StorageError, _from_db_time, _to_db_time

log = logging.getLogger(__name__)

_NIL_UUID = uuid.UUID(int=0)

_INTERACTION_FILTERS = (
    ("prompt_id", " AND prompt_id = ?"),
    ("session_id", " AND session_id = ?"),
    ("action", " AND action = ?"),
    ("min_score", " AND score >= ?"),
    ("since", " AND timestamp >= ?"),
)


def _db_param(value: Any) -> Any:
    """Convert a filter value to the form it is stored in."""
    if isinstance(value, uuid.UUID):
        return str(value)
    if isinstance(value, datetime):
        return _to_db_time(value)
    return value


def track_prompt_usage(storage: Storage, prompt_id: uuid.UUID, context: str) -> None:
    """Mark a prompt as used now and record the use in the usage analytics."""
    conn = storage.connection()
    try:
        with conn:
            try:
                conn.execute(
                    "UPDATE prompts SET last_used_at = CURRENT_TIMESTAMP WHERE id = ?",
                    (str(prompt_id),),
                )
            except sqlite3.Error as exc:
                raise StorageError(f"failed to update prompt usage: {exc}") from exc
            try:
                conn.execute(
                    """
                    INSERT INTO usage_analytics (id, prompt_id, usage_context, created_at)
                    VALUES (?, ?, ?, CURRENT_TIMESTAMP)
                    """,
                    (str(uuid.uuid4()), str(prompt_id), context),
                )
            except sqlite3.Error as exc:
                log.error("Failed to record usage analytics for %s: %s", prompt_id, exc)
                raise StorageError(f"failed to record usage analytics: {exc}") from exc
    except sqlite3.Error as exc:
        raise StorageError(f"failed to commit prompt usage: {exc}") from exc


def track_prompt_relationship(
    storage: Storage,
    source_id: uuid.UUID,
    target_id: uuid.UUID,
    relationship_type: str,
    strength: float,
    context: str,
) -> None:
    """Record, or replace, a typed relationship between two prompts."""
    conn = storage.connection()
    try:
        with conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO prompt_relationships
                (id, source_prompt_id, target_prompt_id, relationship_type, strength,
                 context, created_at)
                VALUES (?, ?, ?, ?, ?, ?, CURRENT_TIMESTAMP)
                """,
                (
                    str(uuid.uuid4()),
                    str(source_id),
                    str(target_id),
                    relationship_type,
                    strength,
                    context,
                ),
            )
    except sqlite3.Error as exc:
        raise StorageError(f"failed to track prompt relationship: {exc}") from exc
    log.info(
        "Tracked prompt relationship %s -> %s (%s, strength %s)",
        source_id,
        target_id,
        relationship_type,
        strength,
    )


def track_prompt_enhancement(
    storage: Storage,
    prompt_id: uuid.UUID,
    parent_id: uuid.UUID,
    enhancement_type: str,
    method: str,
    improvement_score: float,
    metadata: Mapping[str, Any] | None,
) -> None:
    """Record how a prompt was derived from its parent."""
    try:
        metadata_json = json.dumps(None if metadata is None else dict(metadata))
    except (TypeError, ValueError) as exc:
        raise StorageError(f"failed to marshal metadata: {exc}") from exc

    conn = storage.connection()
    try:
        with conn:
            conn.execute(
                """
                INSERT INTO enhancement_history
                (id, prompt_id, parent_prompt_id, enhancement_type, enhancement_method,
                 improvement_score, metadata, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, CURRENT_TIMESTAMP)
                """,
                (
                    str(uuid.uuid4()),
                    str(prompt_id),
                    str(parent_id),
                    enhancement_type,
                    method,
                    improvement_score,
                    metadata_json,
                ),
            )
    except sqlite3.Error as exc:
        raise StorageError(f"failed to track prompt enhancement: {exc}") from exc
    log.info(
        "Tracked prompt enhancement %s from %s (%s/%s, improvement %s)",
        prompt_id,
        parent_id,
        enhancement_type,
        method,
        improvement_score,
    )


def save_interaction(storage: Storage, interaction: UserInteraction) -> None:
    """Store a user interaction, filling in a missing id and timestamp."""
    if interaction.id == _NIL_UUID:
        interaction.id = uuid.uuid4()
    if interaction.timestamp is None:
        interaction.timestamp = datetime.now(timezone.utc)

    conn = storage.connection()
    try:
        with conn:
            conn.execute(
                """
                INSERT INTO user_interactions (id, prompt_id, session_id, action, score, timestamp)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    str(interaction.id),
                    str(interaction.prompt_id),
                    str(interaction.session_id),
                    interaction.action,
                    interaction.score,
                    _to_db_time(interaction.timestamp),
                ),
            )
    except sqlite3.Error as exc:
        log.error("Failed to save interaction: %s", exc)
        raise StorageError(f"failed to save interaction: {exc}") from exc


def _interaction_from_row(row: sqlite3.Row) -> UserInteraction:
    session = row["session_id"]
    return UserInteraction(
        id=uuid.UUID(row["id"]),
        prompt_id=uuid.UUID(row["prompt_id"]),
        session_id=_NIL_UUID if session is None else uuid.UUID(session),
        action=row["action"],
        score=float(row["score"] or 0.0),
        timestamp=_from_db_time(row["timestamp"]),
    )


def list_interactions(
    storage: Storage, filters: Mapping[str, Any] | None = None
) -> list[UserInteraction]:
    """Interactions matching the filters, newest first.

    Recognised filter keys: prompt_id, session_id, action, min_score, since.
    """
    filters = filters or {}
    query = (
        "SELECT id, prompt_id, session_id, action, score, timestamp "
        "FROM user_interactions WHERE 1=1"
    )
    args: list[Any] = []
    for key, clause in _INTERACTION_FILTERS:
        if key in filters:
            query += clause
            args.append(_db_param(filters[key]))
    query += " ORDER BY timestamp DESC"

    try:
        rows = storage.connection().execute(query, args).fetchall()
    except sqlite3.Error as exc:
        log.error("Failed to query interactions: %s", exc)
        raise StorageError(f"failed to query interactions: {exc}") from exc

    interactions: list[UserInteraction] = []
    for row in rows:
        try:
            interactions.append(_interaction_from_row(row))
        except (ValueError, TypeError) as exc:
            log.warning("Failed to scan interaction: %s", exc)
    return interactions


def save_usage_analytics(storage: Storage, usage: UsageAnalytics) -> None:
    """Store a usage analytics record."""
    conn = storage.connection()
    try:
        with conn:
            conn.execute(
                """
                INSERT INTO usage_analytics (
                    id, prompt_id, used_in_generation, generated_prompt_id,
                    usage_context, effectiveness_score, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    str(usage.id),
                    str(usage.prompt_id),
                    usage.used_in_generation,
                    None
                    if usage.generated_prompt_id is None
                    else str(usage.generated_prompt_id),
                    usage.usage_context,
                    usage.effectiveness_score,
                    _to_db_time(usage.created_at),
                ),
            )
    except sqlite3.Error as exc:
        raise StorageError(f"failed to save usage analytics: {exc}") from exc