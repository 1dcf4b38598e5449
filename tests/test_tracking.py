import json
import uuid
from datetime import datetime, timezone

import pytest

from promptalchemy.models import Prompt, UsageAnalytics, UserInteraction
from promptalchemy.storage import Storage, StorageError
from promptalchemy.tracking import (
    list_interactions,
    save_interaction,
    save_usage_analytics,
    track_prompt_enhancement,
    track_prompt_relationship,
    track_prompt_usage,
)


@pytest.fixture
def storage(tmp_path):
    with Storage(tmp_path / "data") as store:
        yield store


@pytest.fixture
def prompt(storage):
    item = Prompt(content="Explain recursion", phase="prima-materia", provider="mock")
    storage.save_prompt(item)
    return item


def test_track_prompt_usage_sets_last_used_and_records_analytics(storage, prompt):
    track_prompt_usage(storage, prompt.id, "cli")
    loaded = storage.get_prompt(prompt.id)
    assert loaded.last_used_at is not None
    rows = storage.connection().execute(
        "SELECT prompt_id, usage_context FROM usage_analytics"
    ).fetchall()
    assert [(r["prompt_id"], r["usage_context"]) for r in rows] == [(str(prompt.id), "cli")]


def test_track_prompt_usage_unknown_prompt_raises(storage):
    with pytest.raises(StorageError):
        track_prompt_usage(storage, uuid.uuid4(), "cli")
    count = storage.connection().execute("SELECT COUNT(*) FROM usage_analytics").fetchone()[0]
    assert count == 0


def test_track_prompt_relationship_replaces_same_triple(storage):
    source, target = uuid.uuid4(), uuid.uuid4()
    track_prompt_relationship(storage, source, target, "similar", 0.4, "first")
    track_prompt_relationship(storage, source, target, "similar", 0.9, "second")
    rows = storage.connection().execute(
        "SELECT source_prompt_id, target_prompt_id, strength, context FROM prompt_relationships"
    ).fetchall()
    assert len(rows) == 1
    assert rows[0]["source_prompt_id"] == str(source)
    assert rows[0]["target_prompt_id"] == str(target)
    assert rows[0]["strength"] == 0.9
    assert rows[0]["context"] == "second"


def test_track_prompt_relationship_different_types_kept(storage):
    source, target = uuid.uuid4(), uuid.uuid4()
    track_prompt_relationship(storage, source, target, "similar", 0.4, "")
    track_prompt_relationship(storage, source, target, "derived", 0.6, "")
    types = {
        r["relationship_type"]
        for r in storage.connection().execute("SELECT relationship_type FROM prompt_relationships")
    }
    assert types == {"similar", "derived"}


def test_track_prompt_enhancement_stores_metadata_json(storage):
    child, parent = uuid.uuid4(), uuid.uuid4()
    metadata = {"reason": "clarity", "rounds": 2}
    track_prompt_enhancement(storage, child, parent, "refine", "judge", 0.3, metadata)
    row = storage.connection().execute(
        "SELECT prompt_id, parent_prompt_id, enhancement_type, enhancement_method, "
        "improvement_score, metadata FROM enhancement_history"
    ).fetchone()
    assert row["prompt_id"] == str(child)
    assert row["parent_prompt_id"] == str(parent)
    assert row["enhancement_type"] == "refine"
    assert row["enhancement_method"] == "judge"
    assert row["improvement_score"] == 0.3
    assert json.loads(row["metadata"]) == metadata


def test_track_prompt_enhancement_unserialisable_metadata_raises(storage):
    with pytest.raises(StorageError):
        track_prompt_enhancement(
            storage, uuid.uuid4(), uuid.uuid4(), "refine", "judge", 0.1, {"bad": object()}
        )
    count = storage.connection().execute("SELECT COUNT(*) FROM enhancement_history").fetchone()[0]
    assert count == 0


def test_save_interaction_fills_id_and_timestamp(storage):
    interaction = UserInteraction(prompt_id=uuid.uuid4(), action="chosen", score=1.0)
    save_interaction(storage, interaction)
    assert interaction.id != uuid.UUID(int=0)
    assert interaction.timestamp is not None
    listed = list_interactions(storage)
    assert [i.id for i in listed] == [interaction.id]


def test_interaction_round_trip(storage):
    when = datetime(2024, 5, 1, 12, 30, 0, tzinfo=timezone.utc)
    original = UserInteraction(
        id=uuid.uuid4(),
        prompt_id=uuid.uuid4(),
        session_id=uuid.uuid4(),
        action="skipped",
        score=0.25,
        timestamp=when,
    )
    save_interaction(storage, original)
    (loaded,) = list_interactions(storage, {})
    assert loaded == original


def test_list_interactions_filters_and_order(storage):
    prompt_a, prompt_b = uuid.uuid4(), uuid.uuid4()
    early = datetime(2024, 1, 1, tzinfo=timezone.utc)
    late = datetime(2024, 6, 1, tzinfo=timezone.utc)
    first = UserInteraction(prompt_id=prompt_a, action="chosen", score=0.9, timestamp=early)
    second = UserInteraction(prompt_id=prompt_a, action="skipped", score=0.1, timestamp=late)
    third = UserInteraction(prompt_id=prompt_b, action="chosen", score=0.5, timestamp=late)
    for item in (first, second, third):
        save_interaction(storage, item)

    by_prompt = list_interactions(storage, {"prompt_id": prompt_a})
    assert [i.id for i in by_prompt] == [second.id, first.id]

    chosen = list_interactions(storage, {"action": "chosen"})
    assert {i.id for i in chosen} == {first.id, third.id}

    high = list_interactions(storage, {"min_score": 0.5})
    assert {i.id for i in high} == {first.id, third.id}

    recent = list_interactions(storage, {"since": late})
    assert {i.id for i in recent} == {second.id, third.id}

    combined = list_interactions(storage, {"prompt_id": prompt_a, "action": "chosen"})
    assert [i.id for i in combined] == [first.id]


def test_list_interactions_by_session(storage):
    session = uuid.uuid4()
    mine = UserInteraction(prompt_id=uuid.uuid4(), session_id=session, action="chosen")
    other = UserInteraction(prompt_id=uuid.uuid4(), session_id=uuid.uuid4(), action="chosen")
    save_interaction(storage, mine)
    save_interaction(storage, other)
    assert [i.id for i in list_interactions(storage, {"session_id": session})] == [mine.id]


def test_save_usage_analytics_stores_row(storage, prompt):
    generated = uuid.uuid4()
    usage = UsageAnalytics(
        prompt_id=prompt.id,
        used_in_generation=True,
        generated_prompt_id=generated,
        usage_context="generate",
        effectiveness_score=0.7,
    )
    save_usage_analytics(storage, usage)
    row = storage.connection().execute(
        "SELECT id, prompt_id, used_in_generation, generated_prompt_id, usage_context, "
        "effectiveness_score FROM usage_analytics"
    ).fetchone()
    assert row["id"] == str(usage.id)
    assert row["prompt_id"] == str(prompt.id)
    assert row["used_in_generation"] == 1
    assert row["generated_prompt_id"] == str(generated)
    assert row["usage_context"] == "generate"
    assert row["effectiveness_score"] == 0.7


def test_save_usage_analytics_without_generated_prompt(storage, prompt):
    usage = UsageAnalytics(prompt_id=prompt.id)
    save_usage_analytics(storage, usage)
    row = storage.connection().execute(
        "SELECT generated_prompt_id, used_in_generation FROM usage_analytics"
    ).fetchone()
    assert row["generated_prompt_id"] is None
    assert row["used_in_generation"] == 0


def test_save_usage_analytics_unknown_prompt_raises(storage):
    with pytest.raises(StorageError):
        save_usage_analytics(storage, UsageAnalytics(prompt_id=uuid.uuid4()))


def test_save_usage_analytics_duplicate_id_raises(storage, prompt):
    usage = UsageAnalytics(prompt_id=prompt.id)
    save_usage_analytics(storage, usage)
    with pytest.raises(StorageError):
        save_usage_analytics(storage, usage)