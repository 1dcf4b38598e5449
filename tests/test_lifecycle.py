import pytest

from promptalchemy.lifecycle import (
    cleanup_old_prompts,
    decay_relevance_scores,
    run_lifecycle_maintenance,
    update_relevance_scores,
)
from promptalchemy.models import Prompt
from promptalchemy.storage import PromptNotFoundError, Storage, StorageError


@pytest.fixture
def storage(tmp_path):
    with Storage(tmp_path / "data") as store:
        yield store


def _add(storage, content, relevance):
    prompt = Prompt(content=content, phase="prima-materia", provider="p", relevance_score=relevance)
    storage.save_prompt(prompt)
    return prompt.id


def _set_config(storage, key, value):
    conn = storage.connection()
    with conn:
        conn.execute(
            "INSERT OR REPLACE INTO database_config (key, value) VALUES (?, ?)", (key, value)
        )


def _mark_used_now(storage, prompt_id):
    conn = storage.connection()
    with conn:
        conn.execute(
            "UPDATE prompts SET last_used_at = datetime('now') WHERE id = ?", (str(prompt_id),)
        )


def _relevance(storage, prompt_id):
    return storage.get_prompt(prompt_id).relevance_score


def _count(storage):
    return storage.connection().execute("SELECT COUNT(*) FROM prompts").fetchone()[0]


def test_update_relevance_uses_default_decay(storage):
    pid = _add(storage, "unused", 1.0)
    update_relevance_scores(storage)
    assert _relevance(storage, pid) == pytest.approx(0.95)


def test_update_relevance_uses_configured_decay(storage):
    _set_config(storage, "relevance_decay_rate", "0.5")
    pid = _add(storage, "unused", 1.0)
    update_relevance_scores(storage)
    assert _relevance(storage, pid) == pytest.approx(0.5)


def test_update_relevance_skips_recently_used(storage):
    pid = _add(storage, "recent", 0.8)
    _mark_used_now(storage, pid)
    update_relevance_scores(storage)
    assert _relevance(storage, pid) == pytest.approx(0.8)


def test_update_relevance_invalid_config(storage):
    _set_config(storage, "relevance_decay_rate", "not-a-number")
    with pytest.raises(StorageError, match="decay rate"):
        update_relevance_scores(storage)


def test_cleanup_not_needed_below_limit(storage):
    ids = [_add(storage, f"prompt {n}", 0.1) for n in range(3)]
    assert cleanup_old_prompts(storage) == 0
    assert _count(storage) == len(ids)


def test_cleanup_removes_low_relevance(storage):
    _set_config(storage, "max_prompts", "2")
    low = [_add(storage, f"low {n}", 0.1) for n in range(2)]
    high = _add(storage, "high", 1.0)
    assert cleanup_old_prompts(storage) == len(low)
    assert _count(storage) == 1
    assert storage.get_prompt(high).content == "high"
    for pid in low:
        with pytest.raises(PromptNotFoundError):
            storage.get_prompt(pid)


def test_cleanup_respects_min_relevance_config(storage):
    _set_config(storage, "max_prompts", "1")
    _set_config(storage, "min_relevance_score", "0.6")
    below = _add(storage, "below", 0.5)
    above = _add(storage, "above", 0.7)
    assert cleanup_old_prompts(storage) == 1
    assert storage.get_prompt(above).relevance_score == pytest.approx(0.7)
    with pytest.raises(PromptNotFoundError):
        storage.get_prompt(below)


def test_cleanup_invalid_config(storage):
    _set_config(storage, "max_prompts", "many")
    with pytest.raises(StorageError, match="max prompts"):
        cleanup_old_prompts(storage)


def test_maintenance_decays_then_cleans(storage):
    _set_config(storage, "max_prompts", "1")
    _set_config(storage, "relevance_decay_rate", "0.5")
    fading = _add(storage, "fading", 0.5)
    strong = _add(storage, "strong", 1.0)
    assert run_lifecycle_maintenance(storage) == 1
    assert _relevance(storage, strong) == pytest.approx(0.5)
    with pytest.raises(PromptNotFoundError):
        storage.get_prompt(fading)


def test_maintenance_propagates_config_error(storage):
    _set_config(storage, "relevance_decay_rate", "bad")
    with pytest.raises(StorageError):
        run_lifecycle_maintenance(storage)


def test_decay_unused_prompt(storage):
    pid = _add(storage, "unused", 1.0)
    decay_relevance_scores(storage, 0.1)
    assert _relevance(storage, pid) == pytest.approx(0.9)


def test_decay_recently_used_prompt_barely_changes(storage):
    pid = _add(storage, "recent", 0.8)
    _mark_used_now(storage, pid)
    decay_relevance_scores(storage, 0.1)
    assert _relevance(storage, pid) == pytest.approx(0.8, abs=1e-3)
    assert _relevance(storage, pid) <= 0.8


def test_decay_clamps_to_unit_range(storage):
    over = _add(storage, "over", 2.0)
    decay_relevance_scores(storage, 0.0)
    assert _relevance(storage, over) == 1.0


def test_decay_rate_above_one_zeroes_scores(storage):
    pid = _add(storage, "gone", 0.7)
    decay_relevance_scores(storage, 1.5)
    assert _relevance(storage, pid) == 0.0


def test_decay_leaves_zero_scores(storage):
    pid = _add(storage, "zero", 0.0)
    decay_relevance_scores(storage, 0.2)
    assert _relevance(storage, pid) == 0.0


def test_decay_keeps_scores_in_range(storage):
    ids = [_add(storage, f"p{n}", value) for n, value in enumerate((0.2, 0.6, 1.0, 3.0))]
    decay_relevance_scores(storage, 0.3)
    scores = [_relevance(storage, pid) for pid in ids]
    assert all(0.0 <= score <= 1.0 for score in scores)
    assert scores == sorted(scores)