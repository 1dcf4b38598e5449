from datetime import datetime, timedelta, timezone

import pytest

from promptalchemy.models import Prompt, PromptMetrics
from promptalchemy.queries import (
    MetricsCriteria,
    SearchCriteria,
    SemanticSearchCriteria,
    get_all_prompts,
    get_metrics,
    get_prompts_by_relevance,
    list_prompts,
    search_prompts,
    search_prompts_by_relevance,
    search_prompts_semantic_fast,
)
from promptalchemy.storage import Storage

BASE = datetime(2024, 1, 1, tzinfo=timezone.utc)


@pytest.fixture
def storage(tmp_path):
    with Storage(tmp_path / "data") as store:
        yield store


def add(storage, content, minutes=0, **kwargs):
    kwargs.setdefault("relevance_score", 1.0)
    stamp = BASE + timedelta(minutes=minutes)
    prompt = Prompt(content=content, created_at=stamp, updated_at=stamp, **kwargs)
    storage.save_prompt(prompt)
    return prompt


def test_search_filters_by_phase_and_orders_newest_first(storage):
    a = add(storage, "a", 1, phase="prima")
    b = add(storage, "b", 2, phase="prima")
    add(storage, "c", 3, phase="solutio")
    found = search_prompts(storage, SearchCriteria(phase="prima"))
    assert [p.id for p in found] == [b.id, a.id]


def test_search_limit_and_provider(storage):
    for i in range(4):
        add(storage, f"p{i}", i, provider="openai")
    add(storage, "other", 10, provider="anthropic")
    found = search_prompts(storage, SearchCriteria(provider="openai", limit=2))
    assert len(found) == 2
    assert all(p.provider == "openai" for p in found)


def test_search_by_tag_and_since(storage):
    add(storage, "old", 0, tags=["alpha"])
    new = add(storage, "new", 30, tags=["alpha", "beta"])
    add(storage, "untagged", 40, tags=["gamma"])
    found = search_prompts(
        storage, SearchCriteria(tags=["alpha"], since=BASE + timedelta(minutes=10))
    )
    assert [p.id for p in found] == [new.id]
    assert found[0].tags == ["alpha", "beta"]


def test_list_prompts_pages_and_assigns_sessions(storage):
    made = [add(storage, f"item {i}", i) for i in range(5)]
    page = list_prompts(storage, 2, 1)
    assert [p.id for p in page] == [made[3].id, made[2].id]
    assert page[0].session_id != page[1].session_id
    assert all(p.embedding is None for p in page)


def test_get_all_prompts_returns_everything(storage):
    made = {add(storage, f"x{i}", i).id for i in range(3)}
    assert {p.id for p in get_all_prompts(storage)} == made


def test_get_prompts_by_relevance_orders_by_score(storage):
    low = add(storage, "low", 0, relevance_score=0.2)
    high = add(storage, "high", 1, relevance_score=0.9)
    mid = add(storage, "mid", 2, relevance_score=0.5)
    found = get_prompts_by_relevance(storage, 10)
    assert [p.id for p in found] == [high.id, mid.id, low.id]


def test_search_prompts_by_relevance_threshold(storage):
    add(storage, "low", 0, relevance_score=0.2)
    high = add(storage, "high", 1, relevance_score=0.9, embedding=[1.0, 0.5])
    found = search_prompts_by_relevance(storage, 0.5, 10)
    assert [p.id for p in found] == [high.id]
    assert found[0].embedding == [1.0, 0.5]


def test_semantic_search_requires_embedding(storage):
    with pytest.raises(ValueError):
        search_prompts_semantic_fast(storage, SemanticSearchCriteria(query="q"))


def test_semantic_search_ranks_by_similarity(storage):
    exact = add(storage, "exact", 0, embedding=[1.0, 0.0])
    near = add(storage, "near", 1, embedding=[1.0, 1.0])
    add(storage, "orthogonal", 2, embedding=[0.0, 1.0])
    add(storage, "wrong size", 3, embedding=[1.0, 0.0, 0.0])
    add(storage, "irrelevant", 4, embedding=[1.0, 0.0], relevance_score=0.05)
    prompts, sims = search_prompts_semantic_fast(
        storage, SemanticSearchCriteria(query_embedding=[1.0, 0.0], min_similarity=0.5)
    )
    assert [p.id for p in prompts] == [exact.id, near.id]
    assert sims[0] == pytest.approx(1.0)
    assert sims == sorted(sims, reverse=True)
    assert prompts[0].embedding == [1.0, 0.0]


def test_semantic_search_limit(storage):
    for i in range(3):
        add(storage, f"v{i}", i, embedding=[1.0, float(i)])
    prompts, sims = search_prompts_semantic_fast(
        storage, SemanticSearchCriteria(query_embedding=[1.0, 0.0], limit=2)
    )
    assert len(prompts) == len(sims) == 2


def test_get_metrics_filters_and_orders(storage):
    a = add(storage, "a", 0, phase="prima")
    b = add(storage, "b", 1, phase="solutio")
    first = PromptMetrics(prompt_id=a.id, usage_count=3, updated_at=BASE)
    second = PromptMetrics(prompt_id=a.id, usage_count=7, updated_at=BASE + timedelta(hours=1))
    storage.save_metrics(first)
    storage.save_metrics(second)
    storage.save_metrics(PromptMetrics(prompt_id=b.id))
    found = get_metrics(storage, MetricsCriteria(phase="prima"))
    assert [m.id for m in found] == [second.id, first.id]
    assert found[0].usage_count == 7
    assert len(get_metrics(storage, MetricsCriteria())) == 3
    assert len(get_metrics(storage, MetricsCriteria(limit=1))) == 1