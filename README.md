# promptalchemy

A library that keeps generated prompts in a local SQLite database. It stores
each prompt with its model metadata, metrics, context and embedding, finds
prompts by metadata or by embedding similarity, decays and prunes them by
relevance, and records how they are used.

## Installation

```
pip install .
```

The package needs nothing beyond the standard library.

## Storing prompts

```python
from promptalchemy.models import Prompt
from promptalchemy.storage import Storage, DuplicatePromptError

with Storage("./data") as store:          # creates ./data/prompts.db
    prompt = Prompt(content="Summarise the attached report in five bullets.",
                    phase="prima-materia", provider="openai", model="gpt-4o",
                    tags=["summary"], embedding=[0.1, 0.2, 0.3])
    store.save_prompt(prompt)
    same = store.get_prompt(prompt.id)
    try:
        store.save_prompt(Prompt(content=prompt.content))
    except DuplicatePromptError:
        pass                                # identical content is stored once
```

Prompts are deduplicated by a SHA-256 hash of their content. A prompt's
`model_metadata`, `metrics` and `context` entries are saved in the same
transaction. `get_prompt`, `update_prompt` and `delete_prompt` raise
`PromptNotFoundError` when the id is unknown; other failures raise
`StorageError`. `save_metrics` inserts or updates metrics by id, and
`save_context` adds a context entry. Embeddings are stored as little-endian
32-bit floats (`floats_to_bytes`, `bytes_to_floats`).

## Searching

```python
from promptalchemy.queries import (
    SearchCriteria, SemanticSearchCriteria, search_prompts, search_prompts_semantic_fast,
)

recent = search_prompts(store, SearchCriteria(provider="openai", limit=10))
prompts, similarities = search_prompts_semantic_fast(
    store, SemanticSearchCriteria(query_embedding=[0.1, 0.2, 0.3], limit=5, min_similarity=0.5)
)
```

Semantic search compares cosine similarity against prompts that have an
embedding of the same size and a relevance score of at least 0.1, and returns
the matches best first; it raises `ValueError` without a query embedding.
`list_prompts`, `get_all_prompts`, `get_prompts_by_relevance`,
`search_prompts_by_relevance` and `get_metrics` (with `MetricsCriteria`) cover
the other lookups.

## Lifecycle, tracking and statistics

- `promptalchemy.lifecycle`: `update_relevance_scores`, `cleanup_old_prompts`
  (returns the number deleted), `decay_relevance_scores`,
  `run_lifecycle_maintenance`.
- `promptalchemy.tracking`: `track_prompt_usage`, `track_prompt_relationship`,
  `track_prompt_enhancement`, `save_interaction`, `list_interactions`
  (filters `prompt_id`, `session_id`, `action`, `min_score`, `since`),
  `save_usage_analytics`.
- `promptalchemy.stats`: `get_embedding_stats`, `get_vector_stats`,
  `migrate_legacy_embeddings` (clears non-standard embeddings and returns how
  many), `validate_embedding_standard`.

Tuning values such as `max_prompts`, `min_relevance_score`, `max_unused_days`
and `relevance_decay_rate` are read from the database's `database_config`
table through `Storage.get_config_int` and `Storage.get_config_float`, and
fall back to built-in defaults (1000, 0.3, 30 and 0.95).

## What it does not do

The package only stores and queries prompts. It does not generate prompts,
compute embeddings, call any language-model provider, or judge and choose
between candidate prompts. It has no command-line interface and no server.

## Running the tests

```
pip install ".[test]"
pytest
```