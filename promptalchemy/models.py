"""Data records for prompts and the information stored alongside them."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

_NIL_UUID = uuid.UUID(int=0)


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class ModelMetadata:
    """Details about the models and resources used to produce a prompt."""

    id: uuid.UUID = field(default_factory=uuid.uuid4)
    prompt_id: uuid.UUID = _NIL_UUID
    generation_model: str = ""
    generation_provider: str = ""
    embedding_model: str = ""
    embedding_provider: str = ""
    model_version: str = ""
    api_version: str = ""
    processing_time: int = 0
    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0
    cost: float = 0.0
    created_at: datetime = field(default_factory=_now)


@dataclass
class PromptMetrics:
    """Performance figures recorded for a prompt."""

    id: uuid.UUID = field(default_factory=uuid.uuid4)
    prompt_id: uuid.UUID = _NIL_UUID
    conversion_rate: float = 0.0
    engagement_score: float = 0.0
    token_usage: int = 0
    response_time: int = 0
    usage_count: int = 0
    created_at: datetime = field(default_factory=_now)
    updated_at: datetime = field(default_factory=_now)


@dataclass
class PromptContext:
    """A piece of context attached to a prompt."""

    id: uuid.UUID = field(default_factory=uuid.uuid4)
    prompt_id: uuid.UUID = _NIL_UUID
    context_type: str = ""
    content: str = ""
    relevance_score: float = 0.0
    created_at: datetime = field(default_factory=_now)


@dataclass
class Prompt:
    """A generated prompt together with its provenance and embedding."""

    id: uuid.UUID = field(default_factory=uuid.uuid4)
    content: str = ""
    phase: str = ""
    provider: str = ""
    model: str = ""
    temperature: float = 0.0
    max_tokens: int = 0
    actual_tokens: int = 0
    tags: list[str] = field(default_factory=list)
    parent_id: uuid.UUID | None = None
    session_id: uuid.UUID = _NIL_UUID
    source_type: str = ""
    enhancement_method: str = ""
    relevance_score: float = 0.0
    usage_count: int = 0
    generation_count: int = 0
    last_used_at: datetime | None = None
    original_input: str = ""
    generation_request: dict[str, Any] | None = None
    generation_context: list[str] = field(default_factory=list)
    persona_used: str = ""
    target_model_family: str = ""
    created_at: datetime = field(default_factory=_now)
    updated_at: datetime = field(default_factory=_now)
    embedding: list[float] | None = None
    embedding_model: str = ""
    embedding_provider: str = ""
    model_metadata: ModelMetadata | None = None
    metrics: PromptMetrics | None = None
    context: list[PromptContext] = field(default_factory=list)


@dataclass
class UserInteraction:
    """A user's action on a prompt, such as choosing or rating it."""

    id: uuid.UUID = field(default_factory=uuid.uuid4)
    prompt_id: uuid.UUID = _NIL_UUID
    session_id: uuid.UUID = _NIL_UUID
    action: str = ""
    score: float = 0.0
    timestamp: datetime | None = None


@dataclass
class UsageAnalytics:
    """A record of a prompt being used, possibly to generate another one."""

    id: uuid.UUID = field(default_factory=uuid.uuid4)
    prompt_id: uuid.UUID = _NIL_UUID
    used_in_generation: bool = False
    generated_prompt_id: uuid.UUID | None = None
    usage_context: str = ""
    effectiveness_score: float = 0.0
    created_at: datetime = field(default_factory=_now)