"""Schemas for the prompt-context cache."""

import os
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class Message(BaseModel):
    """One conversation message."""

    role: str
    content: str


class CacheEntry(BaseModel):
    """A cached conversation context."""

    id: str = Field(description="Cache key")
    project_id: str
    context_hash: str
    system_prompt_hash: str
    cache_data: str = Field(description="Serialized message-prefix data (JSON)")
    token_count: int
    created_at: int
    last_used_at: int
    hit_count: int = 0
    model_name: str
    task_type: str = ""


class CacheHitResult(BaseModel):
    """Outcome of a cache lookup."""

    hit: bool
    entry: Optional[CacheEntry] = None
    prefix_length: Optional[int] = None
    reusable_tokens: Optional[int] = None
    time_saved_ms: Optional[int] = None


class CacheStats(BaseModel):
    """Aggregate cache statistics."""

    total_entries: int
    total_tokens_cached: int
    hit_rate: float
    total_hits: int
    total_misses: int
    avg_time_saved_ms: int
    memory_usage_mb: float


class CacheConfig(BaseModel):
    """Prompt cache configuration. Unknown options are rejected."""

    model_config = ConfigDict(extra="forbid", validate_assignment=True)

    max_entries: int = Field(
        default=100, ge=1,
        description="Entry count that triggers eviction before an insert",
    )
    max_tokens_per_entry: int = Field(
        default=8192, ge=1,
        description="Contexts larger than this are never cached",
    )
    max_total_tokens: int = Field(
        default=500_000, ge=1,
        description="Ceiling on the summed token_count of all entries",
    )
    ttl_ms: int = Field(
        default=30 * 60 * 1000, ge=1,
        description="Entries older than this (since creation) are expired",
    )
    min_reuse_threshold: float = Field(
        default=0.5, ge=0.0, le=1.0,
        description="Minimum prefix overlap, as a fraction of the cached entry's tokens",
    )
    enabled: bool = True
    sweep_interval_ms: int = Field(
        default=5 * 60 * 1000, ge=0,
        description="Background TTL sweep period; 0 disables the sweeper thread",
    )
    assumed_tokens_per_second: float = Field(
        default=30.0, gt=0,
        description="Generation speed used to estimate time saved by reuse",
    )
    max_indexed_entries: int = Field(
        default=1000, ge=1,
        description="Hard LRU cap on the entry map",
    )


def cache_config_from_env() -> CacheConfig:
    """Build a CacheConfig from PROMPT_CACHE_* environment variables."""
    overrides: dict = {}
    enabled = os.environ.get("PROMPT_CACHE_ENABLED")
    if enabled is not None:
        overrides["enabled"] = enabled.lower() not in ("0", "false", "no")
    ttl = os.environ.get("PROMPT_CACHE_TTL_MS")
    if ttl:
        overrides["ttl_ms"] = int(ttl)
    max_total = os.environ.get("PROMPT_CACHE_MAX_TOTAL_TOKENS")
    if max_total:
        overrides["max_total_tokens"] = int(max_total)
    return CacheConfig(**overrides)
