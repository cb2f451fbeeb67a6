"""Prompt cache API routes: statistics and invalidation."""

import logging
from typing import Optional

from fastapi import APIRouter, HTTPException

from src.cache.prompt_cache import PromptCache
from src.cache.schemas import CacheEntry, CacheStats

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/cache", tags=["cache"])

_cache: Optional[PromptCache] = None


def init_cache(cache: PromptCache) -> None:
    global _cache
    _cache = cache


def _get_cache() -> PromptCache:
    if _cache is None:
        raise HTTPException(status_code=503, detail="Prompt cache not initialized")
    return _cache


@router.get("/stats", response_model=CacheStats)
async def get_cache_stats():
    return _get_cache().get_stats()


@router.get("/projects/{project_id}", response_model=list[CacheEntry])
async def list_project_entries(project_id: str):
    """List a project's cached contexts, oldest first."""
    return _get_cache().get_project_entries(project_id)


@router.delete("/projects/{project_id}")
async def invalidate_project(project_id: str):
    removed = _get_cache().invalidate_project(project_id)
    return {"project_id": project_id, "removed": removed}


@router.delete("/entries/{cache_key:path}")
async def invalidate_entry(cache_key: str):
    if not _get_cache().invalidate_entry(cache_key):
        raise HTTPException(status_code=404, detail=f"Cache entry not found: {cache_key}")
    return {"cache_key": cache_key, "removed": True}
