"""Shared fixtures for pipeline and cache tests."""

import pytest

from src.cache.prompt_cache import PromptCache
from src.cache.schemas import CacheConfig
from src.pipeline.db import Database
from src.pipeline.memory_store import InMemoryChunkStore
from src.pipeline.scheduler import PipelineScheduler
from src.pipeline.schemas import ChunkCreateInput, ChunkType
from src.pipeline.sql_store import SqlChunkStore


class FakeClock:
    """Manually advanced millisecond clock."""

    def __init__(self, start: int = 1_700_000_000_000):
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


@pytest.fixture
def store():
    return InMemoryChunkStore()


@pytest.fixture
def scheduler(store):
    return PipelineScheduler(store)


@pytest.fixture
def sql_store(tmp_path):
    db = Database(url="", sqlite_path=tmp_path / "pipeline.db")
    yield SqlChunkStore(db)
    db.close()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def cache(clock):
    prompt_cache = PromptCache(CacheConfig(sweep_interval_ms=0), clock=clock)
    yield prompt_cache
    prompt_cache.shutdown()


@pytest.fixture
def make_chunk():
    """Factory for ChunkCreateInput with sensible defaults."""

    def _make(title: str, type: ChunkType = ChunkType.COMPONENT, **kwargs) -> ChunkCreateInput:
        kwargs.setdefault("key", title)
        kwargs.setdefault("prompt", f"Generate {title}")
        return ChunkCreateInput(type=type, title=title, **kwargs)

    return _make
