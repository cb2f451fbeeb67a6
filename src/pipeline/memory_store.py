"""In-memory chunk store.

Reference implementation of the ChunkStore contract. All state lives in
process-local dicts; every operation holds one lock, so the store is safe to
share between the scheduler and executor threads.

Records are copied on the way in and on the way out: callers only ever see
snapshots, the same as rows read from a database.
"""

import logging
import threading
from typing import Any, Iterable, Optional

from src.llm.tokens import estimate_tokens, now_ms
from src.pipeline.chunk_store import (
    build_chunk,
    new_chunk_id,
    ready_order_key,
    select_ready,
    status_updates,
)
from src.pipeline.schemas import (
    Chunk,
    ChunkCreateInput,
    ChunkOutcome,
    ChunkStatus,
    Pipeline,
)

logger = logging.getLogger(__name__)


class InMemoryChunkStore:
    """Dict-backed pipeline and chunk storage."""

    def __init__(self):
        self._pipelines: dict[str, Pipeline] = {}
        self._chunks: dict[str, Chunk] = {}
        self._sequence = 0
        self._lock = threading.Lock()

    # --- Pipelines ---

    def create_pipeline(self, pipeline: Pipeline) -> str:
        with self._lock:
            self._pipelines[pipeline.id] = pipeline.model_copy(deep=True)
        return pipeline.id

    def get_pipeline(self, pipeline_id: str) -> Optional[Pipeline]:
        with self._lock:
            pipeline = self._pipelines.get(pipeline_id)
            return pipeline.model_copy(deep=True) if pipeline else None

    def get_project_pipelines(self, project_id: str) -> list[Pipeline]:
        with self._lock:
            return [
                p.model_copy(deep=True)
                for p in self._pipelines.values()
                if p.project_id == project_id
            ]

    def update_pipeline(self, pipeline_id: str, **fields: Any) -> None:
        with self._lock:
            pipeline = self._pipelines.get(pipeline_id)
            if pipeline is None:
                raise KeyError(f"Pipeline not found: {pipeline_id}")
            fields.setdefault("updated_at", now_ms())
            self._pipelines[pipeline_id] = pipeline.model_copy(update=fields, deep=True)

    # --- Chunks ---

    def create_chunk(self, chunk_input: ChunkCreateInput) -> str:
        chunk_id = chunk_input.id or new_chunk_id()
        with self._lock:
            self._sequence += 1
            self._chunks[chunk_id] = build_chunk(chunk_input, chunk_id, self._sequence)

        logger.info(f"Chunk created: {chunk_id} ({chunk_input.type.value}: {chunk_input.title})")
        return chunk_id

    def create_chunks(self, inputs: Iterable[ChunkCreateInput]) -> list[str]:
        return [self.create_chunk(chunk_input) for chunk_input in inputs]

    def get_chunk(self, chunk_id: str) -> Optional[Chunk]:
        with self._lock:
            chunk = self._chunks.get(chunk_id)
            return chunk.model_copy(deep=True) if chunk else None

    def get_pipeline_chunks(self, pipeline_id: str) -> list[Chunk]:
        with self._lock:
            chunks = [c for c in self._chunks.values() if c.pipeline_id == pipeline_id]
            return [c.model_copy(deep=True) for c in sorted(chunks, key=ready_order_key)]

    def get_project_chunks(self, project_id: str) -> list[Chunk]:
        with self._lock:
            chunks = [c for c in self._chunks.values() if c.project_id == project_id]
            return [c.model_copy(deep=True) for c in sorted(chunks, key=ready_order_key)]

    def get_next_pending_chunk(self, pipeline_id: str) -> Optional[Chunk]:
        ready = self.get_parallel_ready_chunks(pipeline_id, limit=1)
        return ready[0] if ready else None

    def get_parallel_ready_chunks(self, pipeline_id: str, limit: int = 3) -> list[Chunk]:
        with self._lock:
            pending = sorted(
                (
                    c for c in self._chunks.values()
                    if c.pipeline_id == pipeline_id and c.status == ChunkStatus.PENDING
                ),
                key=ready_order_key,
            )
            status_by_id = {
                c.id: c.status for c in self._chunks.values()
                if c.pipeline_id == pipeline_id
            }
            ready = select_ready(pending, status_by_id, limit)
            return [c.model_copy(deep=True) for c in ready]

    def update_chunk_status(
        self,
        chunk_id: str,
        status: ChunkStatus,
        result: Optional[ChunkOutcome] = None,
    ) -> None:
        self._update_chunk(chunk_id, status_updates(status, result))

    def increment_retry(self, chunk_id: str) -> int:
        with self._lock:
            chunk = self._chunks.get(chunk_id)
            if chunk is None:
                raise KeyError(f"Chunk not found: {chunk_id}")
            chunk.retry_count += 1
            return chunk.retry_count

    def set_chunk_output(
        self,
        chunk_id: str,
        output: str,
        actual_tokens: Optional[int] = None,
    ) -> None:
        self._update_chunk(chunk_id, {
            "output": output,
            "actual_tokens": actual_tokens or estimate_tokens(output),
        })

    def skip_pending_chunks(self, pipeline_id: str) -> int:
        with self._lock:
            skipped = 0
            for chunk in self._chunks.values():
                if chunk.pipeline_id == pipeline_id and chunk.status == ChunkStatus.PENDING:
                    chunk.status = ChunkStatus.SKIPPED
                    skipped += 1
            return skipped

    def _update_chunk(self, chunk_id: str, updates: dict[str, Any]) -> None:
        with self._lock:
            chunk = self._chunks.get(chunk_id)
            if chunk is None:
                raise KeyError(f"Chunk not found: {chunk_id}")
            self._chunks[chunk_id] = chunk.model_copy(update=updates, deep=True)
