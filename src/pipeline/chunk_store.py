"""Chunk store contract used by the pipeline scheduler.

A store persists pipeline records and their chunks. Two implementations
ship with the package:
- InMemoryChunkStore (src.pipeline.memory_store): reference implementation
- SqlChunkStore (src.pipeline.sql_store): SQLite / PostgreSQL tables

Ready-chunk ordering (shared by every implementation):
    priority descending, then creation sequence ascending.
With equal priorities this is plain creation order. A dependency id that
does not name an existing chunk is never satisfied.
"""

import uuid
from typing import Any, Iterable, Optional, Protocol, runtime_checkable

from src.llm.tokens import estimate_tokens, now_ms
from src.pipeline.schemas import (
    CHUNK_TYPE_PRIORITY,
    Chunk,
    ChunkCreateInput,
    ChunkOutcome,
    ChunkStatus,
    Pipeline,
)


@runtime_checkable
class ChunkStore(Protocol):
    """Protocol for pipeline / chunk persistence."""

    # --- Pipelines ---

    def create_pipeline(self, pipeline: Pipeline) -> str: ...

    def get_pipeline(self, pipeline_id: str) -> Optional[Pipeline]: ...

    def get_project_pipelines(self, project_id: str) -> list[Pipeline]: ...

    def update_pipeline(self, pipeline_id: str, **fields: Any) -> None: ...

    # --- Chunks ---

    def create_chunk(self, chunk_input: ChunkCreateInput) -> str: ...

    def create_chunks(self, inputs: Iterable[ChunkCreateInput]) -> list[str]: ...

    def get_chunk(self, chunk_id: str) -> Optional[Chunk]: ...

    def get_pipeline_chunks(self, pipeline_id: str) -> list[Chunk]: ...

    def get_project_chunks(self, project_id: str) -> list[Chunk]: ...

    def get_next_pending_chunk(self, pipeline_id: str) -> Optional[Chunk]: ...

    def get_parallel_ready_chunks(self, pipeline_id: str, limit: int = 3) -> list[Chunk]: ...

    def update_chunk_status(
        self,
        chunk_id: str,
        status: ChunkStatus,
        result: Optional[ChunkOutcome] = None,
    ) -> None: ...

    def increment_retry(self, chunk_id: str) -> int: ...

    def set_chunk_output(
        self,
        chunk_id: str,
        output: str,
        actual_tokens: Optional[int] = None,
    ) -> None: ...

    def skip_pending_chunks(self, pipeline_id: str) -> int: ...


def ready_order_key(chunk: Chunk) -> tuple[int, int]:
    """Sort key implementing the ready-chunk ordering policy."""
    return (-chunk.priority, chunk.sequence)


def select_ready(
    pending: list[Chunk],
    status_by_id: dict[str, ChunkStatus],
    limit: int,
) -> list[Chunk]:
    """Pick up to `limit` pending chunks whose dependencies are all completed.

    `pending` must already be sorted by ready_order_key. Dependencies missing
    from `status_by_id` count as unsatisfied.
    """
    result: list[Chunk] = []
    for chunk in pending:
        if len(result) >= limit:
            break
        if all(
            status_by_id.get(dep) == ChunkStatus.COMPLETED
            for dep in chunk.dependencies
        ):
            result.append(chunk)
    return result


def new_chunk_id() -> str:
    return f"chunk-{uuid.uuid4().hex[:12]}"


def build_chunk(chunk_input: ChunkCreateInput, chunk_id: str, sequence: int) -> Chunk:
    """Materialize a pending Chunk record from its creation input."""
    priority = chunk_input.priority
    if priority is None:
        priority = CHUNK_TYPE_PRIORITY.get(chunk_input.type, 0)

    return Chunk(
        id=chunk_id,
        pipeline_id=chunk_input.pipeline_id,
        project_id=chunk_input.project_id,
        parent_chunk_id=chunk_input.parent_chunk_id,
        key=chunk_input.key,
        type=chunk_input.type,
        title=chunk_input.title,
        description=chunk_input.description,
        prompt=chunk_input.prompt,
        target_files=list(chunk_input.target_files),
        dependencies=list(chunk_input.dependencies),
        context_files=list(chunk_input.context_files),
        status=ChunkStatus.PENDING,
        priority=priority,
        estimated_tokens=chunk_input.estimated_tokens or estimate_tokens(chunk_input.prompt),
        max_retries=chunk_input.max_retries,
        sequence=sequence,
        created_at=now_ms(),
    )


def status_updates(
    status: ChunkStatus,
    result: Optional[ChunkOutcome] = None,
) -> dict[str, Any]:
    """Field updates implied by a chunk status transition.

    in_progress stamps started_at; completed/failed stamp completed_at and
    record the outcome when one is given.
    """
    updates: dict[str, Any] = {"status": status}
    now = now_ms()
    if status == ChunkStatus.IN_PROGRESS:
        updates["started_at"] = now
    if status in (ChunkStatus.COMPLETED, ChunkStatus.FAILED):
        updates["completed_at"] = now
        if result is not None:
            updates["files_created"] = list(result.files_created)
            updates["files_modified"] = list(result.files_modified)
            updates["errors"] = list(result.errors)
    return updates
