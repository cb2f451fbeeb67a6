"""SQL-backed chunk store (SQLite or PostgreSQL).

Persists pipelines and chunks in the generation_pipelines /
generation_chunks tables created by Database.init_db(). List-valued and
nested fields are stored as JSON. Writes are serialized behind a lock so the
read-then-write steps of a scheduling round never interleave.
"""

import logging
import threading
from typing import Any, Iterable, Optional

from src.llm.tokens import estimate_tokens, now_ms
from src.pipeline.chunk_store import (
    build_chunk,
    new_chunk_id,
    select_ready,
    status_updates,
)
from src.pipeline.db import Database, _json_dumps, _json_loads
from src.pipeline.schemas import (
    Chunk,
    ChunkCreateInput,
    ChunkOutcome,
    ChunkStatus,
    Pipeline,
    PipelineConfig,
    PipelineStats,
)

logger = logging.getLogger(__name__)

_PIPELINE_COLUMNS = (
    "id", "project_id", "name", "description", "original_prompt", "status",
    "total_chunks", "completed_chunks", "failed_chunks", "current_chunk_id",
    "config", "stats", "created_at", "updated_at", "started_at", "completed_at",
)

_CHUNK_ORDER = "ORDER BY priority DESC, seq ASC"


def _to_column(value: Any) -> Any:
    """Convert a model field value to its stored representation."""
    if isinstance(value, (PipelineConfig, PipelineStats)):
        return _json_dumps(value.model_dump(mode="json"))
    if hasattr(value, "value"):
        return value.value
    return value


def _row_to_pipeline(row: dict) -> Pipeline:
    data = {col: row.get(col) for col in _PIPELINE_COLUMNS}
    data["config"] = PipelineConfig(**_json_loads(row.get("config")))
    data["stats"] = PipelineStats(**_json_loads(row.get("stats")))
    data["description"] = data["description"] or ""
    data["original_prompt"] = data["original_prompt"] or ""
    return Pipeline(**data)


def _row_to_chunk(row: dict) -> Chunk:
    result = _json_loads(row.get("result")) or {}
    return Chunk(
        id=row["id"],
        pipeline_id=row.get("pipeline_id"),
        project_id=row["project_id"],
        parent_chunk_id=row.get("parent_chunk_id"),
        key=row.get("chunk_key"),
        type=row["type"],
        title=row["title"],
        description=row.get("description") or "",
        prompt=row.get("prompt") or "",
        target_files=_json_loads(row.get("target_files")) or [],
        dependencies=_json_loads(row.get("dependencies")) or [],
        context_files=_json_loads(row.get("context_files")) or [],
        status=row["status"],
        priority=row.get("priority") or 0,
        estimated_tokens=row.get("estimated_tokens") or 0,
        actual_tokens=row.get("actual_tokens"),
        output=row.get("output"),
        retry_count=row.get("retry_count") or 0,
        max_retries=row.get("max_retries") if row.get("max_retries") is not None else 3,
        files_created=result.get("files_created", []),
        files_modified=result.get("files_modified", []),
        errors=result.get("errors", []),
        sequence=row.get("seq") or 0,
        created_at=row["created_at"],
        started_at=row.get("started_at"),
        completed_at=row.get("completed_at"),
    )


class SqlChunkStore:
    """ChunkStore implementation over a Database."""

    def __init__(self, db: Optional[Database] = None):
        self.db = db or Database()
        self.db.init_db()
        self._lock = threading.Lock()

    def _execute(self, sql: str, params: tuple = (), fetch: str = "none") -> Any:
        with self._lock:
            return self.db.execute(sql, params, fetch=fetch)

    # --- Pipelines ---

    def create_pipeline(self, pipeline: Pipeline) -> str:
        placeholders = ", ".join(["%s"] * len(_PIPELINE_COLUMNS))
        values = tuple(_to_column(getattr(pipeline, col)) for col in _PIPELINE_COLUMNS)
        self._execute(
            f"INSERT INTO generation_pipelines ({', '.join(_PIPELINE_COLUMNS)}) "
            f"VALUES ({placeholders})",
            values,
        )
        return pipeline.id

    def get_pipeline(self, pipeline_id: str) -> Optional[Pipeline]:
        row = self._execute(
            "SELECT * FROM generation_pipelines WHERE id = %s",
            (pipeline_id,),
            fetch="one",
        )
        return _row_to_pipeline(row) if row else None

    def get_project_pipelines(self, project_id: str) -> list[Pipeline]:
        rows = self._execute(
            "SELECT * FROM generation_pipelines WHERE project_id = %s ORDER BY created_at ASC",
            (project_id,),
            fetch="all",
        )
        return [_row_to_pipeline(r) for r in rows]

    def update_pipeline(self, pipeline_id: str, **fields: Any) -> None:
        unknown = set(fields) - set(_PIPELINE_COLUMNS)
        if unknown:
            raise ValueError(f"Unknown pipeline fields: {sorted(unknown)}")
        fields.setdefault("updated_at", now_ms())

        assignments = ", ".join(f"{col} = %s" for col in fields)
        params = tuple(_to_column(v) for v in fields.values()) + (pipeline_id,)
        updated = self._execute(
            f"UPDATE generation_pipelines SET {assignments} WHERE id = %s",
            params,
            fetch="rowcount",
        )
        if not updated:
            raise KeyError(f"Pipeline not found: {pipeline_id}")

    # --- Chunks ---

    def create_chunk(self, chunk_input: ChunkCreateInput) -> str:
        chunk_id = chunk_input.id or new_chunk_id()
        chunk = build_chunk(chunk_input, chunk_id, sequence=0)
        self._execute(
            """INSERT INTO generation_chunks
               (id, pipeline_id, project_id, parent_chunk_id, chunk_key, type, title,
                description, prompt, target_files, dependencies, context_files,
                status, priority, estimated_tokens, retry_count, max_retries,
                result, created_at)
               VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)""",
            (
                chunk.id, chunk.pipeline_id, chunk.project_id, chunk.parent_chunk_id,
                chunk.key, chunk.type.value, chunk.title, chunk.description, chunk.prompt,
                _json_dumps(chunk.target_files), _json_dumps(chunk.dependencies),
                _json_dumps(chunk.context_files), chunk.status.value, chunk.priority,
                chunk.estimated_tokens, 0, chunk.max_retries, "{}", chunk.created_at,
            ),
        )
        logger.info(f"Chunk created: {chunk_id} ({chunk.type.value}: {chunk.title})")
        return chunk_id

    def create_chunks(self, inputs: Iterable[ChunkCreateInput]) -> list[str]:
        return [self.create_chunk(chunk_input) for chunk_input in inputs]

    def get_chunk(self, chunk_id: str) -> Optional[Chunk]:
        row = self._execute(
            "SELECT * FROM generation_chunks WHERE id = %s",
            (chunk_id,),
            fetch="one",
        )
        return _row_to_chunk(row) if row else None

    def get_pipeline_chunks(self, pipeline_id: str) -> list[Chunk]:
        rows = self._execute(
            f"SELECT * FROM generation_chunks WHERE pipeline_id = %s {_CHUNK_ORDER}",
            (pipeline_id,),
            fetch="all",
        )
        return [_row_to_chunk(r) for r in rows]

    def get_project_chunks(self, project_id: str) -> list[Chunk]:
        rows = self._execute(
            f"SELECT * FROM generation_chunks WHERE project_id = %s {_CHUNK_ORDER}",
            (project_id,),
            fetch="all",
        )
        return [_row_to_chunk(r) for r in rows]

    def get_next_pending_chunk(self, pipeline_id: str) -> Optional[Chunk]:
        ready = self.get_parallel_ready_chunks(pipeline_id, limit=1)
        return ready[0] if ready else None

    def get_parallel_ready_chunks(self, pipeline_id: str, limit: int = 3) -> list[Chunk]:
        chunks = self.get_pipeline_chunks(pipeline_id)
        status_by_id = {c.id: c.status for c in chunks}
        pending = [c for c in chunks if c.status == ChunkStatus.PENDING]
        return select_ready(pending, status_by_id, limit)

    def update_chunk_status(
        self,
        chunk_id: str,
        status: ChunkStatus,
        result: Optional[ChunkOutcome] = None,
    ) -> None:
        updates = status_updates(status, result)
        outcome = {
            key: updates.pop(key)
            for key in ("files_created", "files_modified", "errors")
            if key in updates
        }
        if outcome:
            updates["result"] = _json_dumps(outcome)
        self._update_chunk(chunk_id, updates)

    def increment_retry(self, chunk_id: str) -> int:
        with self._lock:
            updated = self.db.execute(
                "UPDATE generation_chunks SET retry_count = retry_count + 1 WHERE id = %s",
                (chunk_id,),
                fetch="rowcount",
            )
            if not updated:
                raise KeyError(f"Chunk not found: {chunk_id}")
            row = self.db.execute(
                "SELECT retry_count FROM generation_chunks WHERE id = %s",
                (chunk_id,),
                fetch="one",
            )
        return row["retry_count"]

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
        return self._execute(
            "UPDATE generation_chunks SET status = %s WHERE pipeline_id = %s AND status = %s",
            (ChunkStatus.SKIPPED.value, pipeline_id, ChunkStatus.PENDING.value),
            fetch="rowcount",
        )

    def _update_chunk(self, chunk_id: str, updates: dict[str, Any]) -> None:
        assignments = ", ".join(f"{col} = %s" for col in updates)
        params = tuple(_to_column(v) for v in updates.values()) + (chunk_id,)
        updated = self._execute(
            f"UPDATE generation_chunks SET {assignments} WHERE id = %s",
            params,
            fetch="rowcount",
        )
        if not updated:
            raise KeyError(f"Chunk not found: {chunk_id}")
