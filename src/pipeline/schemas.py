"""Pipeline-side schemas: pipelines, chunks, execution results, and progress.

Field names are snake_case; timestamps are integer epoch milliseconds;
counters are integers; statuses are closed enumerations.
"""

import uuid
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from src.llm.tokens import now_ms


class PipelineStatus(str, Enum):
    """Pipeline lifecycle states."""
    PENDING = "pending"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class ChunkStatus(str, Enum):
    """Chunk execution states."""
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


class ChunkType(str, Enum):
    """Kinds of generation work a chunk can represent."""
    ARCHITECTURE = "architecture"
    SCHEMA = "schema"
    COMPONENT = "component"
    API = "api"
    STYLING = "styling"
    TESTING = "testing"
    DOCUMENTATION = "documentation"
    INTEGRATION = "integration"
    REFACTOR = "refactor"


# Default priority per chunk type (higher runs first among ready chunks)
CHUNK_TYPE_PRIORITY: dict[ChunkType, int] = {
    ChunkType.ARCHITECTURE: 100,
    ChunkType.SCHEMA: 90,
    ChunkType.API: 80,
    ChunkType.COMPONENT: 70,
    ChunkType.STYLING: 60,
    ChunkType.INTEGRATION: 50,
    ChunkType.TESTING: 40,
    ChunkType.DOCUMENTATION: 30,
    ChunkType.REFACTOR: 20,
}

DEFAULT_MAX_RETRIES = 3


class PipelineConfig(BaseModel):
    """Execution policy for a pipeline. Unknown options are rejected."""

    model_config = ConfigDict(extra="forbid")

    parallelism: int = Field(
        default=1,
        ge=1,
        description="Maximum number of chunks executed concurrently per round",
    )
    stop_on_error: bool = Field(
        default=False,
        description="Abort the pipeline after a round with a terminal chunk failure",
    )
    auto_retry: bool = Field(
        default=True,
        description="Re-queue failed chunks until their max_retries is exhausted",
    )
    max_context_tokens: int = Field(
        default=32000,
        ge=1,
        description="Context budget handed to executors for each chunk",
    )


class PipelineStats(BaseModel):
    """Aggregate generation statistics for a pipeline."""

    total_tokens_used: int = 0
    total_files_generated: int = 0
    total_lines_generated: int = 0
    duration_ms: Optional[int] = None


class Pipeline(BaseModel):
    """Persisted pipeline record."""

    id: str = Field(default_factory=lambda: f"pipe-{uuid.uuid4().hex[:12]}")
    project_id: str
    name: str
    description: str = ""
    original_prompt: str = ""
    status: PipelineStatus = PipelineStatus.PENDING
    total_chunks: int = 0
    completed_chunks: int = 0
    failed_chunks: int = 0
    current_chunk_id: Optional[str] = None
    config: PipelineConfig = Field(default_factory=PipelineConfig)
    stats: PipelineStats = Field(default_factory=PipelineStats)
    created_at: int = Field(default_factory=now_ms)
    updated_at: int = Field(default_factory=now_ms)
    started_at: Optional[int] = None
    completed_at: Optional[int] = None


class ChunkCreateInput(BaseModel):
    """Input for creating a chunk.

    `dependencies` may name other chunks either by their generated id or by
    the `key` of another input in the same pipeline creation call.
    """

    id: Optional[str] = Field(
        default=None,
        description="Pre-assigned chunk id; generated by the store when omitted",
    )
    project_id: str = ""
    pipeline_id: Optional[str] = None
    parent_chunk_id: Optional[str] = None
    key: Optional[str] = Field(
        default=None,
        description="Caller-side alias, unique within a pipeline, usable in dependencies",
    )
    type: ChunkType
    title: str
    description: str = ""
    prompt: str = ""
    target_files: list[str] = Field(default_factory=list)
    dependencies: list[str] = Field(default_factory=list)
    context_files: list[str] = Field(default_factory=list)
    priority: Optional[int] = None
    estimated_tokens: Optional[int] = None
    max_retries: int = Field(default=DEFAULT_MAX_RETRIES, ge=0)


class Chunk(BaseModel):
    """Persisted chunk record."""

    id: str
    pipeline_id: Optional[str] = None
    project_id: str
    parent_chunk_id: Optional[str] = None
    key: Optional[str] = None
    type: ChunkType
    title: str
    description: str = ""
    prompt: str = ""
    target_files: list[str] = Field(default_factory=list)
    dependencies: list[str] = Field(default_factory=list)
    context_files: list[str] = Field(default_factory=list)
    status: ChunkStatus = ChunkStatus.PENDING
    priority: int = 0
    estimated_tokens: int = 0
    actual_tokens: Optional[int] = None
    output: Optional[str] = None
    retry_count: int = 0
    max_retries: int = DEFAULT_MAX_RETRIES
    files_created: list[str] = Field(default_factory=list)
    files_modified: list[str] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)
    sequence: int = Field(
        default=0,
        description="Creation ordinal within the store (ready-chunk tie-break)",
    )
    created_at: int = Field(default_factory=now_ms)
    started_at: Optional[int] = None
    completed_at: Optional[int] = None


class ChunkOutcome(BaseModel):
    """Files and errors recorded on a chunk when it reaches a terminal state."""

    files_created: list[str] = Field(default_factory=list)
    files_modified: list[str] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)


class ChunkExecutionResult(BaseModel):
    """Structured outcome returned by an executor for one chunk.

    Accepts both snake_case and camelCase keys when validated from a dict.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    success: bool
    files_created: list[str] = Field(default_factory=list)
    files_modified: list[str] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)
    tokens_used: int = 0
    lines_generated: int = 0


class CurrentTask(BaseModel):
    """The chunk currently being worked on."""

    id: str
    title: str
    type: ChunkType


class PipelineProgress(BaseModel):
    """Progress snapshot for polling and progress callbacks."""

    pipeline_id: str
    name: str
    status: PipelineStatus
    total_chunks: int
    completed_chunks: int
    failed_chunks: int
    current_task: Optional[CurrentTask] = None
    progress_percent: int = 0
    stats: Optional[PipelineStats] = None


class StepResult(BaseModel):
    """Result of a single stepped execution (execute_next_chunk)."""

    executed: bool
    chunk_id: Optional[str] = None
    success: Optional[bool] = None


class TaskDecomposition(BaseModel):
    """A prompt decomposed into chunk inputs plus ordering hints."""

    chunks: list[ChunkCreateInput]
    estimated_total_tokens: int
    suggested_order: list[str] = Field(
        default_factory=list,
        description="Chunk keys in suggested execution order",
    )
    parallel_groups: list[list[str]] = Field(
        default_factory=list,
        description="Chunk keys grouped by priority level, highest first",
    )


class CreatePipelineRequest(BaseModel):
    """Request body for creating a pipeline over HTTP."""

    project_id: str
    name: str
    prompt: str
    chunks: list[ChunkCreateInput] = Field(
        default_factory=list,
        description="Explicit chunks. When empty, the prompt is decomposed automatically.",
    )
    project_type: str = "web"
    config: PipelineConfig = Field(default_factory=PipelineConfig)
