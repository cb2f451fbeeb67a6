"""Pipeline scheduler: drives a pipeline's chunks to completion.

The scheduler:

1. Persists a pipeline and its chunk DAG through a ChunkStore
2. Runs rounds: picks up to `parallelism` ready chunks, executes them
   concurrently on a thread pool, and waits for the whole batch
3. Reconciles results in batch order (completed / re-queued / failed)
4. Recomputes progress and notifies the optional progress callback
5. Stops on pause, cancellation, deadlock, or stop-on-error

Chunk failures never propagate to the caller. They are recorded on the
chunk and reflected in the pipeline's counters and final status.

Cancellation is cooperative: status is checked at the top of each round and
in-flight executor calls are allowed to finish.

Every pipeline status read-modify-write happens under one scheduler lock, so
a pause or cancel from another thread (an API request) is never overwritten
by the run loop.
"""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, Optional, Union

from src.llm.tokens import now_ms
from src.pipeline.chunk_store import ChunkStore, new_chunk_id
from src.pipeline.schemas import (
    Chunk,
    ChunkCreateInput,
    ChunkExecutionResult,
    ChunkOutcome,
    ChunkStatus,
    CurrentTask,
    Pipeline,
    PipelineConfig,
    PipelineProgress,
    PipelineStatus,
    StepResult,
    TaskDecomposition,
)

logger = logging.getLogger(__name__)

ChunkExecutor = Callable[[Chunk], Union[ChunkExecutionResult, dict[str, Any]]]
ProgressCallback = Callable[[PipelineProgress], None]

# Statuses from which run_pipeline() will not restart execution
_NON_RUNNABLE = (PipelineStatus.COMPLETED, PipelineStatus.CANCELLED)

# Statuses update_progress() must not overwrite while chunks remain
_STICKY = (PipelineStatus.PAUSED, PipelineStatus.CANCELLED, PipelineStatus.FAILED)


class PipelineScheduler:
    """Creates, controls, and runs chunk pipelines over a ChunkStore."""

    def __init__(self, store: ChunkStore):
        self.store = store
        self._active_runs: set[str] = set()
        # Guards pipeline status transitions and _active_runs. Reentrant so
        # lifecycle calls made from store or executor hooks on the run thread
        # do not deadlock.
        self._lock = threading.RLock()
        self._stats_lock = threading.Lock()

    # ── Creation ───────────────────────────────────────────

    def create_pipeline(
        self,
        project_id: str,
        name: str,
        original_prompt: str,
        chunks: list[ChunkCreateInput],
        config: Optional[PipelineConfig] = None,
    ) -> str:
        """Persist a pipeline (status=pending) and all of its chunks.

        Dependencies may reference another input's `key` or a chunk id.
        Unknown references are stored verbatim and can never be satisfied.

        Raises:
            ValueError: duplicate keys or a dependency cycle among the chunks
        """
        config = config or PipelineConfig()
        resolved = _resolve_dependencies(chunks)
        _check_acyclic(resolved)

        pipeline = Pipeline(
            project_id=project_id,
            name=name,
            description=f"Auto-generated pipeline for: {original_prompt[:100]}...",
            original_prompt=original_prompt,
            total_chunks=len(resolved),
            config=config,
        )
        self.store.create_pipeline(pipeline)

        for chunk_input in resolved:
            self.store.create_chunk(chunk_input.model_copy(update={
                "project_id": project_id,
                "pipeline_id": pipeline.id,
            }))

        logger.info(
            f"Pipeline created: {pipeline.id} for project {project_id}, "
            f"{len(resolved)} chunks, parallelism={config.parallelism}"
        )
        return pipeline.id

    def create_pipeline_from_decomposition(
        self,
        project_id: str,
        name: str,
        original_prompt: str,
        decomposition: TaskDecomposition,
        config: Optional[PipelineConfig] = None,
    ) -> str:
        """Create a pipeline from a TaskDecomposition's chunks."""
        return self.create_pipeline(
            project_id, name, original_prompt, decomposition.chunks, config,
        )

    # ── Queries ────────────────────────────────────────────

    def get_pipeline(self, pipeline_id: str) -> Optional[Pipeline]:
        return self.store.get_pipeline(pipeline_id)

    def get_project_pipelines(self, project_id: str) -> list[Pipeline]:
        return self.store.get_project_pipelines(project_id)

    def get_pipeline_chunks(self, pipeline_id: str) -> list[Chunk]:
        return self.store.get_pipeline_chunks(pipeline_id)

    def get_progress(self, pipeline_id: str) -> Optional[PipelineProgress]:
        """Build a progress snapshot, or None for an unknown pipeline."""
        pipeline = self.store.get_pipeline(pipeline_id)
        if pipeline is None:
            return None

        current_task = None
        if pipeline.current_chunk_id:
            chunk = self.store.get_chunk(pipeline.current_chunk_id)
            if chunk is not None:
                current_task = CurrentTask(id=chunk.id, title=chunk.title, type=chunk.type)

        progress_percent = (
            round(pipeline.completed_chunks / pipeline.total_chunks * 100)
            if pipeline.total_chunks > 0 else 0
        )

        return PipelineProgress(
            pipeline_id=pipeline.id,
            name=pipeline.name,
            status=pipeline.status,
            total_chunks=pipeline.total_chunks,
            completed_chunks=pipeline.completed_chunks,
            failed_chunks=pipeline.failed_chunks,
            current_task=current_task,
            progress_percent=progress_percent,
            stats=pipeline.stats,
        )

    # ── Lifecycle controls ─────────────────────────────────

    def start_pipeline(self, pipeline_id: str) -> bool:
        """Mark a pipeline running and record when it first started.

        Completed and cancelled pipelines are left alone (returns False).
        """
        with self._lock:
            pipeline = self._require(pipeline_id)
            if pipeline.status in _NON_RUNNABLE:
                logger.warning(f"Cannot start pipeline {pipeline_id}: status is {pipeline.status.value}")
                return False

            self.store.update_pipeline(
                pipeline_id,
                status=PipelineStatus.RUNNING,
                started_at=pipeline.started_at or now_ms(),
                completed_at=None,
            )
        logger.info(f"Pipeline started: {pipeline_id}")
        return True

    def pause_pipeline(self, pipeline_id: str) -> bool:
        """Pause a pending or running pipeline. Returns False otherwise."""
        with self._lock:
            pipeline = self._require(pipeline_id)
            if pipeline.status not in (PipelineStatus.PENDING, PipelineStatus.RUNNING):
                logger.warning(f"Cannot pause pipeline {pipeline_id}: status is {pipeline.status.value}")
                return False

            self.store.update_pipeline(pipeline_id, status=PipelineStatus.PAUSED)
        logger.info(f"Pipeline paused: {pipeline_id}")
        return True

    def resume_pipeline(self, pipeline_id: str) -> bool:
        """Resume a paused (or stop-on-error failed) pipeline.

        The pipeline becomes running again; the caller re-enters the run loop
        with run_pipeline() or start_pipeline_thread(). A run that is still
        winding down when the resume lands picks the work back up itself.
        """
        with self._lock:
            pipeline = self._require(pipeline_id)
            if pipeline.status not in (PipelineStatus.PAUSED, PipelineStatus.FAILED):
                logger.warning(f"Cannot resume pipeline {pipeline_id}: status is {pipeline.status.value}")
                return False

            self.store.update_pipeline(
                pipeline_id,
                status=PipelineStatus.RUNNING,
                completed_at=None,
            )
        logger.info(f"Pipeline resumed: {pipeline_id}")
        return True

    def cancel_pipeline(self, pipeline_id: str) -> bool:
        """Cancel a pipeline and mark every pending chunk skipped.

        In-flight chunks are not interrupted; the run loop stops at the top
        of its next round.
        """
        with self._lock:
            pipeline = self._require(pipeline_id)
            if pipeline.status in _NON_RUNNABLE:
                logger.warning(f"Cannot cancel pipeline {pipeline_id}: status is {pipeline.status.value}")
                return False

            self.store.update_pipeline(
                pipeline_id,
                status=PipelineStatus.CANCELLED,
                completed_at=now_ms(),
            )
            skipped = self.store.skip_pending_chunks(pipeline_id)
        logger.info(f"Pipeline cancelled: {pipeline_id} ({skipped} pending chunks skipped)")
        return True

    # ── Progress & stats ───────────────────────────────────

    def update_progress(self, pipeline_id: str) -> None:
        """Recompute chunk counters and derive the pipeline status.

        When every chunk is completed or failed the pipeline becomes
        completed (no failures) or failed. Otherwise it is running, unless it
        is paused, cancelled, or already failed.
        """
        with self._lock:
            chunks = self.store.get_pipeline_chunks(pipeline_id)
            # Status is read after the chunks so a transition made while
            # listing them is seen here.
            pipeline = self._require(pipeline_id)
            self.store.update_pipeline(pipeline_id, **_progress_fields(pipeline, chunks))

    def update_stats(
        self,
        pipeline_id: str,
        tokens_used: int = 0,
        files_generated: int = 0,
        lines_generated: int = 0,
    ) -> None:
        """Accumulate generation stats and refresh the elapsed duration."""
        with self._stats_lock:
            pipeline = self.store.get_pipeline(pipeline_id)
            if pipeline is None:
                return

            stats = pipeline.stats.model_copy(update={
                "total_tokens_used": pipeline.stats.total_tokens_used + tokens_used,
                "total_files_generated": pipeline.stats.total_files_generated + files_generated,
                "total_lines_generated": pipeline.stats.total_lines_generated + lines_generated,
                "duration_ms": now_ms() - pipeline.started_at if pipeline.started_at else None,
            })
            self.store.update_pipeline(pipeline_id, stats=stats)

    # ── Execution ──────────────────────────────────────────

    def run_pipeline(
        self,
        pipeline_id: str,
        executor: ChunkExecutor,
        on_progress: Optional[ProgressCallback] = None,
    ) -> PipelineProgress:
        """Run rounds until no work remains, then return the final progress.

        Completed, cancelled, and paused pipelines are returned as-is. A
        second concurrent run of the same pipeline is refused. If the
        pipeline is resumed while this run is stopping, the run continues
        instead of releasing the pipeline.
        """
        with self._lock:
            pipeline = self._require(pipeline_id)
            if pipeline.status in _NON_RUNNABLE:
                logger.info(f"Pipeline {pipeline_id} is {pipeline.status.value}, nothing to run")
                return self.get_progress(pipeline_id)
            if pipeline.status == PipelineStatus.PAUSED:
                logger.info(f"Pipeline {pipeline_id} is paused; resume it before running")
                return self.get_progress(pipeline_id)
            if pipeline_id in self._active_runs:
                logger.warning(
                    f"DUPLICATE RUN BLOCKED: pipeline {pipeline_id} is already running"
                )
                return self.get_progress(pipeline_id)

            self._active_runs.add(pipeline_id)
            self.start_pipeline(pipeline_id)

        config = pipeline.config
        rounds = 0
        released = False
        try:
            while True:
                rounds, stopped_as = self._run_rounds(
                    pipeline_id, executor, on_progress, config, rounds,
                )
                self.update_progress(pipeline_id)
                self.update_stats(pipeline_id)

                # Release under the same lock resume_pipeline() takes, so a
                # resume is either seen here or finds the pipeline released.
                with self._lock:
                    current = self._require(pipeline_id)
                    if stopped_as == PipelineStatus.RUNNING or current.status != PipelineStatus.RUNNING:
                        self._active_runs.discard(pipeline_id)
                        released = True
                        break
                logger.info(
                    f"Pipeline {pipeline_id} resumed while stopping "
                    f"({stopped_as.value}), continuing"
                )
        finally:
            if not released:
                with self._lock:
                    self._active_runs.discard(pipeline_id)

        final = self.get_progress(pipeline_id)
        logger.info(
            f"Pipeline {pipeline_id} finished: status={final.status.value}, "
            f"{final.completed_chunks}/{final.total_chunks} completed, "
            f"{final.failed_chunks} failed, {rounds} rounds"
        )
        return final

    def execute_next_chunk(
        self,
        pipeline_id: str,
        executor: ChunkExecutor,
        on_progress: Optional[ProgressCallback] = None,
    ) -> StepResult:
        """Execute exactly one ready chunk (stepped / manual execution)."""
        with self._lock:
            pipeline = self._require(pipeline_id)
            if pipeline.status in (PipelineStatus.PAUSED, PipelineStatus.CANCELLED):
                return StepResult(executed=False)

            chunk = self.store.get_next_pending_chunk(pipeline_id)
            if chunk is None:
                self._fail_if_deadlocked(pipeline_id)
                return StepResult(executed=False)

            if pipeline.started_at is None:
                self.start_pipeline(pipeline_id)
            self.store.update_chunk_status(chunk.id, ChunkStatus.IN_PROGRESS)

        self.update_progress(pipeline_id)

        result = self._invoke_executor(executor, chunk)
        self._record_result(pipeline_id, chunk, result, pipeline.config)

        self.update_progress(pipeline_id)
        self._emit_progress(pipeline_id, on_progress)
        return StepResult(executed=True, chunk_id=chunk.id, success=result.success)

    def start_pipeline_thread(
        self,
        pipeline_id: str,
        executor: ChunkExecutor,
        on_progress: Optional[ProgressCallback] = None,
    ) -> threading.Thread:
        """Spawn a background thread running run_pipeline().

        Returns the thread (for testing). Callers poll get_progress().
        """
        thread = threading.Thread(
            target=self._run_in_background,
            args=(pipeline_id, executor, on_progress),
            name=f"pipeline-{pipeline_id}",
            daemon=True,
        )
        thread.start()
        logger.info(f"Started pipeline thread for {pipeline_id}")
        return thread

    # ── Internals ──────────────────────────────────────────

    def _run_in_background(
        self,
        pipeline_id: str,
        executor: ChunkExecutor,
        on_progress: Optional[ProgressCallback],
    ) -> None:
        try:
            self.run_pipeline(pipeline_id, executor, on_progress)
        except Exception as e:
            logger.error(f"Pipeline {pipeline_id} run crashed: {e}", exc_info=True)
            self._finish(pipeline_id, PipelineStatus.FAILED)

    def _run_rounds(
        self,
        pipeline_id: str,
        executor: ChunkExecutor,
        on_progress: Optional[ProgressCallback],
        config: PipelineConfig,
        rounds: int,
    ) -> tuple[int, PipelineStatus]:
        """Run rounds until the pipeline stops.

        Returns the updated round count and the status the pipeline was in
        when the loop stopped.
        """
        while True:
            with self._lock:
                current = self._require(pipeline_id)
                if current.status in (PipelineStatus.PAUSED, PipelineStatus.CANCELLED):
                    logger.info(
                        f"Pipeline {pipeline_id} {current.status.value}, "
                        f"stopping before round {rounds + 1}"
                    )
                    return rounds, current.status

                batch = self.store.get_parallel_ready_chunks(pipeline_id, config.parallelism)
                if not batch:
                    self._fail_if_deadlocked(pipeline_id)
                    return rounds, self._require(pipeline_id).status

                # Claimed before the lock is released so a cancel cannot skip
                # chunks this round is about to execute.
                for chunk in batch:
                    self.store.update_chunk_status(chunk.id, ChunkStatus.IN_PROGRESS)

            rounds += 1
            logger.info(
                f"Pipeline {pipeline_id} round {rounds}: "
                f"{[c.title for c in batch]}"
            )
            self.update_progress(pipeline_id)
            final_statuses = self._run_round(pipeline_id, batch, executor, config)

            self.update_progress(pipeline_id)
            self._emit_progress(pipeline_id, on_progress)

            if config.stop_on_error and ChunkStatus.FAILED in final_statuses:
                logger.warning(
                    f"Pipeline {pipeline_id} stopping on error after round {rounds}"
                )
                self._finish(pipeline_id, PipelineStatus.FAILED)
                return rounds, PipelineStatus.FAILED

    def _run_round(
        self,
        pipeline_id: str,
        batch: list[Chunk],
        executor: ChunkExecutor,
        config: PipelineConfig,
    ) -> list[ChunkStatus]:
        """Execute one claimed batch concurrently, then reconcile in batch order."""
        with ThreadPoolExecutor(
            max_workers=len(batch),
            thread_name_prefix=f"chunk-{pipeline_id}",
        ) as pool:
            futures = [pool.submit(self._invoke_executor, executor, chunk) for chunk in batch]
            results = [future.result() for future in futures]

        return [
            self._record_result(pipeline_id, chunk, result, config)
            for chunk, result in zip(batch, results)
        ]

    def _invoke_executor(self, executor: ChunkExecutor, chunk: Chunk) -> ChunkExecutionResult:
        """Call the executor, turning exceptions into failed results."""
        try:
            raw = executor(chunk)
            if isinstance(raw, ChunkExecutionResult):
                return raw
            return ChunkExecutionResult.model_validate(raw)
        except Exception as e:
            logger.error(f"Chunk {chunk.id} ({chunk.title}) executor raised: {e}", exc_info=True)
            return ChunkExecutionResult(success=False, errors=[str(e) or type(e).__name__])

    def _record_result(
        self,
        pipeline_id: str,
        chunk: Chunk,
        result: ChunkExecutionResult,
        config: PipelineConfig,
    ) -> ChunkStatus:
        """Apply one executor result to its chunk. Returns the chunk's new status."""
        if result.success:
            self.store.update_chunk_status(
                chunk.id,
                ChunkStatus.COMPLETED,
                ChunkOutcome(
                    files_created=result.files_created,
                    files_modified=result.files_modified,
                ),
            )
            self.update_stats(
                pipeline_id,
                tokens_used=result.tokens_used,
                files_generated=len(result.files_created),
                lines_generated=result.lines_generated,
            )
            logger.info(
                f"Chunk {chunk.id} ({chunk.title}): completed, "
                f"{len(result.files_created)} files, {result.tokens_used:,} tokens"
            )
            return ChunkStatus.COMPLETED

        if config.auto_retry and chunk.retry_count < chunk.max_retries:
            with self._lock:
                # A cancelled pipeline has no pending chunks; skip instead of re-queueing.
                if self._require(pipeline_id).status == PipelineStatus.CANCELLED:
                    self.store.update_chunk_status(chunk.id, ChunkStatus.SKIPPED)
                    logger.info(
                        f"Chunk {chunk.id} ({chunk.title}) failed after pipeline "
                        f"{pipeline_id} was cancelled, skipped instead of retried"
                    )
                    return ChunkStatus.SKIPPED

                attempt = self.store.increment_retry(chunk.id)
                self.store.update_chunk_status(chunk.id, ChunkStatus.PENDING)
            logger.warning(
                f"Chunk {chunk.id} ({chunk.title}) failed, retry {attempt}/{chunk.max_retries}: "
                f"{result.errors}"
            )
            return ChunkStatus.PENDING

        self.store.update_chunk_status(
            chunk.id,
            ChunkStatus.FAILED,
            ChunkOutcome(errors=result.errors or ["Unknown error"]),
        )
        logger.warning(
            f"Chunk {chunk.id} ({chunk.title}) failed after "
            f"{chunk.retry_count + 1} attempts: {result.errors}"
        )
        return ChunkStatus.FAILED

    def _fail_if_deadlocked(self, pipeline_id: str) -> bool:
        """Fail the pipeline when pending chunks remain but none can ever run."""
        chunks = self.store.get_pipeline_chunks(pipeline_id)
        pending = [c for c in chunks if c.status == ChunkStatus.PENDING]
        in_progress = [c for c in chunks if c.status == ChunkStatus.IN_PROGRESS]

        if pending and not in_progress:
            logger.warning(
                f"Pipeline {pipeline_id} has {len(pending)} pending chunks with "
                f"unsatisfied dependencies (deadlock): {[c.title for c in pending]}"
            )
            self._finish(pipeline_id, PipelineStatus.FAILED)
            return True
        return False

    def _finish(self, pipeline_id: str, status: PipelineStatus) -> None:
        with self._lock:
            if self._require(pipeline_id).status == PipelineStatus.CANCELLED:
                return
            self.store.update_pipeline(pipeline_id, status=status, completed_at=now_ms())

    def _emit_progress(self, pipeline_id: str, on_progress: Optional[ProgressCallback]) -> None:
        if on_progress is None:
            return
        progress = self.get_progress(pipeline_id)
        try:
            on_progress(progress)
        except Exception as e:
            logger.warning(f"Progress callback failed for pipeline {pipeline_id}: {e}")

    def _require(self, pipeline_id: str) -> Pipeline:
        pipeline = self.store.get_pipeline(pipeline_id)
        if pipeline is None:
            raise KeyError(f"Pipeline not found: {pipeline_id}")
        return pipeline


# ============================================================
# Progress derivation
# ============================================================


def _progress_fields(pipeline: Pipeline, chunks: list[Chunk]) -> dict[str, Any]:
    """Counter and status updates for a pipeline given its current chunks."""
    completed = sum(1 for c in chunks if c.status == ChunkStatus.COMPLETED)
    failed = sum(1 for c in chunks if c.status == ChunkStatus.FAILED)
    in_progress = next((c for c in chunks if c.status == ChunkStatus.IN_PROGRESS), None)

    fields: dict[str, Any] = {
        "completed_chunks": completed,
        "failed_chunks": failed,
        "current_chunk_id": in_progress.id if in_progress else None,
    }

    all_done = completed + failed == len(chunks)
    if pipeline.status == PipelineStatus.CANCELLED:
        pass
    elif all_done:
        fields["status"] = PipelineStatus.FAILED if failed else PipelineStatus.COMPLETED
        fields["completed_at"] = pipeline.completed_at or now_ms()
    elif pipeline.status not in _STICKY:
        fields["status"] = PipelineStatus.RUNNING
    return fields


# ============================================================
# Dependency resolution
# ============================================================


def _resolve_dependencies(chunks: list[ChunkCreateInput]) -> list[ChunkCreateInput]:
    """Assign chunk ids and rewrite key references in dependencies to ids."""
    ids: list[str] = []
    key_to_id: dict[str, str] = {}
    for chunk_input in chunks:
        chunk_id = chunk_input.id or new_chunk_id()
        ids.append(chunk_id)
        if chunk_input.key:
            if chunk_input.key in key_to_id:
                raise ValueError(f"Duplicate chunk key: {chunk_input.key!r}")
            key_to_id[chunk_input.key] = chunk_id

    return [
        chunk_input.model_copy(update={
            "id": chunk_id,
            "dependencies": [key_to_id.get(dep, dep) for dep in chunk_input.dependencies],
        })
        for chunk_input, chunk_id in zip(chunks, ids)
    ]


def _check_acyclic(chunks: list[ChunkCreateInput]) -> None:
    """Reject dependency cycles among the given chunks (Kahn's algorithm).

    Dependencies on ids outside this set are ignored here.
    """
    local_ids = {c.id for c in chunks}
    deps = {c.id: {d for d in c.dependencies if d in local_ids} for c in chunks}
    remaining = set(deps)

    while remaining:
        ready = {cid for cid in remaining if not (deps[cid] & remaining)}
        if not ready:
            titles = sorted(c.title for c in chunks if c.id in remaining)
            raise ValueError(f"Dependency cycle among chunks: {titles}")
        remaining -= ready
