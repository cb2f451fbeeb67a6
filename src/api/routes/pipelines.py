"""Pipeline API routes: creation, lifecycle control, and progress polling.

Endpoints:
    POST /v1/pipelines                      Create a pipeline (explicit or decomposed chunks)
    GET  /v1/pipelines?project_id=...       List a project's pipelines
    GET  /v1/pipelines/{pipeline_id}        Poll progress
    GET  /v1/pipelines/{pipeline_id}/chunks List chunks in ready order
    POST /v1/pipelines/{pipeline_id}/start  Run on a background thread
    POST /v1/pipelines/{pipeline_id}/pause  Pause after the current round
    POST /v1/pipelines/{pipeline_id}/resume Resume and restart the run thread
    POST /v1/pipelines/{pipeline_id}/cancel Cancel; pending chunks are skipped
"""

import logging
from typing import Optional

from fastapi import APIRouter, HTTPException, Query

from src.pipeline.decomposition import decompose_prompt
from src.pipeline.scheduler import ChunkExecutor, PipelineScheduler
from src.pipeline.schemas import (
    Chunk,
    CreatePipelineRequest,
    Pipeline,
    PipelineProgress,
    PipelineStatus,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/pipelines", tags=["pipelines"])

_scheduler: Optional[PipelineScheduler] = None
_executor: Optional[ChunkExecutor] = None


def init_pipelines(scheduler: PipelineScheduler, executor: ChunkExecutor) -> None:
    global _scheduler, _executor
    _scheduler = scheduler
    _executor = executor


def _get_scheduler() -> PipelineScheduler:
    if _scheduler is None:
        raise HTTPException(status_code=503, detail="Pipeline scheduler not initialized")
    return _scheduler


def _get_executor() -> ChunkExecutor:
    if _executor is None:
        raise HTTPException(status_code=503, detail="Chunk executor not initialized")
    return _executor


def _progress_or_404(pipeline_id: str) -> PipelineProgress:
    progress = _get_scheduler().get_progress(pipeline_id)
    if progress is None:
        raise HTTPException(status_code=404, detail=f"Pipeline not found: {pipeline_id}")
    return progress


@router.post("", response_model=PipelineProgress, status_code=201)
async def create_pipeline(request: CreatePipelineRequest):
    """Create a pipeline.

    When no chunks are given, the prompt is decomposed into a chunk DAG
    with keyword rules.
    """
    scheduler = _get_scheduler()
    chunks = request.chunks or decompose_prompt(request.prompt, request.project_type).chunks

    try:
        pipeline_id = scheduler.create_pipeline(
            request.project_id,
            request.name,
            request.prompt,
            chunks,
            request.config,
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    return _progress_or_404(pipeline_id)


@router.get("", response_model=list[Pipeline])
async def list_pipelines(
    project_id: str = Query(..., description="Project whose pipelines to list"),
):
    return _get_scheduler().get_project_pipelines(project_id)


@router.get("/{pipeline_id}", response_model=PipelineProgress)
async def get_pipeline_progress(pipeline_id: str):
    """Poll a pipeline's progress."""
    return _progress_or_404(pipeline_id)


@router.get("/{pipeline_id}/chunks", response_model=list[Chunk])
async def list_pipeline_chunks(pipeline_id: str):
    _progress_or_404(pipeline_id)
    return _get_scheduler().get_pipeline_chunks(pipeline_id)


@router.post("/{pipeline_id}/start", response_model=PipelineProgress)
async def start_pipeline(pipeline_id: str):
    """Run the pipeline on a background thread. Poll GET /{pipeline_id} for progress."""
    progress = _progress_or_404(pipeline_id)
    if progress.status in (PipelineStatus.COMPLETED, PipelineStatus.CANCELLED):
        raise HTTPException(
            status_code=409,
            detail=f"Pipeline {pipeline_id} is {progress.status.value}",
        )

    _get_scheduler().start_pipeline_thread(pipeline_id, _get_executor())
    return _progress_or_404(pipeline_id)


@router.post("/{pipeline_id}/pause", response_model=PipelineProgress)
async def pause_pipeline(pipeline_id: str):
    progress = _progress_or_404(pipeline_id)
    if not _get_scheduler().pause_pipeline(pipeline_id):
        raise HTTPException(
            status_code=409,
            detail=f"Cannot pause pipeline in status {progress.status.value}",
        )
    return _progress_or_404(pipeline_id)


@router.post("/{pipeline_id}/resume", response_model=PipelineProgress)
async def resume_pipeline(pipeline_id: str):
    """Resume a paused or failed pipeline and restart its run thread."""
    progress = _progress_or_404(pipeline_id)
    scheduler = _get_scheduler()
    if not scheduler.resume_pipeline(pipeline_id):
        raise HTTPException(
            status_code=409,
            detail=f"Cannot resume pipeline in status {progress.status.value}",
        )

    scheduler.start_pipeline_thread(pipeline_id, _get_executor())
    return _progress_or_404(pipeline_id)


@router.post("/{pipeline_id}/cancel", response_model=PipelineProgress)
async def cancel_pipeline(pipeline_id: str):
    """Cancel a pipeline. In-flight chunks finish; pending chunks are skipped."""
    progress = _progress_or_404(pipeline_id)
    if not _get_scheduler().cancel_pipeline(pipeline_id):
        raise HTTPException(
            status_code=409,
            detail=f"Cannot cancel pipeline in status {progress.status.value}",
        )
    logger.info(f"Cancellation requested via API for pipeline {pipeline_id}")
    return _progress_or_404(pipeline_id)
