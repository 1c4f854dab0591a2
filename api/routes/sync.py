"""
Sync monitoring and control endpoints
"""

from datetime import date
from fastapi import APIRouter, Depends, Query, Request
from api.dependencies import get_pipeline, require_api_key
from api.middleware import new_request_id
from schemas.api import ProgressResponse, StopResponse, SyncRunSummary, SyncStatusResponse
from ingestion.pipeline import SyncPipeline
import logging

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/sync", tags=["Sync"])


def _request_id(request: Request) -> str:
    return getattr(request.state, "request_id", None) or new_request_id()


@router.get("/progress", response_model=ProgressResponse)
async def get_progress(pipeline: SyncPipeline = Depends(get_pipeline)):
    """Current value of the progress channel; idle when nothing is published"""
    snapshot = await pipeline.progress.read()
    return ProgressResponse(active=snapshot is not None, progress=snapshot)


@router.get("/status", response_model=SyncStatusResponse)
async def get_status(
    request: Request,
    limit: int = Query(10, ge=1, le=100, description="Number of recent runs to return"),
    pipeline: SyncPipeline = Depends(get_pipeline)
):
    """
    Sync state in one view.

    Returns:
    - Lock holder and whether an invocation is running
    - Stage 3 checkpoint (cursor and counters), if a run is in progress
    - Preview of the manifest the run works from
    - Last completed run and recent invocation history
    """
    logger.info(f"[{_request_id(request)}] GET /sync/status")

    state = await pipeline.status()
    checkpoint = state["checkpoint"]

    manifest_day = date.fromisoformat(checkpoint.manifest_date) if checkpoint and checkpoint.manifest_date else None
    manifest = pipeline.manifests.preview(day=manifest_day)

    recent_runs = []
    if pipeline.history is not None:
        runs = await pipeline.history.recent_runs(limit)
        recent_runs = [SyncRunSummary.from_orm(run) for run in runs]

    return SyncStatusResponse(
        job_active=state["job_active"],
        lock_holder=state["lock_holder"],
        stop_requested=state["stop_requested"],
        checkpoint=checkpoint,
        manifest=manifest,
        last_run=state["last_run"],
        recent_runs=recent_runs
    )


@router.post("/stop", response_model=StopResponse, dependencies=[Depends(require_api_key)])
async def request_stop(request: Request, pipeline: SyncPipeline = Depends(get_pipeline)):
    """
    Ask the running sync to stop.

    The running invocation sees the flag before its next batch, saves its
    checkpoint and pauses.
    """
    request_id = _request_id(request)
    logger.info(f"[{request_id}] POST /sync/stop")

    holder = await pipeline.lock.holder()
    await pipeline.request_stop(requested_by=request_id)

    message = "Stop requested" if holder else "Stop requested; no sync is currently running"
    return StopResponse(
        stop_requested=True,
        message=message,
        details={"session_id": holder}
    )
