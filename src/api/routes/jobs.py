"""Job API routes: submission, cancellation, and monitoring queries.

Endpoints:
    POST /v1/jobs                                 Submit a resolved pipeline run
    GET  /v1/jobs                                 List jobs
    GET  /v1/jobs/stale                           Jobs with no recent writes
    GET  /v1/jobs/{job_id}                        Poll job status
    POST /v1/jobs/{job_id}/cancel                 Cancel a pending/processing job
    GET  /v1/jobs/{job_id}/progress               Per-stage progress
    GET  /v1/jobs/{job_id}/metrics                Execution metrics
    GET  /v1/jobs/{job_id}/errors                 Stage errors with type counts
    GET  /v1/jobs/{job_id}/progress-history       Progress snapshots for charting
    GET  /v1/jobs/{job_id}/timeline               Chronological job events
    GET  /v1/jobs/{job_id}/results                Per-image results
"""

import logging
from typing import Optional

from fastapi import APIRouter, HTTPException, Query

from src.executor.errors import PipelineConfigurationError
from src.executor.job_manager import (
    find_stale_jobs,
    get_job,
    get_store,
    list_jobs,
    request_cancellation,
    submit_job,
    to_status_response,
)
from src.executor.metrics import MetricsAggregator, overall_progress
from src.executor.schemas import JobStatus, JobSubmission
from src.executor.worker import get_worker_pool

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/jobs", tags=["jobs"])


def _require_job(job_id: str):
    job = get_job(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail=f"Job not found: {job_id}")
    return job


@router.post("")
async def start_job(submission: JobSubmission):
    """Create a job and queue it on the worker pool.

    Returns the job ID for polling.
    """
    try:
        job = submit_job(submission)
    except PipelineConfigurationError as e:
        raise HTTPException(status_code=400, detail=str(e))

    get_worker_pool().submit(job)
    logger.info(f"Started job {job.job_id} for pipeline {job.pipeline_id or 'N/A'}")

    return {
        "job_id": job.job_id,
        "pipeline_id": job.pipeline_id,
        "status": JobStatus.PENDING.value,
        "message": "Execution queued. Poll GET /v1/jobs/{job_id} for progress.",
    }


@router.get("")
async def list_all_jobs(status: Optional[JobStatus] = None, limit: int = Query(20, ge=1, le=200)):
    """List jobs, newest first."""
    jobs = list_jobs(status=status.value if status else None, limit=limit)
    return {"jobs": [to_status_response(j) for j in jobs], "count": len(jobs)}


@router.get("/stale")
async def list_stale_jobs(older_than_minutes: float = Query(60, gt=0)):
    """Pending/processing jobs with no write in the given window."""
    jobs = find_stale_jobs(older_than_minutes)
    return {"jobs": [to_status_response(j) for j in jobs], "count": len(jobs)}


@router.get("/{job_id}")
async def get_job_status(job_id: str):
    """Job status. This is the primary polling endpoint."""
    return to_status_response(_require_job(job_id))


@router.post("/{job_id}/cancel")
async def cancel_job(job_id: str):
    """Cancel a pending or processing job."""
    job = _require_job(job_id)
    if not request_cancellation(job_id):
        raise HTTPException(
            status_code=400,
            detail=f"Cannot cancel job {job_id} (status: {job.status.value})",
        )
    return {"job_id": job_id, "message": "Cancellation requested"}


@router.get("/{job_id}/progress")
async def get_job_progress(job_id: str):
    job = _require_job(job_id)
    stages = MetricsAggregator(get_store()).job_progress(job_id)
    return {
        "job_id": job_id,
        "status": job.status,
        "overall_progress": overall_progress(job, stages),
        "stages": stages,
    }


@router.get("/{job_id}/metrics")
async def get_job_metrics(job_id: str):
    metrics = MetricsAggregator(get_store()).execution_metrics(job_id)
    if metrics is None:
        raise HTTPException(status_code=404, detail=f"Job not found: {job_id}")
    return metrics


@router.get("/{job_id}/errors")
async def get_job_errors(
    job_id: str,
    stage_order: Optional[int] = None,
    limit: Optional[int] = Query(None, ge=1, le=1000),
):
    _require_job(job_id)
    return MetricsAggregator(get_store()).stage_errors(job_id, stage_order=stage_order, limit=limit)


@router.get("/{job_id}/progress-history")
async def get_job_progress_history(
    job_id: str,
    stage_order: Optional[int] = None,
    hours_back: float = Query(24, gt=0),
):
    _require_job(job_id)
    history = MetricsAggregator(get_store()).progress_history(
        job_id, stage_order=stage_order, hours_back=hours_back
    )
    return {"job_id": job_id, "history": history, "count": len(history)}


@router.get("/{job_id}/timeline")
async def get_job_timeline(job_id: str):
    events = MetricsAggregator(get_store()).timeline(job_id)
    if events is None:
        raise HTTPException(status_code=404, detail=f"Job not found: {job_id}")
    return {"job_id": job_id, "events": events}


@router.get("/{job_id}/results")
async def get_job_results(job_id: str, stage_order: Optional[int] = None):
    job = _require_job(job_id)
    results = get_store().list_results(job_id, stage_order=stage_order)
    return {
        "job_id": job_id,
        "status": job.status,
        "results_summary": job.results_summary,
        "results": results,
        "count": len(results),
    }
