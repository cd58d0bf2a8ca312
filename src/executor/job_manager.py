"""Job lifecycle management for the executor.

Handles:
- Job submission (resolved snapshot → pending job row)
- Job status queries and listing (for API polling)
- Cancellation (flag-based, checked between images and between stages)
- Stale-job lookup (hook for an external reaper)

Job state lives in the database. Cancellation flags are tracked in-memory
(per process) since they are checked once per image.
"""

import logging
import threading
from datetime import timedelta
from typing import Optional

from src.executor.errors import PipelineConfigurationError
from src.executor.schemas import Job, JobStatus, JobStatusResponse, JobSubmission
from src.executor.store import ResultStore, SqlResultStore

logger = logging.getLogger(__name__)

# In-memory cancellation flags for jobs running in this process (per job_id)
_cancellation_flags: dict[str, bool] = {}
_flags_lock = threading.Lock()


def get_store() -> ResultStore:
    """Default store (SQLite or PostgreSQL, see db.py)."""
    return SqlResultStore()


def submit_job(submission: JobSubmission, store: Optional[ResultStore] = None) -> Job:
    """Persist a resolved submission as a pending job.

    Raises:
        PipelineConfigurationError: the job id already exists.
    """
    store = store or get_store()
    job = Job(
        pipeline_id=submission.pipeline_id,
        stages=submission.stages,
        images=submission.images,
    )
    if submission.job_id:
        job.job_id = submission.job_id
        if store.get_job(job.job_id) is not None:
            raise PipelineConfigurationError(f"Job {job.job_id} already exists")

    store.create_or_update_job(job)
    logger.info(
        f"Created job {job.job_id} for pipeline {job.pipeline_id or 'N/A'} "
        f"({len(job.stages)} stages, {job.total_images} images)"
    )
    return job


def get_job(job_id: str, store: Optional[ResultStore] = None) -> Optional[Job]:
    return (store or get_store()).get_job(job_id)


def list_jobs(
    status: Optional[str] = None,
    limit: int = 20,
    store: Optional[ResultStore] = None,
) -> list[Job]:
    """List jobs, newest first, optionally filtered by status."""
    return (store or get_store()).list_jobs(status=status, limit=limit)


def to_status_response(job: Job) -> JobStatusResponse:
    return JobStatusResponse(
        job_id=job.job_id,
        pipeline_id=job.pipeline_id,
        status=job.status,
        total_images=job.total_images,
        processed_images=job.processed_images,
        total_stages=len(job.stages),
        error_message=job.error_message,
        results_summary=job.results_summary,
        created_at=job.created_at,
        started_at=job.started_at,
        completed_at=job.completed_at,
    )


# --- Cancellation ---

def track_job(job_id: str) -> None:
    """Register a job as running in this process so it can be cancelled."""
    with _flags_lock:
        _cancellation_flags.setdefault(job_id, False)


def request_cancellation(job_id: str, store: Optional[ResultStore] = None) -> bool:
    """Request cancellation of a pending or processing job.

    A pending job is failed immediately. A processing job gets the
    in-memory flag and stops at its next image or stage boundary; only
    jobs tracked by a worker in this process can be flagged.

    Returns True if the job was active and is now being cancelled.
    """
    store = store or get_store()
    job = store.get_job(job_id)
    if job is None:
        return False

    if job.status not in (JobStatus.PENDING, JobStatus.PROCESSING):
        logger.warning(f"Cannot cancel job {job_id}: status is {job.status.value}")
        return False

    with _flags_lock:
        tracked = job_id in _cancellation_flags
        if tracked:
            _cancellation_flags[job_id] = True

    if job.status == JobStatus.PENDING:
        store.set_job_status(job_id, JobStatus.FAILED, error_message="Job cancelled")
    elif not tracked:
        logger.warning(f"Cannot cancel job {job_id}: not running in this process")
        return False

    logger.info(f"Cancellation requested for job {job_id}")
    return True


def is_cancelled(job_id: str) -> bool:
    """Check if a job has been cancelled (fast path, checked once per image)."""
    with _flags_lock:
        return bool(_cancellation_flags.get(job_id))


def clear_cancellation(job_id: str) -> None:
    """Forget a job once its worker is done with it."""
    with _flags_lock:
        _cancellation_flags.pop(job_id, None)


# --- Stale jobs ---

def find_stale_jobs(
    older_than_minutes: float = 60,
    store: Optional[ResultStore] = None,
) -> list[Job]:
    """Pending/processing jobs with no write for `older_than_minutes`.

    Read-only: deciding whether to re-run or fail them is left to the caller.
    """
    stale = (store or get_store()).stale_jobs(timedelta(minutes=older_than_minutes))
    if stale:
        logger.warning(
            f"Found {len(stale)} stale job(s) older than {older_than_minutes} min: "
            f"{', '.join(j.job_id for j in stale)}"
        )
    return stale
