"""Fixed-size worker pool: one job per worker slot.

Jobs are handed to the pool already resolved (see job_manager.submit_job).
Each slot runs one JobExecutionEngine.run to a terminal state. A job id
that is queued or running is never accepted a second time.
"""

import logging
import os
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Callable, Optional

from src.executor.engine import JobExecutionEngine
from src.executor.job_manager import clear_cancellation, is_cancelled, track_job
from src.executor.schemas import Job

logger = logging.getLogger(__name__)

WORKER_POOL_SIZE = int(os.environ.get("WORKER_POOL_SIZE", "2"))


class JobWorkerPool:
    """Runs jobs on a bounded thread pool with a single-flight guard."""

    def __init__(
        self,
        engine_factory: Callable[[], JobExecutionEngine],
        size: Optional[int] = None,
    ):
        self.engine_factory = engine_factory
        self.size = max(1, size or WORKER_POOL_SIZE)
        self._executor = ThreadPoolExecutor(
            max_workers=self.size, thread_name_prefix="job-worker"
        )
        self._active_jobs: set[str] = set()
        self._active_jobs_lock = threading.Lock()

    def submit(self, job: Job) -> Optional[Future]:
        """Queue a job. Returns None if the job is already queued or running."""
        with self._active_jobs_lock:
            if job.job_id in self._active_jobs:
                logger.warning(
                    f"DUPLICATE EXECUTION BLOCKED: job {job.job_id} is already queued or running"
                )
                return None
            self._active_jobs.add(job.job_id)
        track_job(job.job_id)

        future = self._executor.submit(self._run, job)
        logger.info(f"Queued job {job.job_id} ({self.active_count()} active)")
        return future

    def _run(self, job: Job) -> None:
        try:
            engine = self.engine_factory()
            engine.run(job, cancellation_check=lambda: is_cancelled(job.job_id))
        except Exception as e:
            logger.error(f"Worker crashed running job {job.job_id}: {e}", exc_info=True)
        finally:
            clear_cancellation(job.job_id)
            with self._active_jobs_lock:
                self._active_jobs.discard(job.job_id)

    def is_active(self, job_id: str) -> bool:
        with self._active_jobs_lock:
            return job_id in self._active_jobs

    def active_count(self) -> int:
        with self._active_jobs_lock:
            return len(self._active_jobs)

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)
        logger.info("Job worker pool shut down")


_pool: Optional[JobWorkerPool] = None
_pool_lock = threading.Lock()


def _default_engine() -> JobExecutionEngine:
    from src.executor.job_manager import get_store
    from src.llm.factory import get_analysis_client

    return JobExecutionEngine(get_analysis_client(), get_store())


def get_worker_pool() -> JobWorkerPool:
    """Process-wide pool (lazy singleton)."""
    global _pool
    with _pool_lock:
        if _pool is None:
            _pool = JobWorkerPool(_default_engine)
            logger.info(f"Job worker pool started ({_pool.size} slots)")
        return _pool


def shutdown_worker_pool(wait: bool = True) -> None:
    global _pool
    with _pool_lock:
        pool, _pool = _pool, None
    if pool is not None:
        pool.shutdown(wait=wait)
