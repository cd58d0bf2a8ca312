"""Result store: persistence contract for jobs, results, and progress.

The engine only ever talks to a ResultStore. SqlResultStore is the
production implementation over the raw-SQL layer in db.py.

Write semantics:
- append_result is idempotent per (job_id, stage_id, image_id); the first
  write wins and is never mutated.
- upsert_stage_progress is keyed by (job_id, stage_order) and never lets
  images_processed move backwards, so a retried stale write is harmless.
  Every upsert also appends a row to the progress history log.
- set_job_status never leaves a terminal state.
- increment_processed_count is an atomic in-database increment.
"""

import logging
from datetime import datetime, timedelta
from typing import Optional, Protocol, runtime_checkable

from src.executor import db
from src.executor.db import _json_dumps, _json_loads, execute
from src.executor.schemas import (
    ImageRef,
    Job,
    JobStatus,
    ProcessingResult,
    ProgressSnapshot,
    ResultsSummary,
    Stage,
    StageError,
    StageProgress,
    StageStatus,
)

logger = logging.getLogger(__name__)


@runtime_checkable
class ResultStore(Protocol):
    """Persistence capability consumed by the engine and the metrics layer."""

    def create_or_update_job(self, job: Job) -> None: ...

    def get_job(self, job_id: str) -> Optional[Job]: ...

    def list_jobs(self, status: Optional[str] = None, limit: int = 20) -> list[Job]: ...

    def set_job_status(
        self,
        job_id: str,
        status: JobStatus,
        error_message: Optional[str] = None,
    ) -> bool: ...

    def append_result(self, result: ProcessingResult) -> bool: ...

    def upsert_stage_progress(self, progress: StageProgress) -> None: ...

    def increment_processed_count(self, job_id: str, n: int) -> None: ...

    def save_results_summary(self, job_id: str, summary: ResultsSummary) -> None: ...

    def record_stage_error(self, error: StageError) -> None: ...

    def list_results(
        self, job_id: str, stage_order: Optional[int] = None
    ) -> list[ProcessingResult]: ...

    def list_stage_progress(self, job_id: str) -> list[StageProgress]: ...

    def list_stage_errors(
        self,
        job_id: str,
        stage_order: Optional[int] = None,
        limit: Optional[int] = None,
    ) -> list[StageError]: ...

    def list_progress_history(
        self,
        job_id: str,
        stage_order: Optional[int] = None,
        since: Optional[datetime] = None,
    ) -> list[ProgressSnapshot]: ...

    def stale_jobs(self, older_than: timedelta) -> list[Job]: ...


def _iso(value) -> Optional[str]:
    """Normalize timestamps (Postgres returns datetimes, SQLite returns strings)."""
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.isoformat()
    return str(value)


def _now() -> str:
    return datetime.utcnow().isoformat()


class SqlResultStore:
    """ResultStore over SQLite or PostgreSQL (see db.py)."""

    def __init__(self):
        db.init_db()

    # --- Jobs ---

    def create_or_update_job(self, job: Job) -> None:
        now = _now()
        execute(
            """INSERT INTO pipeline_jobs
               (job_id, pipeline_id, status, stages, image_refs, total_images,
                processed_images, error_message, created_at, updated_at)
               VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
               ON CONFLICT (job_id) DO UPDATE SET
                   pipeline_id = excluded.pipeline_id,
                   stages = excluded.stages,
                   image_refs = excluded.image_refs,
                   total_images = excluded.total_images,
                   updated_at = excluded.updated_at""",
            (
                job.job_id,
                job.pipeline_id,
                job.status.value,
                _json_dumps([s.model_dump() for s in job.stages]),
                _json_dumps([i.model_dump() for i in job.images]),
                job.total_images,
                job.processed_images,
                job.error_message,
                job.created_at,
                now,
            ),
        )
        logger.info(
            f"Stored job {job.job_id}: pipeline={job.pipeline_id or 'N/A'}, "
            f"{len(job.stages)} stages, {job.total_images} images"
        )

    def get_job(self, job_id: str) -> Optional[Job]:
        row = execute(
            "SELECT * FROM pipeline_jobs WHERE job_id = %s",
            (job_id,),
            fetch="one",
        )
        return self._row_to_job(row) if row else None

    def list_jobs(self, status: Optional[str] = None, limit: int = 20) -> list[Job]:
        if status:
            rows = execute(
                """SELECT * FROM pipeline_jobs WHERE status = %s
                   ORDER BY created_at DESC LIMIT %s""",
                (status, limit),
                fetch="all",
            )
        else:
            rows = execute(
                "SELECT * FROM pipeline_jobs ORDER BY created_at DESC LIMIT %s",
                (limit,),
                fetch="all",
            )
        return [self._row_to_job(row) for row in rows]

    def set_job_status(
        self,
        job_id: str,
        status: JobStatus,
        error_message: Optional[str] = None,
    ) -> bool:
        """Move a job forward. Returns False if the job is already terminal."""
        now = _now()
        terminal = (JobStatus.COMPLETED.value, JobStatus.FAILED.value)

        if status == JobStatus.PROCESSING:
            updated = execute(
                """UPDATE pipeline_jobs
                   SET status = %s, started_at = %s, updated_at = %s
                   WHERE job_id = %s AND status NOT IN (%s, %s)""",
                (status.value, now, now, job_id, *terminal),
                fetch="rowcount",
            )
        elif status in (JobStatus.COMPLETED, JobStatus.FAILED):
            updated = execute(
                """UPDATE pipeline_jobs
                   SET status = %s, completed_at = %s, error_message = %s,
                       updated_at = %s
                   WHERE job_id = %s AND status NOT IN (%s, %s)""",
                (status.value, now, error_message, now, job_id, *terminal),
                fetch="rowcount",
            )
        else:
            updated = execute(
                """UPDATE pipeline_jobs SET status = %s, updated_at = %s
                   WHERE job_id = %s AND status = %s""",
                (status.value, now, job_id, JobStatus.PENDING.value),
                fetch="rowcount",
            )

        if not updated:
            logger.warning(f"Job {job_id}: status change to {status.value} ignored")
            return False

        logger.info(
            f"Job {job_id} status → {status.value}"
            + (f" (error: {error_message})" if error_message else "")
        )
        return True

    def increment_processed_count(self, job_id: str, n: int) -> None:
        execute(
            """UPDATE pipeline_jobs
               SET processed_images = processed_images + %s, updated_at = %s
               WHERE job_id = %s""",
            (n, _now(), job_id),
        )

    def save_results_summary(self, job_id: str, summary: ResultsSummary) -> None:
        execute(
            """UPDATE pipeline_jobs SET results_summary = %s, updated_at = %s
               WHERE job_id = %s""",
            (_json_dumps(summary.model_dump()), _now(), job_id),
        )

    def stale_jobs(self, older_than: timedelta) -> list[Job]:
        """Jobs still pending/processing with no write for `older_than`.

        Hook for an external reaper; nothing here re-runs or fails them.
        """
        cutoff = (datetime.utcnow() - older_than).isoformat()
        rows = execute(
            """SELECT * FROM pipeline_jobs
               WHERE status IN (%s, %s)
                 AND COALESCE(updated_at, created_at) < %s
               ORDER BY created_at""",
            (JobStatus.PENDING.value, JobStatus.PROCESSING.value, cutoff),
            fetch="all",
        )
        return [self._row_to_job(row) for row in rows]

    # --- Results ---

    def append_result(self, result: ProcessingResult) -> bool:
        """Insert a result. Returns False if one already exists for the key."""
        inserted = execute(
            """INSERT INTO processing_results
               (job_id, stage_id, stage_order, image_id, response, success,
                error, metadata, duration_ms, executed_at)
               VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
               ON CONFLICT (job_id, stage_id, image_id) DO NOTHING""",
            (
                result.job_id,
                result.stage_id,
                result.stage_order,
                result.image_id,
                result.response,
                result.success,
                result.error,
                _json_dumps(result.metadata),
                result.duration_ms,
                result.executed_at,
            ),
            fetch="rowcount",
        )
        if not inserted:
            logger.info(
                f"Job {result.job_id}: result for image {result.image_id} "
                f"in stage {result.stage_order} already recorded"
            )
        return bool(inserted)

    def list_results(
        self, job_id: str, stage_order: Optional[int] = None
    ) -> list[ProcessingResult]:
        if stage_order is not None:
            rows = execute(
                """SELECT * FROM processing_results
                   WHERE job_id = %s AND stage_order = %s
                   ORDER BY executed_at, id""",
                (job_id, stage_order),
                fetch="all",
            )
        else:
            rows = execute(
                """SELECT * FROM processing_results WHERE job_id = %s
                   ORDER BY stage_order, executed_at, id""",
                (job_id,),
                fetch="all",
            )
        return [
            ProcessingResult(
                job_id=row["job_id"],
                stage_id=row["stage_id"],
                stage_order=row["stage_order"],
                image_id=row["image_id"],
                response=row.get("response") or "",
                success=bool(row["success"]),
                error=row.get("error"),
                metadata=_json_loads(row.get("metadata")),
                duration_ms=row.get("duration_ms") or 0,
                executed_at=_iso(row.get("executed_at")) or "",
            )
            for row in rows
        ]

    # --- Stage progress ---

    def upsert_stage_progress(self, progress: StageProgress) -> None:
        greatest = "GREATEST" if db._is_postgres() else "MAX"
        progress.updated_at = _now()
        execute(
            f"""INSERT INTO stage_progress
               (job_id, stage_id, stage_order, status, images_total,
                images_processed, progress_percent, error_count, last_error,
                failed_images, execution_time_ms, metadata, started_at,
                completed_at, updated_at)
               VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
               ON CONFLICT (job_id, stage_order) DO UPDATE SET
                   stage_id = excluded.stage_id,
                   status = excluded.status,
                   images_total = excluded.images_total,
                   images_processed = {greatest}(
                       stage_progress.images_processed, excluded.images_processed),
                   progress_percent = {greatest}(
                       stage_progress.progress_percent, excluded.progress_percent),
                   error_count = {greatest}(
                       stage_progress.error_count, excluded.error_count),
                   last_error = excluded.last_error,
                   failed_images = excluded.failed_images,
                   execution_time_ms = excluded.execution_time_ms,
                   metadata = excluded.metadata,
                   started_at = COALESCE(stage_progress.started_at, excluded.started_at),
                   completed_at = excluded.completed_at,
                   updated_at = excluded.updated_at""",
            (
                progress.job_id,
                progress.stage_id,
                progress.stage_order,
                progress.status.value,
                progress.images_total,
                progress.images_processed,
                progress.progress_percent,
                progress.error_count,
                progress.last_error,
                _json_dumps(progress.failed_images),
                progress.execution_time_ms,
                _json_dumps(progress.metadata),
                progress.started_at,
                progress.completed_at,
                progress.updated_at,
            ),
        )
        execute(
            """INSERT INTO stage_progress_history
               (job_id, stage_order, status, images_processed, progress_percent,
                error_count, execution_time_ms, last_error, timestamp)
               VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)""",
            (
                progress.job_id,
                progress.stage_order,
                progress.status.value,
                progress.images_processed,
                progress.progress_percent,
                progress.error_count,
                progress.execution_time_ms,
                progress.last_error,
                progress.updated_at,
            ),
        )

    def list_stage_progress(self, job_id: str) -> list[StageProgress]:
        rows = execute(
            "SELECT * FROM stage_progress WHERE job_id = %s ORDER BY stage_order",
            (job_id,),
            fetch="all",
        )
        return [
            StageProgress(
                job_id=row["job_id"],
                stage_id=row["stage_id"],
                stage_order=row["stage_order"],
                status=StageStatus(row["status"]),
                images_total=row.get("images_total") or 0,
                images_processed=row.get("images_processed") or 0,
                progress_percent=row.get("progress_percent") or 0,
                error_count=row.get("error_count") or 0,
                last_error=row.get("last_error"),
                failed_images=_json_loads(row.get("failed_images"), default=[]),
                execution_time_ms=row.get("execution_time_ms"),
                metadata=_json_loads(row.get("metadata")),
                started_at=_iso(row.get("started_at")),
                completed_at=_iso(row.get("completed_at")),
                updated_at=_iso(row.get("updated_at")) or "",
            )
            for row in rows
        ]

    def list_progress_history(
        self,
        job_id: str,
        stage_order: Optional[int] = None,
        since: Optional[datetime] = None,
    ) -> list[ProgressSnapshot]:
        conditions = ["job_id = %s"]
        params: list = [job_id]
        if stage_order is not None:
            conditions.append("stage_order = %s")
            params.append(stage_order)
        if since is not None:
            conditions.append("timestamp >= %s")
            params.append(since.isoformat())

        where = " AND ".join(conditions)
        rows = execute(
            f"SELECT * FROM stage_progress_history WHERE {where} ORDER BY timestamp, id",
            tuple(params),
            fetch="all",
        )
        return [
            ProgressSnapshot(
                job_id=row["job_id"],
                stage_order=row["stage_order"],
                status=StageStatus(row["status"]),
                images_processed=row.get("images_processed") or 0,
                progress_percent=row.get("progress_percent") or 0,
                error_count=row.get("error_count") or 0,
                execution_time_ms=row.get("execution_time_ms"),
                last_error=row.get("last_error"),
                timestamp=_iso(row.get("timestamp")) or "",
            )
            for row in rows
        ]

    # --- Errors ---

    def record_stage_error(self, error: StageError) -> None:
        execute(
            """INSERT INTO stage_errors
               (job_id, stage_order, image_id, error_message, error_type,
                error_code, prompt_id, execution_time_ms, metadata, occurred_at)
               VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)""",
            (
                error.job_id,
                error.stage_order,
                error.image_id,
                error.error_message,
                error.error_type,
                error.error_code,
                error.prompt_id,
                error.execution_time_ms,
                _json_dumps(error.metadata),
                error.occurred_at,
            ),
        )

    def list_stage_errors(
        self,
        job_id: str,
        stage_order: Optional[int] = None,
        limit: Optional[int] = None,
    ) -> list[StageError]:
        """Errors for a job, newest first."""
        conditions = ["job_id = %s"]
        params: list = [job_id]
        if stage_order is not None:
            conditions.append("stage_order = %s")
            params.append(stage_order)

        sql = (
            f"SELECT * FROM stage_errors WHERE {' AND '.join(conditions)} "
            f"ORDER BY occurred_at DESC, id DESC"
        )
        if limit is not None:
            sql += " LIMIT %s"
            params.append(limit)

        rows = execute(sql, tuple(params), fetch="all")
        return [
            StageError(
                job_id=row["job_id"],
                stage_order=row["stage_order"],
                image_id=row.get("image_id"),
                error_message=row["error_message"],
                error_type=row.get("error_type") or "unknown",
                error_code=row.get("error_code") or "UNKNOWN_ERROR",
                prompt_id=row.get("prompt_id"),
                execution_time_ms=row.get("execution_time_ms"),
                metadata=_json_loads(row.get("metadata")),
                occurred_at=_iso(row.get("occurred_at")) or "",
            )
            for row in rows
        ]

    # --- Helpers ---

    @staticmethod
    def _row_to_job(row: dict) -> Job:
        summary = row.get("results_summary")
        summary = _json_loads(summary) if summary else None
        return Job(
            job_id=row["job_id"],
            pipeline_id=row.get("pipeline_id") or "",
            stages=[Stage(**s) for s in _json_loads(row.get("stages"), default=[])],
            images=[ImageRef(**i) for i in _json_loads(row.get("image_refs"), default=[])],
            status=JobStatus(row["status"]),
            processed_images=row.get("processed_images") or 0,
            error_message=row.get("error_message"),
            results_summary=ResultsSummary(**summary) if summary else None,
            created_at=_iso(row.get("created_at")) or "",
            started_at=_iso(row.get("started_at")),
            completed_at=_iso(row.get("completed_at")),
            updated_at=_iso(row.get("updated_at")),
        )
