"""Read-only monitoring queries over persisted execution state.

Nothing here writes. Every figure is derived on demand from the job row,
stage progress, results, stage errors, and the progress history log.

Overall progress is image-weighted: the sum of images processed over the
sum of images expected, across every stage that has started.
"""

import logging
from collections import Counter
from datetime import datetime, timedelta
from typing import Optional

from src.executor.errors import is_critical
from src.executor.schemas import (
    ErrorCount,
    ErrorSummary,
    ExecutionMetrics,
    Job,
    JobStatus,
    ProgressSnapshot,
    StageErrorCount,
    StageErrorsReport,
    StageMetrics,
    StageProgress,
    StageStatus,
    TimelineEvent,
    TimelineEventKind,
)
from src.executor.store import ResultStore

logger = logging.getLogger(__name__)

MOST_COMMON_ERRORS_LIMIT = 10


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value)
    except (ValueError, TypeError):
        return None


def overall_progress(job: Job, progress: list[StageProgress]) -> int:
    """Image-weighted progress percent across started stages."""
    total = sum(p.images_total for p in progress)
    if total == 0:
        return 100 if job.status == JobStatus.COMPLETED else 0
    processed = sum(p.images_processed for p in progress)
    return min(100, round(processed / total * 100))


class MetricsAggregator:
    """Monitoring query surface for one ResultStore."""

    def __init__(self, store: ResultStore):
        self.store = store

    def job_progress(self, job_id: str) -> list[StageProgress]:
        """Current progress of every stage that has started, by stage order."""
        return self.store.list_stage_progress(job_id)

    def execution_metrics(self, job_id: str) -> Optional[ExecutionMetrics]:
        """Per-stage and job-level metrics. None if the job does not exist."""
        job = self.store.get_job(job_id)
        if job is None:
            return None

        progress = self.store.list_stage_progress(job_id)
        results = self.store.list_results(job_id)
        errors = self.store.list_stage_errors(job_id)

        stage_names = {s.order: s.display_name for s in job.stages}
        stage_metrics = []
        for p in progress:
            stage_results = [r for r in results if r.stage_order == p.stage_order]
            successful = sum(1 for r in stage_results if r.success)
            durations = [r.duration_ms for r in stage_results]
            stage_metrics.append(StageMetrics(
                stage_order=p.stage_order,
                stage_name=stage_names.get(p.stage_order)
                or p.metadata.get("stage_name")
                or f"Stage {p.stage_order}",
                status=p.status,
                progress_percent=p.progress_percent,
                images_processed=p.images_processed,
                images_total=p.images_total,
                total_results=len(stage_results),
                successful_results=successful,
                success_rate=round(successful / len(stage_results) * 100, 2)
                if stage_results else 0.0,
                avg_image_time_ms=round(sum(durations) / len(durations), 2)
                if durations else 0.0,
                execution_time_ms=p.execution_time_ms,
                error_count=p.error_count,
            ))

        stage_times = [p.execution_time_ms for p in progress if p.execution_time_ms is not None]
        total_successful = sum(1 for r in results if r.success)

        created = _parse_ts(job.created_at)
        completed = _parse_ts(job.completed_at)
        total_time_ms = (
            int((completed - created).total_seconds() * 1000)
            if created and completed else 0
        )

        return ExecutionMetrics(
            job_id=job_id,
            total_stages=len(job.stages),
            completed_stages=sum(1 for p in progress if p.status == StageStatus.COMPLETED),
            failed_stages=sum(1 for p in progress if p.status == StageStatus.FAILED),
            overall_progress=overall_progress(job, progress),
            total_images_processed=sum(p.images_processed for p in progress),
            total_errors=len(errors),
            total_execution_time_ms=max(total_time_ms, 0),
            average_stage_time_ms=round(sum(stage_times) / len(stage_times), 2)
            if stage_times else 0.0,
            success_rate=round(total_successful / len(results) * 100, 2)
            if results else 0.0,
            stage_metrics=stage_metrics,
            error_summary=self._error_summary(errors),
        )

    def stage_errors(
        self,
        job_id: str,
        stage_order: Optional[int] = None,
        limit: Optional[int] = None,
    ) -> StageErrorsReport:
        """Errors for a job (newest first) with a count by error type."""
        errors = self.store.list_stage_errors(job_id, stage_order=stage_order, limit=limit)
        return StageErrorsReport(
            job_id=job_id,
            stage_order=stage_order,
            errors=errors,
            total=len(errors),
            counts_by_type=dict(Counter(e.error_type for e in errors)),
        )

    def progress_history(
        self,
        job_id: str,
        stage_order: Optional[int] = None,
        hours_back: float = 24,
    ) -> list[ProgressSnapshot]:
        """Progress snapshots from the last `hours_back` hours, oldest first."""
        since = datetime.utcnow() - timedelta(hours=hours_back)
        return self.store.list_progress_history(job_id, stage_order=stage_order, since=since)

    def timeline(self, job_id: str) -> Optional[list[TimelineEvent]]:
        """Chronological job events. None if the job does not exist."""
        job = self.store.get_job(job_id)
        if job is None:
            return None
        return build_timeline(
            job,
            self.store.list_results(job_id),
            self.store.list_stage_errors(job_id),
        )

    @staticmethod
    def _error_summary(errors) -> ErrorSummary:
        by_message = Counter(e.error_message for e in errors)
        by_stage = Counter(e.stage_order for e in errors)

        failed_images = []
        seen = set()
        for e in errors:
            if e.image_id and e.image_id not in seen:
                seen.add(e.image_id)
                failed_images.append(e.image_id)

        return ErrorSummary(
            most_common_errors=[
                ErrorCount(error=msg, count=count)
                for msg, count in by_message.most_common(MOST_COMMON_ERRORS_LIMIT)
            ],
            errors_by_stage=[
                StageErrorCount(stage_order=order, error_count=count)
                for order, count in sorted(by_stage.items())
            ],
            failed_images=failed_images,
        )


def build_timeline(job: Job, results, errors) -> list[TimelineEvent]:
    """Merge job timestamps, the latest result per stage, and critical errors."""
    events = [
        TimelineEvent(
            timestamp=job.started_at or job.created_at,
            event=TimelineEventKind.STARTED,
            details=f"Job started with {job.total_images} images",
        )
    ]

    stage_names = {s.stage_id: s.display_name for s in job.stages}
    latest: dict[str, str] = {}
    counts: Counter = Counter()
    for r in results:
        counts[r.stage_id] += 1
        if r.stage_id not in latest or r.executed_at > latest[r.stage_id]:
            latest[r.stage_id] = r.executed_at

    for stage_id, timestamp in latest.items():
        events.append(TimelineEvent(
            timestamp=timestamp,
            event=TimelineEventKind.STAGE_COMPLETED,
            stage=stage_names.get(stage_id, stage_id),
            details=f"Completed {counts[stage_id]} results",
        ))

    for e in errors:
        if is_critical(e.error_code):
            events.append(TimelineEvent(
                timestamp=e.occurred_at,
                event=TimelineEventKind.FAILED,
                details=f"Critical error: {e.error_message[:50]}",
            ))

    if job.completed_at:
        if job.status == JobStatus.COMPLETED:
            events.append(TimelineEvent(
                timestamp=job.completed_at,
                event=TimelineEventKind.COMPLETED,
                details="Job completed successfully",
            ))
        else:
            events.append(TimelineEvent(
                timestamp=job.completed_at,
                event=TimelineEventKind.FAILED,
                details=f"Job failed: {job.error_message or 'unknown error'}",
            ))

    events.sort(key=lambda ev: ev.timestamp)
    return events
