"""Tests for the monitoring queries."""

from datetime import datetime, timedelta

from src.executor.engine import JobExecutionEngine
from src.executor.metrics import MetricsAggregator, build_timeline, overall_progress
from src.executor.schemas import (
    JobStatus,
    ProcessingResult,
    PromptKind,
    StageError,
    StageProgress,
    StageStatus,
    TimelineEventKind,
)
from src.executor.stage_runner import StageRunner
from src.llm.backends import AnalysisResult


def _run(store, job, client):
    JobExecutionEngine(client, store, StageRunner(client, store, max_concurrency=1)).run(job)
    return MetricsAggregator(store)


def _mixed_handler(image, text, kind):
    if image.image_id == "img-2":
        return AnalysisResult(success=False, error="Error code: 429 rate limit exceeded")
    if image.image_id == "img-3":
        return AnalysisResult(success=False, error="Request timed out.")
    if kind == PromptKind.BOOLEAN:
        return AnalysisResult(success=True, response="true")
    return AnalysisResult(success=True, response="text")


def test_execution_metrics_per_stage(store, make_job, make_stage, fake_client_cls):
    stages = [
        make_stage(1, kind=PromptKind.BOOLEAN, filter_rule="true_only"),
        make_stage(2, text="details"),
    ]
    job = make_job(n_images=4, stages=stages)
    metrics = _run(store, job, fake_client_cls(_mixed_handler)).execution_metrics(job.job_id)

    assert metrics.total_stages == 2
    assert metrics.completed_stages == 2
    assert metrics.failed_stages == 0
    assert metrics.overall_progress == 100
    assert metrics.total_images_processed == 6
    assert metrics.total_errors == 2
    assert metrics.total_execution_time_ms >= 0

    first, second = metrics.stage_metrics
    assert first.stage_name == "Prompt 1"
    assert first.total_results == 4
    assert first.successful_results == 2
    assert first.success_rate == 50.0
    assert first.error_count == 2
    assert second.images_total == 2
    assert second.success_rate == 100.0

    assert metrics.success_rate == round(4 / 6 * 100, 2)
    assert sorted(metrics.error_summary.failed_images) == ["img-2", "img-3"]
    assert [e.stage_order for e in metrics.error_summary.errors_by_stage] == [1]
    assert {e.count for e in metrics.error_summary.most_common_errors} == {1}


def test_execution_metrics_unknown_job(store):
    assert MetricsAggregator(store).execution_metrics("job-missing") is None
    assert MetricsAggregator(store).timeline("job-missing") is None


def test_stage_errors_report_counts_by_type(store, make_job, fake_client_cls):
    job = make_job(n_images=4)
    aggregator = _run(store, job, fake_client_cls(_mixed_handler))

    report = aggregator.stage_errors(job.job_id)
    assert report.total == 2
    assert report.counts_by_type == {"rate_limit": 1, "timeout": 1}
    codes = {e.error_code for e in report.errors}
    assert codes == {"RATE_LIMIT_EXCEEDED", "API_TIMEOUT"}

    assert aggregator.stage_errors(job.job_id, limit=1).total == 1
    assert aggregator.stage_errors(job.job_id, stage_order=2).total == 0


def test_job_progress_and_history(store, make_job, fake_client_cls):
    job = make_job(n_images=3)
    aggregator = _run(store, job, fake_client_cls())

    progress = aggregator.job_progress(job.job_id)
    assert [p.images_processed for p in progress] == [3]

    history = aggregator.progress_history(job.job_id)
    assert [h.images_processed for h in history] == [0, 1, 2, 3, 3]
    assert history[-1].status == StageStatus.COMPLETED
    assert aggregator.progress_history(job.job_id, stage_order=2) == []


def test_overall_progress_is_image_weighted(make_job):
    job = make_job()
    progress = [
        StageProgress(job_id=job.job_id, stage_id="s1", stage_order=1, images_total=8, images_processed=8),
        StageProgress(job_id=job.job_id, stage_id="s2", stage_order=2, images_total=2, images_processed=0),
    ]
    assert overall_progress(job, progress) == 80
    assert overall_progress(job, []) == 0
    assert overall_progress(job.model_copy(update={"status": JobStatus.COMPLETED}), []) == 100


def test_timeline_for_completed_job(store, make_job, make_stage, fake_client_cls):
    job = make_job(n_images=2, stages=[make_stage(1), make_stage(2, text="more")])
    aggregator = _run(store, job, fake_client_cls())

    events = aggregator.timeline(job.job_id)
    kinds = [e.event for e in events]
    assert kinds[0] == TimelineEventKind.STARTED
    assert kinds[-1] == TimelineEventKind.COMPLETED
    assert kinds.count(TimelineEventKind.STAGE_COMPLETED) == 2
    assert {e.stage for e in events if e.stage} == {"Prompt 1", "Prompt 2"}
    assert [e.timestamp for e in events] == sorted(e.timestamp for e in events)


def test_timeline_includes_critical_errors_only(make_job, make_stage):
    base = datetime(2026, 3, 1, 12, 0, 0)
    job = make_job(stages=[make_stage(1)]).model_copy(update={
        "status": JobStatus.FAILED,
        "created_at": base.isoformat(),
        "started_at": base.isoformat(),
        "completed_at": (base + timedelta(seconds=30)).isoformat(),
        "error_message": "Stage 1 has no prompt configured",
    })
    results = [
        ProcessingResult(
            job_id=job.job_id, stage_id="stage-1", stage_order=1, image_id="img-1",
            success=True, executed_at=(base + timedelta(seconds=10)).isoformat(),
        ),
    ]
    errors = [
        StageError(
            job_id=job.job_id, stage_order=1, error_message="Stage 1 has no prompt configured",
            error_code="MISSING_PROMPT", occurred_at=(base + timedelta(seconds=20)).isoformat(),
        ),
        StageError(
            job_id=job.job_id, stage_order=1, image_id="img-2", error_message="429",
            error_code="RATE_LIMIT_EXCEEDED", occurred_at=(base + timedelta(seconds=5)).isoformat(),
        ),
    ]

    events = build_timeline(job, results, errors)

    assert [e.event for e in events] == [
        TimelineEventKind.STARTED,
        TimelineEventKind.STAGE_COMPLETED,
        TimelineEventKind.FAILED,
        TimelineEventKind.FAILED,
    ]
    assert events[2].details.startswith("Critical error")
    assert "no prompt" in events[3].details
