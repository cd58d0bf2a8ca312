"""Tests for running one stage over an image set."""

import time

import pytest

from src.executor.errors import JobCancelledError, StageConfigurationError
from src.executor.schemas import StageStatus
from src.executor.stage_runner import StageRunner, persist_with_retry
from src.llm.backends import AnalysisResult


def _setup(store, make_job, n_images=3, stages=None):
    job = make_job(n_images=n_images, stages=stages)
    store.create_or_update_job(job)
    return job


def test_every_image_gets_one_result(store, make_job, fake_client_cls):
    job = _setup(store, make_job, n_images=4)
    client = fake_client_cls()
    runner = StageRunner(client, store, max_concurrency=2)

    results, progress = runner.run_stage(job, job.stages[0], job.images)

    assert [r.image_id for r in results] == ["img-1", "img-2", "img-3", "img-4"]
    assert all(r.success for r in results)
    assert progress.status == StageStatus.COMPLETED
    assert progress.images_processed == progress.images_total == 4
    assert progress.progress_percent == 100
    assert len(store.list_results(job.job_id)) == 4


def test_one_bad_image_does_not_sink_the_stage(store, make_job, fake_client_cls):
    job = _setup(store, make_job, n_images=4)

    def handler(image, text, kind):
        if image.image_id == "img-2":
            return AnalysisResult(success=False, error="Image too large to process")
        return AnalysisResult(success=True, response="fine")

    results, progress = StageRunner(fake_client_cls(handler), store).run_stage(
        job, job.stages[0], job.images
    )

    assert progress.status == StageStatus.COMPLETED
    assert progress.images_processed == 4
    assert progress.error_count == 1
    assert progress.failed_images == ["img-2"]
    assert progress.last_error == "Image too large to process"

    stored = store.list_stage_progress(job.job_id)[0]
    assert stored.status == StageStatus.COMPLETED
    assert stored.error_count == 1

    errors = store.list_stage_errors(job.job_id)
    assert len(errors) == 1
    assert errors[0].image_id == "img-2"
    assert errors[0].error_type == "image_size"
    assert errors[0].prompt_id == "prompt-1"


def test_client_exception_becomes_failed_result(store, make_job, fake_client_cls):
    job = _setup(store, make_job, n_images=2)

    def handler(image, text, kind):
        if image.image_id == "img-1":
            raise ConnectionError("network connection reset")
        return AnalysisResult(success=True, response="ok")

    results, progress = StageRunner(fake_client_cls(handler), store).run_stage(
        job, job.stages[0], job.images
    )

    failed = [r for r in results if not r.success]
    assert [r.image_id for r in failed] == ["img-1"]
    assert failed[0].error == "network connection reset"
    assert progress.status == StageStatus.COMPLETED
    assert store.list_stage_errors(job.job_id)[0].error_type == "network"


def test_timed_out_call_is_recorded_as_failure(store, make_job, fake_client_cls):
    job = _setup(store, make_job, n_images=1)
    client = fake_client_cls(delay=0.5)
    runner = StageRunner(client, store, call_timeout=0.05)

    results, progress = runner.run_stage(job, job.stages[0], job.images)

    assert results[0].success is False
    assert "timed out" in results[0].error
    assert progress.error_count == 1
    assert progress.status == StageStatus.COMPLETED
    assert store.list_stage_errors(job.job_id)[0].error_code == "API_TIMEOUT"


def test_concurrency_is_bounded(store, make_job, fake_client_cls):
    job = _setup(store, make_job, n_images=8)
    client = fake_client_cls(delay=0.05)

    StageRunner(client, store, max_concurrency=2).run_stage(job, job.stages[0], job.images)

    assert len(client.calls) == 8
    assert client.max_in_flight <= 2


def test_timed_out_calls_keep_counting_against_the_bound(store, make_job, make_stage, fake_client_cls):
    stages = [make_stage(1), make_stage(2, text="Count the dogs"), make_stage(3, text="Name the park")]
    job = _setup(store, make_job, n_images=1, stages=stages)
    client = fake_client_cls(delay=0.6)
    runner = StageRunner(client, store, max_concurrency=1, call_timeout=0.1)

    outcomes = [runner.run_stage(job, stage, job.images)[0][0] for stage in stages]

    assert client.max_in_flight <= 1
    assert len(client.calls) == 1
    assert all(not r.success and "timed out" in r.error for r in outcomes)

    time.sleep(0.6)
    assert client.in_flight == 0


def test_progress_is_monotonic_and_bounded(store, make_job, fake_client_cls):
    job = _setup(store, make_job, n_images=6)
    client = fake_client_cls(delay=0.01)

    StageRunner(client, store, max_concurrency=3).run_stage(job, job.stages[0], job.images)

    history = store.list_progress_history(job.job_id, stage_order=1)
    processed = [h.images_processed for h in history]
    assert processed == sorted(processed)
    assert processed[0] == 0
    assert max(processed) == 6
    assert all(h.progress_percent <= 100 for h in history)


def test_missing_prompt_fails_stage_before_any_image(store, make_job, make_stage, fake_client_cls):
    stage = make_stage(1).model_copy(update={"prompt": None})
    job = _setup(store, make_job, stages=[stage])
    client = fake_client_cls()

    with pytest.raises(StageConfigurationError) as exc_info:
        StageRunner(client, store).run_stage(job, stage, job.images)

    assert exc_info.value.stage_order == 1
    assert client.calls == []
    progress = store.list_stage_progress(job.job_id)
    assert progress[0].status == StageStatus.FAILED
    assert store.list_stage_errors(job.job_id)[0].error_code == "MISSING_PROMPT"


def test_blank_prompt_text_is_a_configuration_error(store, make_job, make_stage, fake_client_cls):
    stage = make_stage(1, text="   ")
    job = _setup(store, make_job, stages=[stage])

    with pytest.raises(StageConfigurationError):
        StageRunner(fake_client_cls(), store).run_stage(job, stage, job.images)


def test_cancellation_stops_remaining_images(store, make_job, fake_client_cls):
    job = _setup(store, make_job, n_images=5)
    client = fake_client_cls()
    runner = StageRunner(client, store, max_concurrency=1)

    with pytest.raises(JobCancelledError) as exc_info:
        runner.run_stage(
            job, job.stages[0], job.images, cancellation_check=lambda: len(client.calls) >= 2
        )

    assert exc_info.value.images_processed == 2
    assert len(client.calls) == 2
    progress = store.list_stage_progress(job.job_id)[0]
    assert progress.status == StageStatus.FAILED
    assert progress.images_processed == 2


def test_empty_image_set_completes_immediately(store, make_job, fake_client_cls):
    job = _setup(store, make_job, n_images=1)
    results, progress = StageRunner(fake_client_cls(), store).run_stage(job, job.stages[0], [])

    assert results == []
    assert progress.status == StageStatus.COMPLETED
    assert progress.images_total == 0
    assert progress.progress_percent == 100


def test_persist_with_retry_recovers_from_transient_failure():
    attempts = []

    def flaky(value):
        attempts.append(value)
        if len(attempts) < 2:
            raise RuntimeError("database is locked")
        return "written"

    assert persist_with_retry("test", flaky, 42) == "written"
    assert attempts == [42, 42]


def test_persist_with_retry_gives_up_without_raising():
    def broken():
        raise RuntimeError("database is gone")

    start = time.time()
    assert persist_with_retry("test", broken) is None
    assert time.time() - start < 1
