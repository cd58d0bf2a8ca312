"""Job execution engine.

Drives one job through its pipeline snapshot:
1. Persist the job and move it to processing.
2. Validate the snapshot (stage orders 1..N, at least one image).
3. Run the stages strictly in order. After each stage, bump the job's
   cumulative processed counter and narrow the image set with the
   stage's filter rule.
4. Write the results summary and mark the job completed.

A stage that cannot be attempted, a malformed snapshot, or a cancellation
ends the job as failed. Results already written are kept. Per-image
failures never reach this level: a job where every image failed still
completes.

The engine's outcome is observed through the ResultStore; `run` does not
raise for job-level failures. It raises PersistenceError only when the job
cannot even be marked as processing.
"""

import logging
from typing import Callable, Optional

from src.executor.errors import (
    JobCancelledError,
    PersistenceError,
    PipelineConfigurationError,
    StageConfigurationError,
)
from src.executor.filters import apply_filter, parse_filter_rule
from src.executor.schemas import (
    Job,
    JobStatus,
    ProcessingResult,
    ResultsSummary,
    Stage,
    StageError,
)
from src.executor.stage_runner import StageRunner, persist_with_retry
from src.executor.store import ResultStore
from src.llm.backends import AnalysisClient

logger = logging.getLogger(__name__)


def validate_snapshot(job: Job) -> list[Stage]:
    """Return the job's stages in execution order.

    Raises:
        PipelineConfigurationError: no stages, no images, duplicate stage
            or image ids, or stage orders that are not exactly 1..N.
    """
    if not job.stages:
        raise PipelineConfigurationError(f"Job {job.job_id} has no stages")
    if not job.images:
        raise PipelineConfigurationError(f"Job {job.job_id} has no images")

    stages = sorted(job.stages, key=lambda s: s.order)
    orders = [s.order for s in stages]
    expected = list(range(1, len(stages) + 1))
    if orders != expected:
        raise PipelineConfigurationError(
            f"Stage orders must be 1..{len(stages)} with no gaps or duplicates, "
            f"got {orders}"
        )

    stage_ids = [s.stage_id for s in stages]
    if len(set(stage_ids)) != len(stage_ids):
        raise PipelineConfigurationError(f"Duplicate stage ids in pipeline: {stage_ids}")

    image_ids = [img.image_id for img in job.images]
    duplicates = sorted({i for i in image_ids if image_ids.count(i) > 1})
    if duplicates:
        raise PipelineConfigurationError(f"Duplicate image ids in job: {duplicates}")

    return stages


def summarize_results(results: list[ProcessingResult]) -> ResultsSummary:
    successful = sum(1 for r in results if r.success)
    return ResultsSummary(
        total_results=len(results),
        successful=successful,
        failed=len(results) - successful,
        stages=len({r.stage_id for r in results}),
    )


class JobExecutionEngine:
    """Runs one job at a time; callers guarantee single-flight per job id."""

    def __init__(
        self,
        client: AnalysisClient,
        store: ResultStore,
        stage_runner: Optional[StageRunner] = None,
    ):
        self.client = client
        self.store = store
        self.stage_runner = stage_runner or StageRunner(client, store)

    def run(
        self,
        job: Job,
        cancellation_check: Optional[Callable[[], bool]] = None,
    ) -> None:
        """Execute the job to a terminal state."""
        label = f"job={job.job_id}"

        persist_with_retry(label, self.store.create_or_update_job, job)
        started = persist_with_retry(
            label, self.store.set_job_status, job.job_id, JobStatus.PROCESSING
        )
        if started is None:
            raise PersistenceError(f"Job {job.job_id}: could not record processing status")
        if not started:
            logger.warning(f"Job {job.job_id} is already finished, not running it again")
            return

        logger.info(
            f"Job {job.job_id} started: {len(job.stages)} stages, "
            f"{job.total_images} images, model={self.client.model_id}"
        )

        all_results: list[ProcessingResult] = []
        try:
            stages = validate_snapshot(job)
            images = list(job.images)

            for stage in stages:
                if cancellation_check and cancellation_check():
                    raise JobCancelledError()

                results, progress = self.stage_runner.run_stage(
                    job, stage, images, cancellation_check
                )
                all_results.extend(results)
                persist_with_retry(
                    label,
                    self.store.increment_processed_count,
                    job.job_id,
                    progress.images_processed,
                )

                rule = parse_filter_rule(stage.filter_rule)
                images = apply_filter(images, results, rule)
                logger.info(
                    f"Job {job.job_id}: stage {stage.order} done, "
                    f"{len(images)} images continue (filter={rule.value})"
                )

        except JobCancelledError as e:
            if e.images_processed:
                persist_with_retry(
                    label, self.store.increment_processed_count, job.job_id, e.images_processed
                )
            self._finish_failed(job, all_results, "Job cancelled")
            return

        except StageConfigurationError as e:
            self._finish_failed(job, all_results, str(e))
            return

        except PipelineConfigurationError as e:
            persist_with_retry(
                label,
                self.store.record_stage_error,
                StageError(
                    job_id=job.job_id,
                    stage_order=0,
                    error_message=str(e),
                    error_type="configuration",
                    error_code=e.error_code,
                ),
            )
            self._finish_failed(job, all_results, str(e))
            return

        except Exception as e:
            logger.error(f"Job {job.job_id} failed unexpectedly: {e}", exc_info=True)
            self._finish_failed(job, all_results, f"Unexpected error: {e}")
            return

        summary = summarize_results(all_results)
        persist_with_retry(label, self.store.save_results_summary, job.job_id, summary)
        persist_with_retry(label, self.store.set_job_status, job.job_id, JobStatus.COMPLETED)
        logger.info(
            f"Job {job.job_id} completed: {summary.total_results} results "
            f"({summary.successful} ok, {summary.failed} failed) "
            f"across {summary.stages} stages"
        )

    def _finish_failed(
        self,
        job: Job,
        results: list[ProcessingResult],
        message: str,
    ) -> None:
        label = f"job={job.job_id}"
        if results:
            persist_with_retry(
                label, self.store.save_results_summary, job.job_id, summarize_results(results)
            )
        persist_with_retry(
            label, self.store.set_job_status, job.job_id, JobStatus.FAILED, message
        )
        logger.warning(f"Job {job.job_id} failed: {message}")
