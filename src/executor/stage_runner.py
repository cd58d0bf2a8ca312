"""Stage runner: one stage's prompt over one image set.

Images run through a bounded thread pool (MAX_IMAGE_CONCURRENCY). The same
bound caps in-flight client calls across every stage a runner executes, so
a call abandoned on timeout keeps its slot until it returns. Each
image produces exactly one ProcessingResult, success or failure: client
errors, exceptions, and timeouts are recorded as failed results and never
stop the rest of the stage.

All writes for a stage (result append, stage error, progress upsert) are
serialized under one lock, so images_processed only ever moves forward
and never passes images_total even when results finish out of order.

A stage is marked failed only when it cannot be attempted at all
(no usable prompt) or when the job is cancelled mid-stage.
"""

import logging
import os
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from concurrent.futures import TimeoutError as FuturesTimeoutError
from datetime import datetime
from typing import Any, Callable, Optional

from src.executor.errors import (
    JobCancelledError,
    StageConfigurationError,
    classify_error,
)
from src.executor.schemas import (
    ImageRef,
    Job,
    ProcessingResult,
    Stage,
    StageError,
    StageProgress,
    StageStatus,
)
from src.executor.store import ResultStore
from src.llm.backends import AnalysisClient

logger = logging.getLogger(__name__)

MAX_IMAGE_CONCURRENCY = int(os.environ.get("MAX_IMAGE_CONCURRENCY", "3"))
ANALYSIS_TIMEOUT_SECONDS = float(os.environ.get("ANALYSIS_TIMEOUT_SECONDS", "120"))
STORE_MAX_RETRIES = int(os.environ.get("STORE_MAX_RETRIES", "3"))
STORE_RETRY_DELAYS = [
    float(d) for d in os.environ.get("STORE_RETRY_DELAYS", "0.5,1,2").split(",") if d.strip()
]


def persist_with_retry(label: str, operation: Callable[..., Any], *args) -> Any:
    """Run a store write, retrying with backoff.

    Returns the operation's result, or None once every attempt has failed.
    A dropped write is logged at ERROR and the run continues.
    """
    attempts = max(STORE_MAX_RETRIES, 1)
    for attempt in range(1, attempts + 1):
        try:
            return operation(*args)
        except Exception as e:
            if attempt == attempts:
                logger.error(
                    f"[{label}] Store write {operation.__name__} failed after "
                    f"{attempts} attempts: {e}"
                )
                return None
            delay = STORE_RETRY_DELAYS[min(attempt - 1, len(STORE_RETRY_DELAYS) - 1)] if STORE_RETRY_DELAYS else 0
            logger.warning(
                f"[{label}] Store write {operation.__name__} failed "
                f"(attempt {attempt}/{attempts}), retrying in {delay}s: {e}"
            )
            time.sleep(delay)
    return None


def _percent(processed: int, total: int) -> int:
    if total <= 0:
        return 100
    return min(100, round(processed / total * 100))


class StageRunner:
    """Executes one stage over a set of images."""

    def __init__(
        self,
        client: AnalysisClient,
        store: ResultStore,
        max_concurrency: Optional[int] = None,
        call_timeout: Optional[float] = None,
    ):
        self.client = client
        self.store = store
        self.max_concurrency = max(1, max_concurrency or MAX_IMAGE_CONCURRENCY)
        self.call_timeout = call_timeout if call_timeout is not None else ANALYSIS_TIMEOUT_SECONDS
        # One slot per in-flight client call, held until the call really
        # returns, including calls abandoned on timeout in an earlier stage.
        self._call_slots = threading.BoundedSemaphore(self.max_concurrency)

    def run_stage(
        self,
        job: Job,
        stage: Stage,
        images: list[ImageRef],
        cancellation_check: Optional[Callable[[], bool]] = None,
    ) -> tuple[list[ProcessingResult], StageProgress]:
        """Run the stage's prompt over every image.

        Returns:
            (results in input image order, terminal StageProgress)

        Raises:
            StageConfigurationError: the stage has no usable prompt.
            JobCancelledError: cancellation fired mid-stage.
        """
        label = f"job={job.job_id} stage={stage.order}"
        start_time = time.time()

        progress = StageProgress(
            job_id=job.job_id,
            stage_id=stage.stage_id,
            stage_order=stage.order,
            status=StageStatus.PROCESSING,
            images_total=len(images),
            started_at=datetime.utcnow().isoformat(),
            metadata={"stage_name": stage.display_name},
        )

        if stage.prompt is None or not stage.prompt.text.strip():
            self._fail_unconfigured(job, stage, progress, label)

        persist_with_retry(label, self.store.upsert_stage_progress, progress.model_copy())
        logger.info(
            f"[{label}] Starting {stage.display_name}: {len(images)} images, "
            f"kind={stage.prompt.kind.value}, concurrency={self.max_concurrency}"
        )

        lock = threading.Lock()
        results_by_image: dict[str, ProcessingResult] = {}
        cancelled = False

        # Separate pool for the client calls so each one can be abandoned on
        # timeout while the image worker records the failure.
        call_pool = ThreadPoolExecutor(
            max_workers=self.max_concurrency, thread_name_prefix="analysis-call"
        )
        try:
            with ThreadPoolExecutor(
                max_workers=self.max_concurrency, thread_name_prefix="stage-image"
            ) as executor:
                futures = {
                    executor.submit(
                        self._process_image,
                        job, stage, image, progress, lock, call_pool,
                        cancellation_check, label,
                    ): image
                    for image in images
                }
                for future in as_completed(futures):
                    result = future.result()
                    if result is None:
                        cancelled = True
                    else:
                        results_by_image[result.image_id] = result
        finally:
            call_pool.shutdown(wait=False, cancel_futures=True)

        progress.execution_time_ms = int((time.time() - start_time) * 1000)
        progress.completed_at = datetime.utcnow().isoformat()

        if cancelled:
            progress.status = StageStatus.FAILED
            progress.last_error = "Job cancelled"
            persist_with_retry(label, self.store.upsert_stage_progress, progress.model_copy())
            logger.warning(
                f"[{label}] Cancelled after {progress.images_processed}/"
                f"{progress.images_total} images"
            )
            raise JobCancelledError(images_processed=progress.images_processed)

        progress.status = StageStatus.COMPLETED
        progress.progress_percent = _percent(progress.images_processed, progress.images_total)
        persist_with_retry(label, self.store.upsert_stage_progress, progress.model_copy())

        logger.info(
            f"[{label}] Completed {stage.display_name}: "
            f"{progress.images_processed - progress.error_count} ok, "
            f"{progress.error_count} failed, {progress.execution_time_ms}ms"
        )

        ordered = [results_by_image[img.image_id] for img in images if img.image_id in results_by_image]
        return ordered, progress

    def _fail_unconfigured(
        self,
        job: Job,
        stage: Stage,
        progress: StageProgress,
        label: str,
    ) -> None:
        message = f"Stage {stage.order} has no prompt configured"
        progress.status = StageStatus.FAILED
        progress.last_error = message
        progress.completed_at = progress.started_at
        persist_with_retry(label, self.store.upsert_stage_progress, progress.model_copy())
        persist_with_retry(
            label,
            self.store.record_stage_error,
            StageError(
                job_id=job.job_id,
                stage_order=stage.order,
                error_message=message,
                error_type="configuration",
                error_code=StageConfigurationError.error_code,
                prompt_id=stage.prompt.prompt_id if stage.prompt else None,
            ),
        )
        logger.error(f"[{label}] {message}")
        raise StageConfigurationError(message, stage_order=stage.order)

    def _process_image(
        self,
        job: Job,
        stage: Stage,
        image: ImageRef,
        progress: StageProgress,
        lock: threading.Lock,
        call_pool: ThreadPoolExecutor,
        cancellation_check: Optional[Callable[[], bool]],
        label: str,
    ) -> Optional[ProcessingResult]:
        """Analyze one image and record the outcome. None means cancelled."""
        if cancellation_check and cancellation_check():
            return None

        prompt = stage.prompt
        start_time = time.time()
        client_metadata: dict[str, Any] = {}

        deadline = start_time + self.call_timeout

        try:
            if not self._call_slots.acquire(timeout=self.call_timeout):
                raise FuturesTimeoutError()
            try:
                call = call_pool.submit(self.client.analyze, image, prompt.text, prompt.kind)
            except Exception:
                self._call_slots.release()
                raise
            call.add_done_callback(lambda _: self._call_slots.release())
            analysis = call.result(timeout=max(0.0, deadline - time.time()))
            success = bool(analysis.success)
            response = analysis.response or ""
            error = analysis.error if not success else None
            if not success and not error:
                error = "Analysis failed without an error message"
            client_metadata = analysis.metadata or {}
        except FuturesTimeoutError:
            success, response = False, ""
            error = f"Analysis timed out after {self.call_timeout:g}s"
        except Exception as e:
            success, response = False, ""
            error = str(e) or e.__class__.__name__

        duration_ms = int((time.time() - start_time) * 1000)
        result = ProcessingResult(
            job_id=job.job_id,
            stage_id=stage.stage_id,
            stage_order=stage.order,
            image_id=image.image_id,
            response=response,
            success=success,
            error=error,
            metadata={
                "prompt_kind": prompt.kind.value,
                "prompt_id": prompt.prompt_id,
                "client_metadata": client_metadata,
            },
            duration_ms=duration_ms,
        )

        with lock:
            persist_with_retry(label, self.store.append_result, result)

            progress.images_processed = min(progress.images_processed + 1, progress.images_total)
            progress.progress_percent = _percent(progress.images_processed, progress.images_total)

            if not success:
                progress.error_count += 1
                progress.last_error = error
                progress.failed_images.append(image.image_id)
                error_type, error_code = classify_error(error)
                persist_with_retry(
                    label,
                    self.store.record_stage_error,
                    StageError(
                        job_id=job.job_id,
                        stage_order=stage.order,
                        image_id=image.image_id,
                        error_message=error,
                        error_type=error_type,
                        error_code=error_code,
                        prompt_id=prompt.prompt_id,
                        execution_time_ms=duration_ms,
                    ),
                )
                logger.warning(f"[{label}] Image {image.image_id} failed: {error}")

            persist_with_retry(label, self.store.upsert_stage_progress, progress.model_copy())

        return result
