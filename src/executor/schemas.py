"""Executor-side schemas for jobs, stages, results, and progress.

A job carries a denormalized pipeline snapshot (the ordered stage list it
was started with) and the image references it runs over. Everything the
engine writes while running (ProcessingResult, StageProgress, StageError)
is described here too, along with the read models returned by the
monitoring queries.
"""

import uuid
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field


def _now() -> str:
    return datetime.utcnow().isoformat()


class JobStatus(str, Enum):
    """Job lifecycle states. Transitions only move forward."""
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_JOB_STATUSES = (JobStatus.COMPLETED, JobStatus.FAILED)


class StageStatus(str, Enum):
    """Stage execution states, tracked per (job, stage)."""
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class PromptKind(str, Enum):
    """What kind of answer a prompt expects."""
    BOOLEAN = "boolean"
    DESCRIPTIVE = "descriptive"
    KEYWORDS = "keywords"


class FilterRule(str, Enum):
    """How the image set is narrowed after a stage completes.

    Unknown values never reach here: `parse_filter_rule` maps them to NONE.
    """
    NONE = "none"
    SUCCESS_ONLY = "success_only"
    TRUE_ONLY = "true_only"
    FALSE_ONLY = "false_only"


# --- Pipeline snapshot ---


class Prompt(BaseModel):
    """Prompt attached to a stage."""

    prompt_id: Optional[str] = None
    name: str = ""
    text: str
    kind: PromptKind = PromptKind.DESCRIPTIVE


class Stage(BaseModel):
    """One ordered step of a pipeline snapshot."""

    stage_id: str = Field(default_factory=lambda: f"stage-{uuid.uuid4().hex[:12]}")
    order: int = Field(description="1-based execution index")
    prompt: Optional[Prompt] = None
    filter_rule: str = Field(
        default="none",
        description="Raw filter rule; unknown values fail open to 'none'",
    )

    @property
    def display_name(self) -> str:
        if self.prompt and self.prompt.name:
            return self.prompt.name
        return f"Stage {self.order}"


class ImageRef(BaseModel):
    """Opaque, read-only image reference."""

    image_id: str
    storage_path: str = ""
    file_name: Optional[str] = None


# --- Job ---


class ResultsSummary(BaseModel):
    """Counts written when a job completes."""

    total_results: int = 0
    successful: int = 0
    failed: int = 0
    stages: int = Field(default=0, description="Distinct stages touched")


class Job(BaseModel):
    """One request to run a pipeline over a set of images."""

    job_id: str = Field(default_factory=lambda: f"job-{uuid.uuid4().hex[:12]}")
    pipeline_id: str = ""
    stages: list[Stage] = Field(default_factory=list)
    images: list[ImageRef] = Field(default_factory=list)
    status: JobStatus = JobStatus.PENDING
    processed_images: int = Field(
        default=0,
        description="Image-stage units of work done, cumulative across stages",
    )
    error_message: Optional[str] = None
    results_summary: Optional[ResultsSummary] = None
    created_at: str = Field(default_factory=_now)
    started_at: Optional[str] = None
    completed_at: Optional[str] = None
    updated_at: Optional[str] = None

    @property
    def total_images(self) -> int:
        return len(self.images)


class JobSubmission(BaseModel):
    """Fully resolved job handed to the engine by the submission boundary."""

    job_id: Optional[str] = None
    pipeline_id: str = ""
    stages: list[Stage]
    images: list[ImageRef]


# --- Execution records ---


class ProcessingResult(BaseModel):
    """Outcome of applying one stage's prompt to one image. Append-only."""

    job_id: str
    stage_id: str
    stage_order: int
    image_id: str
    response: str = ""
    success: bool
    error: Optional[str] = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    duration_ms: int = 0
    executed_at: str = Field(default_factory=_now)


class StageProgress(BaseModel):
    """Live counters for one stage of one job."""

    job_id: str
    stage_id: str
    stage_order: int
    status: StageStatus = StageStatus.PENDING
    images_total: int = 0
    images_processed: int = 0
    progress_percent: int = 0
    error_count: int = 0
    last_error: Optional[str] = None
    failed_images: list[str] = Field(default_factory=list)
    execution_time_ms: Optional[int] = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    started_at: Optional[str] = None
    completed_at: Optional[str] = None
    updated_at: str = Field(default_factory=_now)


class StageError(BaseModel):
    """Classified error record; a superset capture of failed results."""

    job_id: str
    stage_order: int
    image_id: Optional[str] = None
    error_message: str
    error_type: str = "unknown"
    error_code: str = "UNKNOWN_ERROR"
    prompt_id: Optional[str] = None
    execution_time_ms: Optional[int] = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    occurred_at: str = Field(default_factory=_now)


class ProgressSnapshot(BaseModel):
    """One row of the append-only progress history log."""

    job_id: str
    stage_order: int
    status: StageStatus
    images_processed: int = 0
    progress_percent: int = 0
    error_count: int = 0
    execution_time_ms: Optional[int] = None
    last_error: Optional[str] = None
    timestamp: str


# --- Monitoring read models ---


class StageMetrics(BaseModel):
    stage_order: int
    stage_name: str
    status: StageStatus
    progress_percent: int = 0
    images_processed: int = 0
    images_total: int = 0
    total_results: int = 0
    successful_results: int = 0
    success_rate: float = 0.0
    avg_image_time_ms: float = 0.0
    execution_time_ms: Optional[int] = None
    error_count: int = 0


class ErrorCount(BaseModel):
    error: str
    count: int


class StageErrorCount(BaseModel):
    stage_order: int
    error_count: int


class ErrorSummary(BaseModel):
    most_common_errors: list[ErrorCount] = Field(default_factory=list)
    errors_by_stage: list[StageErrorCount] = Field(default_factory=list)
    failed_images: list[str] = Field(default_factory=list)


class ExecutionMetrics(BaseModel):
    """Per-stage and job-level execution metrics."""

    job_id: str
    total_stages: int = 0
    completed_stages: int = 0
    failed_stages: int = 0
    overall_progress: int = Field(
        default=0,
        description="Image-weighted progress across stages that have started",
    )
    total_images_processed: int = 0
    total_errors: int = 0
    total_execution_time_ms: int = Field(
        default=0,
        description="completed_at - created_at when both present, else 0",
    )
    average_stage_time_ms: float = 0.0
    success_rate: float = 0.0
    stage_metrics: list[StageMetrics] = Field(default_factory=list)
    error_summary: ErrorSummary = Field(default_factory=ErrorSummary)


class StageErrorsReport(BaseModel):
    job_id: str
    stage_order: Optional[int] = None
    errors: list[StageError] = Field(default_factory=list)
    total: int = 0
    counts_by_type: dict[str, int] = Field(default_factory=dict)


class TimelineEventKind(str, Enum):
    STARTED = "started"
    STAGE_COMPLETED = "stage_completed"
    COMPLETED = "completed"
    FAILED = "failed"


class TimelineEvent(BaseModel):
    timestamp: str
    event: TimelineEventKind
    stage: Optional[str] = None
    details: Optional[str] = None


class JobStatusResponse(BaseModel):
    """Response for job status polling."""

    job_id: str
    pipeline_id: str
    status: JobStatus
    total_images: int
    processed_images: int
    total_stages: int
    error_message: Optional[str] = None
    results_summary: Optional[ResultsSummary] = None
    created_at: str
    started_at: Optional[str] = None
    completed_at: Optional[str] = None
