"""Job execution engine for multi-stage image analysis pipelines.

Takes a resolved job (pipeline snapshot + image references) and runs it
stage by stage, calling the vision analysis backend per image, narrowing
the image set between stages, and persisting results and progress.

Architecture (bottom-up):
- db: SQLite / PostgreSQL connection and schema
- store: ResultStore contract and its SQL implementation
- filters: Narrowing the image set between stages
- stage_runner: One stage over one image set, bounded concurrency
- engine: Stage sequencing and job state transitions
- job_manager: Submission, cancellation, stale-job lookup
- worker: Fixed-size pool, one job per slot
- metrics: Progress, execution metrics, errors, timeline
"""
