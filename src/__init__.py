"""Image Pipeline Executor.

Runs multi-stage AI image analysis pipelines over batches of images:
- Job execution engine (stages in order, filters between stages)
- Vision analysis backends (Anthropic, simulated)
- Progress, metrics, and error monitoring queries
"""

__version__ = "0.1.0"
