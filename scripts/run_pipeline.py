#!/usr/bin/env python3
"""Run one pipeline snapshot to completion and print its metrics.

Reads a JSON file shaped like a job submission:

    {
      "pipeline_id": "pl-123",
      "stages": [
        {"order": 1, "prompt": {"text": "Is there a dog?", "kind": "boolean"},
         "filter_rule": "true_only"},
        {"order": 2, "prompt": {"text": "Describe the dog.", "kind": "descriptive"}}
      ],
      "images": [{"image_id": "img-1", "storage_path": "uploads/dog.jpg"}]
    }

Usage:
    python scripts/run_pipeline.py snapshot.json [--simulated] [--model claude-sonnet-4-6]

Results go to the configured database (PIPELINE_DATABASE_URL or the local
SQLite file).
"""

import json
import logging
import sys
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from src.executor.engine import JobExecutionEngine
from src.executor.job_manager import get_store, submit_job, to_status_response
from src.executor.metrics import MetricsAggregator
from src.executor.schemas import JobSubmission
from src.llm.factory import get_analysis_client


def run_snapshot(snapshot_path: Path, model_id: str = None) -> int:
    submission = JobSubmission(**json.loads(snapshot_path.read_text()))
    store = get_store()
    job = submit_job(submission, store=store)

    engine = JobExecutionEngine(get_analysis_client(model_id), store)
    engine.run(job)

    final = store.get_job(job.job_id)
    metrics = MetricsAggregator(store).execution_metrics(job.job_id)
    print(json.dumps(
        {
            "job": to_status_response(final).model_dump(mode="json"),
            "metrics": metrics.model_dump(mode="json") if metrics else None,
        },
        indent=2,
    ))
    return 0 if final.status.value == "completed" else 1


if __name__ == "__main__":
    import argparse

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    parser = argparse.ArgumentParser(description="Run one image pipeline snapshot")
    parser.add_argument("snapshot", help="Path to the job snapshot JSON file")
    parser.add_argument(
        "--simulated",
        action="store_true",
        help="Use the simulated analysis backend (no API calls)",
    )
    parser.add_argument(
        "--model",
        help="Analysis model ID (defaults to ANALYSIS_MODEL)",
    )
    args = parser.parse_args()

    model = "simulated" if args.simulated else args.model
    sys.exit(run_snapshot(Path(args.snapshot), model))
