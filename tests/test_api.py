"""Tests for the job HTTP endpoints."""

import pytest
from fastapi.testclient import TestClient

from src.api.main import app
from src.executor import worker
from src.executor.engine import JobExecutionEngine
from src.executor.stage_runner import StageRunner
from src.executor.store import SqlResultStore
from src.llm.backends import AnalysisResult


def _handler(image, text, kind):
    if image.image_id == "img-2":
        return AnalysisResult(success=False, error="Request timed out.")
    return AnalysisResult(success=True, response="true")


@pytest.fixture
def pool(monkeypatch, fake_client_cls):
    client = fake_client_cls(_handler)

    def engine():
        store = SqlResultStore()
        return JobExecutionEngine(client, store, StageRunner(client, store, max_concurrency=1))

    pool = worker.JobWorkerPool(engine, size=1)
    monkeypatch.setattr(worker, "_pool", pool)
    return pool


@pytest.fixture
def api(pool):
    with TestClient(app) as client:
        yield client


PAYLOAD = {
    "pipeline_id": "pipeline-api",
    "stages": [
        {
            "stage_id": "stage-a",
            "order": 1,
            "prompt": {"name": "Has dog", "text": "Is there a dog?", "kind": "boolean"},
            "filter_rule": "true_only",
        },
        {
            "stage_id": "stage-b",
            "order": 2,
            "prompt": {"name": "Describe", "text": "Describe the dog.", "kind": "descriptive"},
        },
    ],
    "images": [
        {"image_id": "img-1", "storage_path": "a.jpg"},
        {"image_id": "img-2", "storage_path": "b.jpg"},
        {"image_id": "img-3", "storage_path": "c.jpg"},
    ],
}


def _run_job(api, pool, payload=PAYLOAD):
    response = api.post("/v1/jobs", json=payload)
    assert response.status_code == 200
    job_id = response.json()["job_id"]
    pool.shutdown(wait=True)
    return job_id


def test_health(api):
    response = api.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "healthy"


def test_submit_and_poll(api, pool):
    job_id = _run_job(api, pool)

    body = api.get(f"/v1/jobs/{job_id}").json()
    assert body["status"] == "completed"
    assert body["total_images"] == 3
    assert body["total_stages"] == 2
    assert body["processed_images"] == 5
    assert body["results_summary"]["failed"] == 1

    listing = api.get("/v1/jobs", params={"status": "completed"}).json()
    assert [j["job_id"] for j in listing["jobs"]] == [job_id]


def test_monitoring_endpoints(api, pool):
    job_id = _run_job(api, pool)

    progress = api.get(f"/v1/jobs/{job_id}/progress").json()
    assert progress["overall_progress"] == 100
    assert [s["images_total"] for s in progress["stages"]] == [3, 2]

    metrics = api.get(f"/v1/jobs/{job_id}/metrics").json()
    assert metrics["total_errors"] == 1
    assert metrics["stage_metrics"][0]["stage_name"] == "Has dog"

    errors = api.get(f"/v1/jobs/{job_id}/errors").json()
    assert errors["total"] == 1
    assert errors["counts_by_type"] == {"timeout": 1}
    assert errors["errors"][0]["error_code"] == "API_TIMEOUT"

    history = api.get(f"/v1/jobs/{job_id}/progress-history", params={"stage_order": 2}).json()
    assert history["count"] > 0
    assert all(h["stage_order"] == 2 for h in history["history"])

    timeline = api.get(f"/v1/jobs/{job_id}/timeline").json()
    assert timeline["events"][0]["event"] == "started"
    assert timeline["events"][-1]["event"] == "completed"

    results = api.get(f"/v1/jobs/{job_id}/results", params={"stage_order": 2}).json()
    assert sorted(r["image_id"] for r in results["results"]) == ["img-1", "img-3"]


def test_unknown_job_returns_404(api):
    for path in ("", "/progress", "/metrics", "/errors", "/progress-history", "/timeline", "/results"):
        assert api.get(f"/v1/jobs/job-missing{path}").status_code == 404
    assert api.post("/v1/jobs/job-missing/cancel").status_code == 404


def test_cancel_finished_job_is_rejected(api, pool):
    job_id = _run_job(api, pool)
    response = api.post(f"/v1/jobs/{job_id}/cancel")
    assert response.status_code == 400


def test_duplicate_job_id_is_rejected(api, pool):
    payload = dict(PAYLOAD, job_id="job-dup")
    assert api.post("/v1/jobs", json=payload).status_code == 200
    assert api.post("/v1/jobs", json=payload).status_code == 400
    pool.shutdown(wait=True)


def test_invalid_submission_is_422(api):
    assert api.post("/v1/jobs", json={"pipeline_id": "x"}).status_code == 422


def test_stale_jobs_endpoint(api):
    body = api.get("/v1/jobs/stale", params={"older_than_minutes": 5}).json()
    assert body == {"jobs": [], "count": 0}
