"""Shared fixtures: per-test SQLite database and a scripted analysis client."""

import threading
import time

import pytest

from src.executor import db, job_manager, stage_runner
from src.executor.schemas import ImageRef, Job, Prompt, PromptKind, Stage
from src.executor.store import SqlResultStore
from src.llm.backends import AnalysisResult


class FakeAnalysisClient:
    """Scripted AnalysisClient.

    `handler(image, prompt_text, kind)` returns an AnalysisResult (or raises).
    Records every call and the peak number of concurrent calls.
    """

    model_id = "fake-vision"

    def __init__(self, handler=None, delay: float = 0.0):
        self.handler = handler or (
            lambda image, text, kind: AnalysisResult(success=True, response=f"ok:{image.image_id}")
        )
        self.delay = delay
        self.calls: list[tuple[str, str]] = []
        self.in_flight = 0
        self.max_in_flight = 0
        self._lock = threading.Lock()

    def analyze(self, image, prompt_text, kind):
        with self._lock:
            self.calls.append((image.image_id, prompt_text))
            self.in_flight += 1
            self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.delay:
                time.sleep(self.delay)
            return self.handler(image, prompt_text, kind)
        finally:
            with self._lock:
                self.in_flight -= 1

    def calls_for(self, prompt_text: str) -> list[str]:
        return [image_id for image_id, text in self.calls if text == prompt_text]


@pytest.fixture(autouse=True)
def pipeline_db(tmp_path, monkeypatch):
    """Point the executor at a fresh SQLite file for every test."""
    monkeypatch.setattr(db, "DATABASE_URL", "")
    monkeypatch.setattr(db, "SQLITE_PATH", tmp_path / "pipeline.db")
    monkeypatch.setattr(db, "_initialized", False)
    monkeypatch.setattr(stage_runner, "STORE_RETRY_DELAYS", [0])
    monkeypatch.setattr(job_manager, "_cancellation_flags", {})
    yield tmp_path / "pipeline.db"


@pytest.fixture
def store():
    return SqlResultStore()


@pytest.fixture
def fake_client_cls():
    return FakeAnalysisClient


def _stage(order, text="Describe the image", kind=PromptKind.DESCRIPTIVE, filter_rule="none"):
    return Stage(
        stage_id=f"stage-{order}",
        order=order,
        prompt=Prompt(prompt_id=f"prompt-{order}", name=f"Prompt {order}", text=text, kind=kind),
        filter_rule=filter_rule,
    )


@pytest.fixture
def make_stage():
    return _stage


@pytest.fixture
def make_job():
    def _make(n_images=3, stages=None, job_id=None):
        job = Job(
            pipeline_id="pipeline-1",
            stages=stages if stages is not None else [_stage(1)],
            images=[
                ImageRef(image_id=f"img-{i}", storage_path=f"uploads/img-{i}.jpg", file_name=f"img-{i}.jpg")
                for i in range(1, n_images + 1)
            ],
        )
        if job_id:
            job.job_id = job_id
        return job

    return _make
