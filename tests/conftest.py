"""Shared test fixtures and fakes for the flow coordinator."""

from pathlib import Path

import pytest

from ytflow.config import Settings
from ytflow.models.events import EventType
from ytflow.models.flow import StageJob, StageResult
from ytflow.models.stages import Stage
from ytflow.notifications.broadcaster import EventBroadcaster
from ytflow.pipeline.orchestrator import StageOrchestrator
from ytflow.pipeline.producer import FlowProducer
from ytflow.pipeline.stages import build_pipeline
from ytflow.pipeline.tracker import FlowTracker
from ytflow.processors.base import StageProcessor
from ytflow.storage.manifest_store import ManifestStore

VALID_URL = "https://www.youtube.com/watch?v=dQw4w9WgXcQ"


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingQueue:
    """StageQueue that only remembers what was enqueued."""

    def __init__(self):
        self.jobs: list[tuple[StageJob, float]] = []
        self.fail_next = False

    def enqueue(self, job: StageJob, delay_seconds: float = 0.0) -> None:
        if self.fail_next:
            self.fail_next = False
            raise ConnectionError("queue unavailable")
        self.jobs.append((job, delay_seconds))

    def pop(self) -> StageJob:
        job, _ = self.jobs.pop(0)
        return job

    def __len__(self) -> int:
        return len(self.jobs)


class RecordingSink:
    """NotificationSink that keeps every event."""

    def __init__(self):
        self.events: list[tuple[str, EventType, dict]] = []

    def publish(self, task_id: str, event_type: EventType, payload: dict) -> None:
        self.events.append((task_id, event_type, payload))

    def of_type(self, event_type: EventType, task_id: str | None = None) -> list[dict]:
        return [
            payload
            for tid, etype, payload in self.events
            if etype == event_type and (task_id is None or tid == task_id)
        ]


class FakeProcessor(StageProcessor):
    """Writes the stage's declared outputs, or fails with scripted errors.

    ``failures`` is consumed one entry per run; ``None`` entries succeed.
    """

    def __init__(self, stage: Stage, outputs: tuple[str, ...], failures=None, on_run=None):
        self.stage = stage
        self.outputs = outputs
        self.failures = list(failures or [])
        self.on_run = on_run
        self.calls: list[StageJob] = []

    def run(self, job, task_dir, on_progress=None):
        self.calls.append(job)
        if self.on_run:
            self.on_run(job)
        failure = self.failures.pop(0) if self.failures else None
        if failure is not None:
            raise failure
        if on_progress:
            on_progress(50, f"{self.stage.value} halfway")
        task_dir.mkdir(parents=True, exist_ok=True)
        files = {}
        for name in self.outputs:
            path = task_dir / name
            path.write_text(name)
            files[name] = str(path)
        return self.result(job, files, {"fake": True})


def success_result(job: StageJob, pipeline, task_dir: Path | None = None) -> StageResult:
    """A successful result carrying every declared output of the job's stage."""
    outputs = pipeline.definition(job.stage).outputs
    base = task_dir or Path("/tmp") / job.task_id
    return StageResult(
        task_id=job.task_id,
        stage=job.stage,
        success=True,
        files={name: str(base / name) for name in outputs},
        metadata={"stage": job.stage.value},
    )


def failure_result(job: StageJob, error: str, kind=None) -> StageResult:
    return StageResult(
        task_id=job.task_id, stage=job.stage, success=False, error=error, error_kind=kind
    )


def make_settings(tmp_path: Path, **overrides) -> Settings:
    values = {
        "storage_dir": tmp_path / "data",
        "max_concurrent_flows": 5,
        "retry_backoff_seconds": 2.0,
        "openai_api_key": "",
        "queue_backend": "local",
        "resume_on_start": False,
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


@pytest.fixture
def settings(tmp_path):
    return make_settings(tmp_path)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def pipeline(settings):
    return build_pipeline(settings)


@pytest.fixture
def store(settings):
    return ManifestStore(settings.storage_dir)


@pytest.fixture
def tracker(clock):
    return FlowTracker(clock=clock)


@pytest.fixture
def recording_queue():
    return RecordingQueue()


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def broadcaster():
    return EventBroadcaster()


@pytest.fixture
def orchestrator(store, tracker, pipeline, recording_queue, sink, settings, clock):
    return StageOrchestrator(
        store, tracker, pipeline, recording_queue, sink, settings=settings, clock=clock
    )


@pytest.fixture
def producer(store, tracker, pipeline, recording_queue, settings):
    return FlowProducer(store, tracker, pipeline, recording_queue, settings=settings)
