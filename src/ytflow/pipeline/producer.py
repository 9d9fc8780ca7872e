"""Flow producer: admission control and task creation."""

import logging
import secrets
import threading
import time
from collections.abc import Callable

from ytflow.config import Settings, get_settings
from ytflow.models.errors import CapacityExceeded, TaskNotFoundError, ValidationError
from ytflow.models.flow import FlowHandle, FlowOptions, FlowRequest, StageJob, StageResult
from ytflow.models.manifest import TaskManifest, TaskStatus
from ytflow.models.stages import Pipeline, Stage
from ytflow.pipeline.queues import StageQueue
from ytflow.pipeline.tracker import FlowTracker
from ytflow.storage.manifest_store import ManifestStore
from ytflow.validation.urls import validate_youtube_url

logger = logging.getLogger(__name__)

_BASE36 = "0123456789abcdefghijklmnopqrstuvwxyz"


def _base36(value: int) -> str:
    digits = []
    while True:
        value, remainder = divmod(value, 36)
        digits.append(_BASE36[remainder])
        if value == 0:
            return "".join(reversed(digits))


def generate_task_id() -> str:
    """Time-ordered, collision-resistant task ID."""
    return f"task_{_base36(int(time.time() * 1000))}_{secrets.token_hex(4)}"


class FlowProducer:
    """Public entry point that turns a URL into a running flow."""

    def __init__(
        self,
        store: ManifestStore,
        tracker: FlowTracker,
        pipeline: Pipeline,
        queue: StageQueue,
        settings: Settings | None = None,
        url_validator: Callable[[str], object] = validate_youtube_url,
        id_factory: Callable[[], str] = generate_task_id,
    ):
        self.store = store
        self.tracker = tracker
        self.pipeline = pipeline
        self.queue = queue
        self.settings = settings or get_settings()
        self._validate_url = url_validator
        self._new_id = id_factory
        # Admission check and tracker registration must be one step
        self._admission_lock = threading.Lock()

    def create_flow(self, url: str, options: FlowOptions | None = None) -> FlowHandle:
        """Validate, admit, persist and enqueue the first stage.

        Raises:
            ValidationError: the URL is rejected.
            CapacityExceeded: ``max_concurrent_flows`` flows are already active.
        """
        options = options or FlowOptions()
        self._validate_url(url)

        with self._admission_lock:
            self._check_capacity()
            task_id = self._new_id()
            first = self.pipeline.first
            manifest = self.store.create(task_id)
            manifest.status = first.statuses[0]
            manifest.current_step = "Starting video download"
            self.store.save(task_id, manifest)
            self.store.save_request(task_id, FlowRequest(url=url, options=options))

            self.tracker.upsert(
                task_id,
                current_stage=first.stage,
                overall_progress=0.0,
                stage_progress=0.0,
                step=manifest.current_step,
                started_at=manifest.created_at,
                attempt=1,
            )

        job = StageJob(task_id=task_id, stage=first.stage, url=url, options=options)
        try:
            self.queue.enqueue(job)
        except Exception as e:
            logger.error(f"Failed to enqueue first stage for {task_id}: {e}")
            self._abandon(task_id, f"Failed to start flow: {e}")
            raise

        logger.info(f"Created flow {task_id} for {url} (priority={options.priority})")
        return FlowHandle(task_id=task_id, estimated_duration=self.pipeline.estimated_duration())

    def active_flow_count(self) -> int:
        return self.tracker.count()

    def flow_stats(self) -> dict:
        active = self.tracker.count()
        maximum = self.settings.max_concurrent_flows
        return {
            "active_flows": active,
            "max_concurrent_flows": maximum,
            "capacity_used": round(active / maximum * 100, 1) if maximum else 100.0,
            "estimated_duration": self.pipeline.estimated_duration(),
            "flows": [f.model_dump(mode="json") for f in self.tracker.list_active()],
        }

    def retry_task(self, task_id: str) -> FlowHandle:
        """Restart a failed task from the first stage whose outputs are missing."""
        request = self.store.load_request(task_id)

        with self._admission_lock:
            with self.store.lock(task_id):
                manifest = self.store.load(task_id)
                if manifest is None:
                    raise TaskNotFoundError(task_id)
                if manifest.status != TaskStatus.FAILED:
                    raise ValidationError(
                        f"Only failed tasks can be retried (task is {manifest.status.value})",
                        details={"task_id": task_id, "status": manifest.status.value},
                    )
                if request is None:
                    raise ValidationError(
                        f"Task {task_id} has no stored request and cannot be retried",
                        details={"task_id": task_id},
                    )
                self._check_capacity()

                stage = self.pipeline.resume_stage(manifest.files) or self.pipeline.first.stage
                manifest.reset_for_retry(f"Retrying from {stage.value}")
                self.store.save(task_id, manifest)

                self.tracker.remove(task_id)
                self.tracker.upsert(
                    task_id,
                    current_stage=stage,
                    overall_progress=float(manifest.progress),
                    stage_progress=0.0,
                    step=manifest.current_step,
                    started_at=manifest.created_at,
                    attempt=1,
                )

        job = self.resume_job(task_id, manifest, request, stage)
        try:
            self.queue.enqueue(job)
        except Exception as e:
            logger.error(f"Failed to enqueue retry for {task_id}: {e}")
            self._abandon(task_id, f"Failed to restart flow: {e}")
            raise

        logger.info(f"Retrying task {task_id} from {stage.value}")
        return FlowHandle(task_id=task_id, estimated_duration=self.pipeline.estimated_duration())

    def resume_job(
        self, task_id: str, manifest: TaskManifest, request: FlowRequest, stage: Stage
    ) -> StageJob:
        """Rebuild the job for ``stage`` from artifacts already on disk."""
        previous = self._previous_stage(stage)
        stage_input = None
        if previous is not None:
            stage_input = StageResult(
                task_id=task_id, stage=previous, success=True, files=dict(manifest.files)
            )
        return StageJob(
            task_id=task_id,
            stage=stage,
            url=request.url,
            options=request.options,
            input=stage_input,
        )

    def delete_task(self, task_id: str) -> bool:
        """Remove a task's data. Does not stop a stage that is already running."""
        existed = self.store.delete(task_id)
        removed = self.tracker.remove(task_id)
        if not existed and not removed:
            raise TaskNotFoundError(task_id)
        logger.info(f"Deleted task {task_id}")
        return True

    def _check_capacity(self) -> None:
        active = self.tracker.count()
        maximum = self.settings.max_concurrent_flows
        if active >= maximum:
            logger.warning(f"Rejecting flow: {active}/{maximum} flows active")
            raise CapacityExceeded(
                f"Maximum concurrent flows ({maximum}) reached. Please try again later.",
                details={"active_flows": active, "max_concurrent_flows": maximum},
            )

    def _previous_stage(self, stage: Stage) -> Stage | None:
        previous = None
        for definition in self.pipeline:
            if definition.stage == stage:
                return previous
            previous = definition.stage
        return None

    def _abandon(self, task_id: str, error: str) -> None:
        try:
            with self.store.lock(task_id):
                manifest = self.store.load(task_id)
                if manifest is not None and not manifest.status.is_terminal:
                    manifest.mark_failed(error, error)
                    self.store.save(task_id, manifest)
        except TaskNotFoundError:
            logger.warning(f"Task {task_id} was deleted before it could be marked failed")
        self.tracker.mark_terminal(task_id, self.settings.failed_grace_seconds)
