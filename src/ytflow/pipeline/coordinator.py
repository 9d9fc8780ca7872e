"""Wiring of the flow coordinator's collaborators."""

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field

from ytflow.config import Settings, get_settings
from ytflow.models.errors import ManifestIOError, TaskNotFoundError
from ytflow.models.stages import Pipeline, Stage
from ytflow.notifications.broadcaster import (
    CompositeSink,
    EventBroadcaster,
    LoggingSink,
    NotificationSink,
)
from ytflow.pipeline.orchestrator import StageOrchestrator
from ytflow.pipeline.producer import FlowProducer
from ytflow.pipeline.queues import LocalStageQueue, StageQueue
from ytflow.pipeline.stages import build_pipeline
from ytflow.pipeline.tracker import FlowTracker
from ytflow.processors.audio import AudioProcessor
from ytflow.processors.base import StageProcessor
from ytflow.processors.download import DownloadProcessor
from ytflow.processors.summarize import SummarizationProcessor
from ytflow.storage.manifest_store import ManifestStore

logger = logging.getLogger(__name__)


def default_processors(settings: Settings | None = None) -> dict[Stage, StageProcessor]:
    settings = settings or get_settings()
    return {
        Stage.DOWNLOAD: DownloadProcessor(settings),
        Stage.AUDIO_PROCESSING: AudioProcessor(settings),
        Stage.SUMMARIZATION: SummarizationProcessor(settings=settings),
    }


@dataclass
class FlowCoordinator:
    """Everything a running service needs, built once per process."""

    settings: Settings
    store: ManifestStore
    tracker: FlowTracker
    pipeline: Pipeline
    broadcaster: EventBroadcaster
    queue: StageQueue
    orchestrator: StageOrchestrator
    producer: FlowProducer
    processors: dict[Stage, StageProcessor] = field(default_factory=dict)

    def start(self) -> None:
        """Rebuild flow state from disk and pick up interrupted work."""
        self.tracker.recover(self.store, self.pipeline)
        if self.settings.resume_on_start:
            self.resume_interrupted()

    def resume_interrupted(self) -> int:
        """Re-enqueue the current stage of every recovered flow."""
        resumed = 0
        for flow in self.tracker.list_active():
            if flow.attempt is not None:
                continue
            task_id = flow.task_id
            try:
                with self.store.lock(task_id):
                    manifest = self.store.load(task_id)
                    if manifest is None or manifest.status.is_terminal:
                        self.tracker.remove(task_id)
                        continue
                    request = self.store.load_request(task_id)
                    stage = flow.current_stage or self.pipeline.first.stage
                    if request is None:
                        manifest.mark_failed(
                            "Interrupted by a restart and cannot be resumed",
                            f"Failed at {stage.value}: request record missing",
                        )
                        self.store.save(task_id, manifest)
                        self.tracker.mark_terminal(task_id, self.settings.failed_grace_seconds)
                        continue
                    manifest.reset_for_retry(f"Resuming {stage.value} after restart")
                    self.store.save(task_id, manifest)
                    self.tracker.upsert(
                        task_id,
                        current_stage=stage,
                        stage_progress=0.0,
                        step=manifest.current_step,
                        attempt=1,
                    )
                self.queue.enqueue(self.producer.resume_job(task_id, manifest, request, stage))
                resumed += 1
            except Exception as e:
                logger.error(f"Could not resume task {task_id}: {e}")
        if resumed:
            logger.info(f"Resumed {resumed} interrupted flows")
        return resumed

    def task_status(self, task_id: str) -> dict:
        """Durable manifest state merged with live progress, if any."""
        manifest = self.store.load(task_id)
        if manifest is None:
            raise TaskNotFoundError(task_id)
        status = manifest.model_dump(mode="json")
        flow = self.tracker.get(task_id)
        if flow is not None and not manifest.status.is_terminal:
            status["progress"] = max(manifest.progress, int(flow.overall_progress))
            status["current_step"] = flow.step or manifest.current_step
            status["current_stage"] = flow.current_stage.value if flow.current_stage else None
            status["stage_progress"] = flow.stage_progress
        return status

    def list_tasks(self) -> list[dict]:
        tasks = []
        for task_id in self.store.list_task_ids():
            try:
                tasks.append(self.task_status(task_id))
            except (TaskNotFoundError, ManifestIOError) as e:
                logger.warning(f"Skipping unreadable task {task_id}: {e}")
        return sorted(tasks, key=lambda t: t["created_at"], reverse=True)

    def cleanup_old_tasks(self) -> int:
        active = [f.task_id for f in self.tracker.list_active()]
        return self.store.cleanup_older_than(self.settings.cleanup_max_age_hours, exclude=active)

    def shutdown(self, wait: bool = True) -> None:
        shutdown = getattr(self.queue, "shutdown", None)
        if shutdown is not None:
            shutdown(wait=wait)
        logger.info("Flow coordinator stopped")


def build_coordinator(
    settings: Settings | None = None,
    processors: dict[Stage, StageProcessor] | None = None,
    queue: StageQueue | None = None,
    sink: NotificationSink | None = None,
    clock: Callable[[], float] = time.monotonic,
) -> FlowCoordinator:
    """Assemble the coordinator for the configured queue backend."""
    settings = settings or get_settings()
    store = ManifestStore(settings.storage_dir)
    tracker = FlowTracker(clock=clock)
    pipeline = build_pipeline(settings)
    broadcaster = EventBroadcaster()
    if queue is None:
        if settings.queue_backend == "celery":
            from ytflow.pipeline.tasks import CeleryStageQueue

            queue = CeleryStageQueue(pipeline)
        else:
            processors = processors or default_processors(settings)
            queue = LocalStageQueue(pipeline, processors, store)

    orchestrator = StageOrchestrator(
        store,
        tracker,
        pipeline,
        queue,
        sink or CompositeSink([broadcaster, LoggingSink()]),
        settings=settings,
        clock=clock,
    )
    bind = getattr(queue, "bind", None)
    if bind is not None:
        bind(orchestrator)

    producer = FlowProducer(store, tracker, pipeline, queue, settings=settings)
    logger.info(
        f"Flow coordinator ready ({settings.queue_backend} queue, "
        f"max {settings.max_concurrent_flows} flows, storage {store.base_dir})"
    )
    return FlowCoordinator(
        settings=settings,
        store=store,
        tracker=tracker,
        pipeline=pipeline,
        broadcaster=broadcaster,
        queue=queue,
        orchestrator=orchestrator,
        producer=producer,
        processors=processors or {},
    )
