"""Stage orchestrator: the state machine that advances tasks between stages."""

import logging
import threading
import time
from collections.abc import Callable
from typing import Any

from ytflow.config import Settings, get_settings
from ytflow.models.errors import ManifestIOError, TaskNotFoundError
from ytflow.models.events import EventType
from ytflow.models.flow import StageJob, StageResult
from ytflow.models.manifest import TaskManifest, TaskStatus
from ytflow.models.stages import Pipeline, Stage
from ytflow.notifications.broadcaster import NotificationSink
from ytflow.pipeline.queues import StageQueue
from ytflow.pipeline.retry import backoff_delay, classify_error, is_retryable
from ytflow.pipeline.throttle import ProgressThrottle
from ytflow.pipeline.tracker import FlowTracker
from ytflow.storage.manifest_store import ManifestStore

logger = logging.getLogger(__name__)


class StageOrchestrator:
    """Reacts to stage events and decides what happens next.

    Inbound events are ``handle_started``, ``handle_progress`` and
    ``handle_finished``. Every manifest mutation happens inside the store's
    per-task lock, so a duplicate delivery or a racing retry cannot interleave
    a load-merge-save cycle with another writer. Progress is kept in the
    tracker only; the manifest is written at status changes and stage
    boundaries.
    """

    def __init__(
        self,
        store: ManifestStore,
        tracker: FlowTracker,
        pipeline: Pipeline,
        queue: StageQueue,
        sink: NotificationSink,
        settings: Settings | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.store = store
        self.tracker = tracker
        self.pipeline = pipeline
        self.queue = queue
        self.sink = sink
        self.settings = settings or get_settings()
        self._clock = clock
        self._throttles: dict[tuple[str, Stage], ProgressThrottle] = {}
        self._throttles_lock = threading.Lock()

    # -- inbound events -------------------------------------------------

    def handle_started(self, job: StageJob) -> None:
        """A worker picked up ``job``: move the task out of ``pending``."""
        if not self.store.exists(job.task_id):
            logger.warning(f"Stage {job.stage.value} started for unknown task {job.task_id}")
            return
        entry_status = self.pipeline.entry_status(job.stage)
        try:
            with self.store.lock(job.task_id):
                manifest = self.store.load(job.task_id)
                if manifest is None or not self._accepts(manifest, job):
                    return
                changed = False
                if self.pipeline.status_rank(manifest.status) < self.pipeline.status_rank(
                    entry_status
                ):
                    manifest.status = entry_status
                    manifest.current_step = f"Starting {job.stage.value}"
                    self.store.save(job.task_id, manifest)
                    changed = True
                self.tracker.upsert(
                    job.task_id,
                    current_stage=job.stage,
                    stage_progress=0.0,
                    step=f"Starting {job.stage.value}",
                    attempt=job.attempt,
                )
                if changed:
                    self._publish_status(manifest, job.stage)
        except TaskNotFoundError:
            logger.warning(f"Stage {job.stage.value} started for deleted task {job.task_id}")
        except ManifestIOError as e:
            logger.error(f"Could not record start of {job.stage.value} for {job.task_id}: {e}")

    def handle_progress(
        self,
        task_id: str,
        stage: Stage,
        local_progress: float,
        step: str,
        phase: TaskStatus | None = None,
        attempt: int | None = None,
    ) -> None:
        """Fold a stage-local progress report into the flow's overall progress."""
        stage = Stage(stage)
        flow = self.tracker.get(task_id)
        if flow is None or flow.terminal:
            logger.debug(f"Ignoring progress for inactive task {task_id}")
            return
        if flow.current_stage is not None and flow.current_stage != stage:
            logger.debug(f"Ignoring {stage.value} progress; {task_id} is at another stage")
            return
        if attempt is not None and flow.attempt is not None and attempt != flow.attempt:
            logger.debug(f"Ignoring progress from stale attempt {attempt} of {task_id}")
            return

        local = max(0.0, min(100.0, float(local_progress)))
        overall = max(flow.overall_progress, self.pipeline.overall_progress(stage, local))
        self.tracker.upsert(
            task_id,
            current_stage=stage,
            overall_progress=overall,
            stage_progress=local,
            step=step,
        )

        status_changed = False
        if phase is not None:
            status_changed = self._apply_phase(task_id, stage, TaskStatus(phase), overall, step)

        if self._throttle(task_id, stage).should_emit(immediate=status_changed):
            self._publish(
                task_id,
                EventType.PROGRESS,
                {
                    "stage": stage.value,
                    "progress": overall,
                    "stage_progress": local,
                    "step": step,
                },
            )

    def handle_finished(self, job: StageJob, result: StageResult) -> None:
        """Advance, retry or fail the task according to ``result``."""
        if result.task_id != job.task_id or result.stage != job.stage:
            logger.warning(
                f"Result {result.task_id}/{result.stage.value} does not match job {job.job_id}"
            )
            return
        try:
            if not self.store.exists(job.task_id):
                logger.warning(f"Stage {job.stage.value} finished for deleted task {job.task_id}")
                return
            with self.store.lock(job.task_id):
                manifest = self.store.load(job.task_id)
                if manifest is None or not self._accepts(manifest, job):
                    return
                if result.success:
                    self._complete_stage(manifest, job, result)
                else:
                    self._fail_stage(manifest, job, result)
        except TaskNotFoundError:
            logger.warning(f"Stage {job.stage.value} finished for deleted task {job.task_id}")
        except ManifestIOError as e:
            logger.error(
                f"Manifest unavailable while finishing {job.stage.value} for {job.task_id}; "
                f"leaving last saved state: {e}"
            )
        finally:
            self._drop_throttle(job.task_id, job.stage)

    # -- transitions ----------------------------------------------------

    def _complete_stage(self, manifest: TaskManifest, job: StageJob, result: StageResult) -> None:
        definition = self.pipeline.definition(job.stage)
        next_stage = self.pipeline.next_stage(job.stage)
        manifest.merge_files(result.files)

        if next_stage is None:
            manifest.mark_completed("All processing completed successfully")
            self.store.save(job.task_id, manifest)
            logger.info(f"Task {job.task_id} completed")
            self.tracker.upsert(
                job.task_id,
                current_stage=job.stage,
                overall_progress=100.0,
                stage_progress=100.0,
                step=manifest.current_step,
            )
            self.tracker.mark_terminal(job.task_id, self.settings.completed_grace_seconds)
            self._publish_stage_complete(manifest, job, result)
            self._publish_status(manifest, job.stage)
            self._publish(
                job.task_id,
                EventType.COMPLETE,
                {"status": manifest.status.value, "progress": 100, "files": manifest.files},
            )
            return

        manifest.status = self.pipeline.entry_status(next_stage)
        manifest.advance_progress(definition.end_weight)
        manifest.current_step = f"{job.stage.value} completed, starting {next_stage.value}"
        self.store.save(job.task_id, manifest)

        next_job = StageJob(
            task_id=job.task_id,
            stage=next_stage,
            url=job.url,
            options=job.options,
            input=result,
            attempt=1,
        )
        try:
            self.queue.enqueue(next_job)
        except Exception as e:
            logger.error(f"Failed to enqueue {next_stage.value} for {job.task_id}: {e}")
            self._fail_task(manifest, next_stage, f"Failed to enqueue {next_stage.value}: {e}", 1)
            return

        logger.info(f"Task {job.task_id}: {job.stage.value} -> {next_stage.value}")
        flow = self.tracker.get(job.task_id)
        previous = flow.overall_progress if flow else 0.0
        self.tracker.upsert(
            job.task_id,
            current_stage=next_stage,
            overall_progress=max(previous, float(definition.end_weight)),
            stage_progress=0.0,
            step=manifest.current_step,
            attempt=1,
        )
        self._publish_stage_complete(manifest, job, result)
        self._publish_status(manifest, next_stage)

    def _fail_stage(self, manifest: TaskManifest, job: StageJob, result: StageResult) -> None:
        definition = self.pipeline.definition(job.stage)
        error = result.error or "Unknown error"
        kind = classify_error(error, result.error_kind)

        if not is_retryable(definition, job.attempt, result):
            logger.warning(
                f"Not retrying {job.stage.value} for {job.task_id} "
                f"(attempt {job.attempt}/{definition.max_attempts}, {kind.value})"
            )
            self._fail_task(manifest, job.stage, error, job.attempt, kind.value)
            return

        retry_job = job.next_attempt()
        manifest.reset_for_retry(
            f"Retrying {job.stage.value} (attempt {retry_job.attempt}/{definition.max_attempts})"
        )
        self.store.save(job.task_id, manifest)

        delay = backoff_delay(self.settings.retry_backoff_seconds, retry_job.attempt)
        try:
            self.queue.enqueue(retry_job, delay_seconds=delay)
        except Exception as e:
            logger.error(f"Failed to enqueue retry of {job.stage.value} for {job.task_id}: {e}")
            self._fail_task(
                manifest,
                job.stage,
                f"{error} (retry could not be queued: {e})",
                retry_job.attempt,
            )
            return

        logger.warning(
            f"Retrying {job.stage.value} for {job.task_id} in {delay:.1f}s "
            f"(attempt {retry_job.attempt}/{definition.max_attempts}): {error}"
        )
        self.tracker.upsert(
            job.task_id,
            current_stage=job.stage,
            stage_progress=0.0,
            step=manifest.current_step,
            attempt=retry_job.attempt,
        )
        self._publish(
            job.task_id,
            EventType.STAGE_FAILED,
            {
                "failed_stage": job.stage.value,
                "status": manifest.status.value,
                "error": error,
                "error_kind": kind.value,
                "attempt": job.attempt,
                "will_retry": True,
            },
        )
        self._publish_status(manifest, job.stage)

    def _fail_task(
        self,
        manifest: TaskManifest,
        stage: Stage,
        error: str,
        attempt: int,
        error_kind: str | None = None,
    ) -> None:
        manifest.mark_failed(error, f"Failed at {stage.value}: {error}")
        self.store.save(manifest.task_id, manifest)
        logger.error(f"Task {manifest.task_id} failed at {stage.value}: {error}")
        self.tracker.upsert(manifest.task_id, step=manifest.current_step)
        self.tracker.mark_terminal(manifest.task_id, self.settings.failed_grace_seconds)
        self._publish(
            manifest.task_id,
            EventType.STAGE_FAILED,
            {
                "failed_stage": stage.value,
                "status": manifest.status.value,
                "error": manifest.error,
                "error_kind": error_kind,
                "attempt": attempt,
                "will_retry": False,
            },
        )
        self._publish_status(manifest, stage)

    def _apply_phase(
        self, task_id: str, stage: Stage, phase: TaskStatus, overall: float, step: str
    ) -> bool:
        """Persist a status change reported from inside a running stage."""
        definition = self.pipeline.definition(stage)
        if phase not in definition.statuses:
            logger.warning(f"Stage {stage.value} reported foreign phase {phase.value}")
            return False
        try:
            with self.store.lock(task_id):
                manifest = self.store.load(task_id)
                if manifest is None or manifest.status == phase:
                    return False
                owner = self.pipeline.stage_for_status(manifest.status)
                if owner not in (None, stage) or not self.pipeline.is_forward(
                    manifest.status, phase
                ):
                    return False
                manifest.status = phase
                manifest.current_step = step
                manifest.advance_progress(overall)
                self.store.save(task_id, manifest)
                self._publish_status(manifest, stage)
                return True
        except TaskNotFoundError:
            logger.debug(f"Ignoring phase {phase.value} for deleted task {task_id}")
            return False
        except ManifestIOError as e:
            logger.error(f"Could not persist phase {phase.value} for {task_id}: {e}")
            return False

    def _accepts(self, manifest: TaskManifest, job: StageJob) -> bool:
        """Reject events that no longer describe the task's current attempt."""
        if manifest.status.is_terminal:
            logger.warning(
                f"Ignoring {job.stage.value} event for {job.task_id}: "
                f"task already {manifest.status.value}"
            )
            return False
        owner = self.pipeline.stage_for_status(manifest.status)
        if owner is not None and owner != job.stage:
            logger.warning(
                f"Ignoring {job.stage.value} event for {job.task_id}: "
                f"task is {manifest.status.value}"
            )
            return False
        flow = self.tracker.get(job.task_id)
        if flow is not None and not flow.terminal:
            if flow.current_stage is not None and flow.current_stage != job.stage:
                logger.warning(f"Ignoring stale {job.stage.value} event for {job.task_id}")
                return False
            if flow.attempt is not None and flow.attempt != job.attempt:
                logger.warning(
                    f"Ignoring attempt {job.attempt} of {job.stage.value} for {job.task_id}; "
                    f"current attempt is {flow.attempt}"
                )
                return False
        return True

    # -- notifications --------------------------------------------------

    def _publish_stage_complete(
        self, manifest: TaskManifest, job: StageJob, result: StageResult
    ) -> None:
        self._publish(
            job.task_id,
            EventType.STAGE_COMPLETE,
            {
                "completed_stage": job.stage.value,
                "status": manifest.status.value,
                "progress": manifest.progress,
                "step": manifest.current_step,
                "files": result.files,
                "metadata": result.metadata,
            },
        )

    def _publish_status(self, manifest: TaskManifest, stage: Stage) -> None:
        self._publish(
            manifest.task_id,
            EventType.STATUS_CHANGE,
            {
                "status": manifest.status.value,
                "stage": stage.value,
                "progress": manifest.progress,
                "step": manifest.current_step,
            },
        )

    def _publish(self, task_id: str, event_type: EventType, payload: dict[str, Any]) -> None:
        try:
            self.sink.publish(task_id, event_type, payload)
        except Exception as e:
            logger.warning(f"Failed to publish {event_type.value} for {task_id}: {e}")

    def _throttle(self, task_id: str, stage: Stage) -> ProgressThrottle:
        with self._throttles_lock:
            key = (task_id, stage)
            if key not in self._throttles:
                self._throttles[key] = ProgressThrottle(
                    self.settings.progress_interval_ms / 1000.0, clock=self._clock
                )
            return self._throttles[key]

    def _drop_throttle(self, task_id: str, stage: Stage) -> None:
        with self._throttles_lock:
            self._throttles.pop((task_id, stage), None)
