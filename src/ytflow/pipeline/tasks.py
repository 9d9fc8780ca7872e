"""Celery task definitions and the Celery-backed stage queue."""

import logging
import uuid
from concurrent.futures import ThreadPoolExecutor

from celery import Celery
from celery.exceptions import SoftTimeLimitExceeded, TimeLimitExceeded
from celery.result import AsyncResult

from ytflow.config import get_settings
from ytflow.models.errors import ErrorKind
from ytflow.models.flow import StageJob, StageResult
from ytflow.models.manifest import TaskStatus
from ytflow.models.stages import Pipeline
from ytflow.pipeline.queues import StageEventHandler
from ytflow.pipeline.runner import TIMEOUT_ERRORS, execute_stage, failed_result

logger = logging.getLogger(__name__)

settings = get_settings()

celery_app = Celery(
    "ytflow",
    broker=settings.celery_broker_url,
    backend=settings.celery_result_backend,
)
celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_acks_late=True,
    worker_prefetch_multiplier=1,
)


@celery_app.task(bind=True, name="ytflow.run_stage")
def run_stage_task(self, job_data: dict) -> dict:
    """Run one stage attempt in a worker and return its StageResult."""
    from ytflow.pipeline.coordinator import default_processors
    from ytflow.pipeline.stages import build_pipeline
    from ytflow.storage.manifest_store import ManifestStore

    worker_settings = get_settings()
    job = StageJob.model_validate(job_data)
    pipeline = build_pipeline(worker_settings)
    store = ManifestStore(worker_settings.storage_dir)
    processor = default_processors(worker_settings)[job.stage]

    def on_progress(local_progress: float, step: str, phase: TaskStatus | None = None) -> None:
        self.update_state(
            state="PROGRESS",
            meta={
                "local_progress": local_progress,
                "step": step,
                "phase": phase.value if phase else None,
            },
        )

    result = execute_stage(
        job,
        processor,
        pipeline,
        store.task_dir(job.task_id),
        on_progress,
        timeout_errors=TIMEOUT_ERRORS + (SoftTimeLimitExceeded,),
    )
    return result.model_dump(mode="json")


class CeleryStageQueue:
    """Dispatches stage jobs to Celery workers, one Celery queue per stage.

    Workers only run processors. Their progress and results travel back
    through the result backend to a watcher thread in this process, which
    hands them to the orchestrator, so flow state stays in one place.
    """

    def __init__(
        self,
        pipeline: Pipeline,
        handler: StageEventHandler | None = None,
        watcher_threads: int | None = None,
    ):
        self.pipeline = pipeline
        self.handler = handler
        self._watchers = ThreadPoolExecutor(
            max_workers=watcher_threads or settings.max_concurrent_flows * 2,
            thread_name_prefix="ytflow-watch",
        )

    def bind(self, handler: StageEventHandler) -> None:
        self.handler = handler

    def enqueue(self, job: StageJob, delay_seconds: float = 0.0) -> None:
        if self.handler is None:
            raise RuntimeError("CeleryStageQueue has no event handler bound")
        definition = self.pipeline.definition(job.stage)
        async_result = run_stage_task.apply_async(
            args=[job.model_dump(mode="json")],
            task_id=f"{job.job_id}-{uuid.uuid4().hex[:8]}",
            queue=definition.queue,
            priority=job.options.priority_value,
            countdown=delay_seconds or None,
            soft_time_limit=definition.timeout_seconds,
            time_limit=definition.timeout_seconds + 30,
        )
        logger.info(f"Dispatched {job.job_id} to Celery queue {definition.queue}")
        self._watchers.submit(self._watch, job, async_result)

    def shutdown(self, wait: bool = True) -> None:
        self._watchers.shutdown(wait=wait, cancel_futures=not wait)

    def _watch(self, job: StageJob, async_result: AsyncResult) -> None:
        handler = self.handler
        started = False

        def on_message(body: dict) -> None:
            nonlocal started
            status = body.get("status")
            if status in ("STARTED", "PROGRESS") and not started:
                started = True
                handler.handle_started(job)
            if status == "PROGRESS":
                meta = body.get("result") or {}
                phase = meta.get("phase")
                handler.handle_progress(
                    job.task_id,
                    job.stage,
                    meta.get("local_progress", 0.0),
                    meta.get("step", ""),
                    phase=TaskStatus(phase) if phase else None,
                    attempt=job.attempt,
                )

        try:
            payload = async_result.get(on_message=on_message, propagate=False)
            if async_result.successful():
                result = StageResult.model_validate(payload)
            elif isinstance(payload, TimeLimitExceeded):
                result = failed_result(
                    job, f"Stage {job.stage.value} hit its hard time limit", ErrorKind.TIMEOUT
                )
            else:
                result = failed_result(job, f"Stage worker error: {payload}", ErrorKind.UNKNOWN)
            if not started:
                handler.handle_started(job)
            handler.handle_finished(job, result)
        except Exception:
            logger.exception(f"Lost track of Celery job {job.job_id}")
        finally:
            async_result.forget()
