"""Stage queues: where stage jobs wait for a worker."""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Protocol

from ytflow.models.errors import ErrorKind, StageCancelled
from ytflow.models.flow import StageJob, StageResult
from ytflow.models.manifest import TaskStatus
from ytflow.models.stages import Pipeline, Stage
from ytflow.pipeline.runner import execute_stage, failed_result
from ytflow.processors.base import StageProcessor
from ytflow.storage.manifest_store import ManifestStore

logger = logging.getLogger(__name__)


class StageQueue(Protocol):
    def enqueue(self, job: StageJob, delay_seconds: float = 0.0) -> None: ...


class StageEventHandler(Protocol):
    """Receiver of stage lifecycle events (the orchestrator)."""

    def handle_started(self, job: StageJob) -> None: ...

    def handle_progress(
        self,
        task_id: str,
        stage: Stage,
        local_progress: float,
        step: str,
        phase: TaskStatus | None = None,
        attempt: int | None = None,
    ) -> None: ...

    def handle_finished(self, job: StageJob, result: StageResult) -> None: ...


class LocalStageQueue:
    """In-process queue with one worker pool per stage.

    Pool sizes come from each stage's ``concurrency``. Delayed jobs (retries)
    wait on a timer before entering their pool. An attempt that outlives its
    stage timeout is reported as a ``timeout`` failure. The abandoned attempt
    is stopped at its next progress report, which kills any child process it
    is streaming; whatever it returns afterwards is dropped.
    Job priority is not applied: each pool is first-in, first-out.
    """

    def __init__(
        self,
        pipeline: Pipeline,
        processors: dict[Stage, StageProcessor],
        store: ManifestStore,
        handler: StageEventHandler | None = None,
        stop_grace_seconds: float = 2.0,
    ):
        missing = [stage.value for stage in pipeline.stages if stage not in processors]
        if missing:
            raise ValueError(f"No processor registered for: {', '.join(missing)}")
        self.pipeline = pipeline
        self.processors = processors
        self.store = store
        self.handler = handler
        self.stop_grace_seconds = stop_grace_seconds
        self._pools = {
            d.stage: ThreadPoolExecutor(
                max_workers=d.concurrency, thread_name_prefix=f"ytflow-{d.queue}"
            )
            for d in pipeline
        }
        self._timers: set[threading.Timer] = set()
        self._lock = threading.Lock()
        self._closed = False

    def bind(self, handler: StageEventHandler) -> None:
        self.handler = handler

    def enqueue(self, job: StageJob, delay_seconds: float = 0.0) -> None:
        if self.handler is None:
            raise RuntimeError("LocalStageQueue has no event handler bound")
        with self._lock:
            if self._closed:
                raise RuntimeError("LocalStageQueue is shut down")
            if delay_seconds > 0:
                timer = threading.Timer(delay_seconds, self._release, args=(job,))
                timer.daemon = True
                self._timers.add(timer)
                timer.start()
                logger.debug(f"Job {job.job_id} delayed by {delay_seconds:.1f}s")
                return
            self._submit(job)

    def shutdown(self, wait: bool = True) -> None:
        with self._lock:
            self._closed = True
            for timer in self._timers:
                timer.cancel()
            self._timers.clear()
        for pool in self._pools.values():
            pool.shutdown(wait=wait, cancel_futures=not wait)

    def _release(self, job: StageJob) -> None:
        with self._lock:
            self._timers.discard(threading.current_thread())
            if self._closed:
                return
            self._submit(job)

    def _submit(self, job: StageJob) -> None:
        self._pools[job.stage].submit(self._run, job)
        logger.debug(f"Queued {job.job_id} on {self.pipeline.definition(job.stage).queue}")

    def _run(self, job: StageJob) -> None:
        handler = self.handler
        definition = self.pipeline.definition(job.stage)
        abandoned = threading.Event()
        outcome: dict[str, StageResult] = {}

        def on_progress(local_progress: float, step: str, phase: TaskStatus | None = None) -> None:
            if abandoned.is_set():
                raise StageCancelled(f"{job.job_id} was abandoned after its time limit")
            try:
                handler.handle_progress(
                    job.task_id, job.stage, local_progress, step, phase=phase, attempt=job.attempt
                )
            except Exception as e:
                logger.warning(f"Progress handling failed for {job.job_id}: {e}")

        def work() -> None:
            outcome["result"] = execute_stage(
                job,
                self.processors[job.stage],
                self.pipeline,
                self.store.task_dir(job.task_id),
                on_progress,
            )

        try:
            handler.handle_started(job)
            worker = threading.Thread(target=work, name=f"ytflow-{job.job_id}", daemon=True)
            worker.start()
            worker.join(definition.timeout_seconds)
            if worker.is_alive():
                abandoned.set()
                logger.warning(
                    f"{job.job_id} exceeded {definition.timeout_seconds}s; abandoning attempt"
                )
                worker.join(self.stop_grace_seconds)
                result = failed_result(
                    job,
                    f"Stage {job.stage.value} timed out after {definition.timeout_seconds}s",
                    ErrorKind.TIMEOUT,
                )
            else:
                result = outcome.get("result") or failed_result(
                    job, f"Stage {job.stage.value} produced no result", ErrorKind.UNKNOWN
                )
            handler.handle_finished(job, result)
        except Exception:
            logger.exception(f"Unhandled error while running {job.job_id}")
