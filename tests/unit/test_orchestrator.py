"""Tests for StageOrchestrator (the per-task state machine)."""

from ytflow.models.errors import ErrorKind
from ytflow.models.events import EventType
from ytflow.models.flow import StageJob
from ytflow.models.manifest import TaskStatus
from ytflow.models.stages import Stage
from ytflow.pipeline.orchestrator import StageOrchestrator
from ytflow.storage.manifest_store import MANIFEST_FILE

from tests.conftest import VALID_URL, failure_result, success_result


def _start(producer, recording_queue):
    handle = producer.create_flow(VALID_URL)
    return handle.task_id, recording_queue.pop()


def _finish_ok(orchestrator, pipeline, job):
    orchestrator.handle_started(job)
    orchestrator.handle_finished(job, success_result(job, pipeline))


class TestHandleStarted:
    def test_moves_pending_task_to_stage_status(self, orchestrator, store, tracker):
        store.create("t1")
        tracker.upsert("t1", attempt=1)
        job = StageJob(task_id="t1", stage=Stage.DOWNLOAD, url=VALID_URL)
        orchestrator.handle_started(job)
        assert store.load("t1").status == TaskStatus.DOWNLOADING
        assert tracker.get("t1").current_stage == Stage.DOWNLOAD

    def test_does_not_move_status_backwards(self, orchestrator, producer, recording_queue, store):
        task_id, job = _start(producer, recording_queue)
        orchestrator.handle_progress(task_id, Stage.DOWNLOAD, 10, "dl")
        orchestrator.handle_started(job)
        assert store.load(task_id).status == TaskStatus.DOWNLOADING

    def test_unknown_task_ignored(self, orchestrator, store):
        orchestrator.handle_started(StageJob(task_id="ghost", stage=Stage.DOWNLOAD, url=VALID_URL))
        assert not store.exists("ghost")


class TestHandleProgress:
    def test_updates_tracker_not_manifest(
        self, orchestrator, producer, recording_queue, store, tracker
    ):
        task_id, job = _start(producer, recording_queue)
        orchestrator.handle_started(job)
        before = (store.base_dir / task_id / MANIFEST_FILE).read_text()

        orchestrator.handle_progress(task_id, Stage.DOWNLOAD, 40, "Downloading 40%")

        flow = tracker.get(task_id)
        assert flow.overall_progress == 10.0
        assert flow.stage_progress == 40
        assert flow.step == "Downloading 40%"
        assert (store.base_dir / task_id / MANIFEST_FILE).read_text() == before

    def test_progress_is_monotonic(self, orchestrator, producer, recording_queue, tracker):
        task_id, job = _start(producer, recording_queue)
        orchestrator.handle_progress(task_id, Stage.DOWNLOAD, 80, "a")
        orchestrator.handle_progress(task_id, Stage.DOWNLOAD, 20, "b")
        assert tracker.get(task_id).overall_progress == 20.0

    def test_notifications_are_throttled(
        self, orchestrator, producer, recording_queue, sink, clock
    ):
        task_id, _ = _start(producer, recording_queue)
        for i in range(10):
            orchestrator.handle_progress(task_id, Stage.DOWNLOAD, i * 10, "dl")
            clock.advance(0.01)
        assert len(sink.of_type(EventType.PROGRESS, task_id)) == 1
        clock.advance(0.2)
        orchestrator.handle_progress(task_id, Stage.DOWNLOAD, 95, "dl")
        events = sink.of_type(EventType.PROGRESS, task_id)
        assert len(events) == 2
        assert events[-1]["progress"] == 23.75

    def test_stale_attempt_ignored(self, orchestrator, producer, recording_queue, tracker):
        task_id, _ = _start(producer, recording_queue)
        tracker.upsert(task_id, attempt=2)
        orchestrator.handle_progress(task_id, Stage.DOWNLOAD, 90, "late", attempt=1)
        assert tracker.get(task_id).overall_progress == 0.0

    def test_other_stage_ignored(self, orchestrator, producer, recording_queue, tracker):
        task_id, _ = _start(producer, recording_queue)
        orchestrator.handle_progress(task_id, Stage.SUMMARIZATION, 50, "wrong")
        assert tracker.get(task_id).overall_progress == 0.0

    def test_unknown_task_ignored(self, orchestrator, tracker):
        orchestrator.handle_progress("ghost", Stage.DOWNLOAD, 50, "x")
        assert tracker.get("ghost") is None

    def test_phase_persists_status(
        self, orchestrator, producer, recording_queue, pipeline, store, sink
    ):
        task_id, job = _start(producer, recording_queue)
        _finish_ok(orchestrator, pipeline, job)
        audio_job = recording_queue.pop()
        orchestrator.handle_started(audio_job)

        orchestrator.handle_progress(
            task_id, Stage.AUDIO_PROCESSING, 50, "Transcribing", phase=TaskStatus.TRANSCRIBING
        )

        manifest = store.load(task_id)
        assert manifest.status == TaskStatus.TRANSCRIBING
        assert manifest.progress == 55
        statuses = [e["status"] for e in sink.of_type(EventType.STATUS_CHANGE, task_id)]
        assert statuses[-1] == "transcribing"

    def test_phase_never_moves_backwards(
        self, orchestrator, producer, recording_queue, pipeline, store
    ):
        task_id, job = _start(producer, recording_queue)
        _finish_ok(orchestrator, pipeline, job)
        orchestrator.handle_started(recording_queue.pop())
        orchestrator.handle_progress(
            task_id, Stage.AUDIO_PROCESSING, 60, "t", phase=TaskStatus.TRANSCRIBING
        )
        orchestrator.handle_progress(
            task_id, Stage.AUDIO_PROCESSING, 61, "e", phase=TaskStatus.EXTRACTING
        )
        assert store.load(task_id).status == TaskStatus.TRANSCRIBING

    def test_foreign_phase_rejected(self, orchestrator, producer, recording_queue, store):
        task_id, _ = _start(producer, recording_queue)
        orchestrator.handle_progress(
            task_id, Stage.DOWNLOAD, 10, "x", phase=TaskStatus.SUMMARIZING
        )
        assert store.load(task_id).status == TaskStatus.DOWNLOADING


class TestStageSuccess:
    def test_advances_to_next_stage(
        self, orchestrator, producer, recording_queue, pipeline, store, tracker, sink
    ):
        task_id, job = _start(producer, recording_queue)
        result = success_result(job, pipeline)
        orchestrator.handle_started(job)
        orchestrator.handle_finished(job, result)

        manifest = store.load(task_id)
        assert manifest.status == TaskStatus.EXTRACTING
        assert manifest.progress == 25
        assert manifest.files == result.files
        assert manifest.finished_at is None

        assert len(recording_queue) == 1
        next_job, delay = recording_queue.jobs[0]
        assert next_job.stage == Stage.AUDIO_PROCESSING
        assert next_job.input == result
        assert next_job.attempt == 1
        assert delay == 0.0

        flow = tracker.get(task_id)
        assert flow.current_stage == Stage.AUDIO_PROCESSING
        assert flow.overall_progress == 25.0
        assert sink.of_type(EventType.STAGE_COMPLETE, task_id)[0]["completed_stage"] == "download"

    def test_files_accumulate_across_stages(
        self, orchestrator, producer, recording_queue, pipeline, store
    ):
        task_id, job = _start(producer, recording_queue)
        _finish_ok(orchestrator, pipeline, job)
        _finish_ok(orchestrator, pipeline, recording_queue.pop())
        files = store.load(task_id).files
        assert "original.mp4" in files
        assert "transcription.json" in files
        assert store.load(task_id).status == TaskStatus.SUMMARIZING

    def test_final_stage_completes_task(
        self, orchestrator, producer, recording_queue, pipeline, store, tracker, sink
    ):
        task_id, job = _start(producer, recording_queue)
        for _ in range(3):
            _finish_ok(orchestrator, pipeline, job)
            if recording_queue.jobs:
                job = recording_queue.pop()

        manifest = store.load(task_id)
        assert manifest.status == TaskStatus.COMPLETED
        assert manifest.progress == 100
        assert manifest.finished_at is not None
        assert "summary.json" in manifest.files
        assert len(recording_queue) == 0

        assert tracker.count() == 0
        assert tracker.get(task_id).terminal
        complete = sink.of_type(EventType.COMPLETE, task_id)
        assert len(complete) == 1
        assert complete[0]["progress"] == 100

    def test_completed_entry_expires_after_grace(
        self, orchestrator, producer, recording_queue, pipeline, tracker, clock, settings
    ):
        task_id, job = _start(producer, recording_queue)
        for _ in range(3):
            _finish_ok(orchestrator, pipeline, job)
            if recording_queue.jobs:
                job = recording_queue.pop()
        clock.advance(settings.completed_grace_seconds + 1)
        assert tracker.get(task_id) is None

    def test_duplicate_delivery_ignored(
        self, orchestrator, producer, recording_queue, pipeline, store
    ):
        task_id, job = _start(producer, recording_queue)
        result = success_result(job, pipeline)
        orchestrator.handle_finished(job, result)
        orchestrator.handle_finished(job, result)
        assert len(recording_queue) == 1
        assert store.load(task_id).status == TaskStatus.EXTRACTING

    def test_result_after_completion_ignored(
        self, orchestrator, producer, recording_queue, pipeline, store
    ):
        task_id, job = _start(producer, recording_queue)
        first_job = job
        for _ in range(3):
            _finish_ok(orchestrator, pipeline, job)
            if recording_queue.jobs:
                job = recording_queue.pop()
        late = failure_result(first_job, "late", ErrorKind.TRANSIENT)
        orchestrator.handle_finished(first_job, late)
        assert store.load(task_id).status == TaskStatus.COMPLETED

    def test_enqueue_failure_fails_task(
        self, orchestrator, producer, recording_queue, pipeline, store, tracker
    ):
        task_id, job = _start(producer, recording_queue)
        recording_queue.fail_next = True
        orchestrator.handle_finished(job, success_result(job, pipeline))
        manifest = store.load(task_id)
        assert manifest.status == TaskStatus.FAILED
        assert "audio-processing" in manifest.error
        assert tracker.count() == 0

    def test_mismatched_result_ignored(self, orchestrator, producer, recording_queue, store):
        task_id, job = _start(producer, recording_queue)
        other = job.model_copy(update={"stage": Stage.SUMMARIZATION})
        orchestrator.handle_finished(job, failure_result(other, "x"))
        assert store.load(task_id).status == TaskStatus.DOWNLOADING
        assert len(recording_queue) == 0


class TestStageFailure:
    def test_non_retryable_fails_task(
        self, orchestrator, producer, recording_queue, store, tracker, sink
    ):
        task_id, job = _start(producer, recording_queue)
        orchestrator.handle_started(job)
        orchestrator.handle_finished(job, failure_result(job, "Invalid YouTube URL"))

        manifest = store.load(task_id)
        assert manifest.status == TaskStatus.FAILED
        assert "Invalid YouTube URL" in manifest.error
        assert manifest.finished_at is not None
        assert len(recording_queue) == 0
        assert tracker.count() == 0
        failed = sink.of_type(EventType.STAGE_FAILED, task_id)
        assert failed[-1]["will_retry"] is False

    def test_retryable_failure_requeues_same_stage(
        self, orchestrator, producer, recording_queue, pipeline, store, tracker, sink
    ):
        task_id, job = _start(producer, recording_queue)
        _finish_ok(orchestrator, pipeline, job)
        audio_job = recording_queue.pop()
        orchestrator.handle_started(audio_job)

        orchestrator.handle_finished(
            audio_job, failure_result(audio_job, "Connection reset", ErrorKind.TRANSIENT)
        )

        manifest = store.load(task_id)
        assert manifest.status == TaskStatus.PENDING
        assert manifest.error is None
        assert manifest.finished_at is None
        assert len(recording_queue) == 1
        retry_job, delay = recording_queue.jobs[0]
        assert retry_job.stage == Stage.AUDIO_PROCESSING
        assert retry_job.attempt == 2
        assert retry_job.input == audio_job.input
        assert delay == 2.0
        assert tracker.get(task_id).attempt == 2
        assert sink.of_type(EventType.STAGE_FAILED, task_id)[-1]["will_retry"] is True

        recording_queue.pop()
        orchestrator.handle_started(retry_job)
        assert store.load(task_id).status == TaskStatus.EXTRACTING
        orchestrator.handle_finished(retry_job, success_result(retry_job, pipeline))
        assert store.load(task_id).status == TaskStatus.SUMMARIZING
        assert recording_queue.jobs[0][0].stage == Stage.SUMMARIZATION

    def test_attempts_exhausted(self, orchestrator, producer, recording_queue, pipeline, store):
        task_id, job = _start(producer, recording_queue)
        _finish_ok(orchestrator, pipeline, job)
        audio_job = recording_queue.pop()
        orchestrator.handle_finished(
            audio_job, failure_result(audio_job, "flaky", ErrorKind.TRANSIENT)
        )
        retry_job = recording_queue.pop()
        orchestrator.handle_finished(
            retry_job, failure_result(retry_job, "flaky again", ErrorKind.TRANSIENT)
        )

        manifest = store.load(task_id)
        assert manifest.status == TaskStatus.FAILED
        assert manifest.error == "flaky again"
        assert len(recording_queue) == 0

    def test_stale_attempt_result_ignored(
        self, orchestrator, producer, recording_queue, pipeline, store
    ):
        task_id, job = _start(producer, recording_queue)
        orchestrator.handle_finished(job, failure_result(job, "net", ErrorKind.TRANSIENT))
        assert len(recording_queue) == 1
        orchestrator.handle_finished(job, success_result(job, pipeline))
        assert store.load(task_id).status == TaskStatus.PENDING
        assert len(recording_queue) == 1

    def test_timeout_is_retried(self, orchestrator, producer, recording_queue, store):
        task_id, job = _start(producer, recording_queue)
        orchestrator.handle_finished(job, failure_result(job, "timed out", ErrorKind.TIMEOUT))
        assert store.load(task_id).status == TaskStatus.PENDING
        assert recording_queue.jobs[0][0].attempt == 2


class TestResilience:
    def test_corrupt_manifest_left_untouched(
        self, orchestrator, producer, recording_queue, pipeline, store
    ):
        task_id, job = _start(producer, recording_queue)
        path = store.base_dir / task_id / MANIFEST_FILE
        path.write_text("{broken")
        orchestrator.handle_finished(job, success_result(job, pipeline))
        assert path.read_text() == "{broken"
        assert len(recording_queue) == 0

    def test_deleted_task_ignored(self, orchestrator, producer, recording_queue, pipeline, store):
        task_id, job = _start(producer, recording_queue)
        orchestrator.handle_started(job)
        orchestrator.handle_progress(task_id, job.stage, 40, "Downloading 40%")
        producer.delete_task(task_id)
        orchestrator.handle_finished(job, success_result(job, pipeline))
        assert not store.exists(task_id)
        assert len(recording_queue) == 0
        assert not store.task_dir(task_id).exists()
        assert orchestrator._throttles == {}

    def test_failing_sink_does_not_block_transitions(
        self, store, tracker, pipeline, recording_queue, settings, clock, producer
    ):
        class BrokenSink:
            def publish(self, task_id, event_type, payload):
                raise RuntimeError("sink down")

        orchestrator = StageOrchestrator(
            store, tracker, pipeline, recording_queue, BrokenSink(), settings=settings, clock=clock
        )
        task_id, job = _start(producer, recording_queue)
        orchestrator.handle_finished(job, success_result(job, pipeline))
        assert store.load(task_id).status == TaskStatus.EXTRACTING
