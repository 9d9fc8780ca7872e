"""Tests for FlowCoordinator wiring and read paths."""

import os
import time

import pytest

from ytflow.models.errors import TaskNotFoundError
from ytflow.models.stages import Stage
from ytflow.notifications.broadcaster import CompositeSink
from ytflow.pipeline.coordinator import build_coordinator, default_processors
from ytflow.pipeline.queues import LocalStageQueue
from ytflow.processors.audio import AudioProcessor
from ytflow.processors.download import DownloadProcessor
from ytflow.processors.summarize import SummarizationProcessor
from ytflow.storage.manifest_store import MANIFEST_FILE, ManifestStore

from tests.conftest import VALID_URL, RecordingQueue, make_settings


@pytest.fixture
def coordinator(tmp_path):
    coordinator = build_coordinator(make_settings(tmp_path), queue=RecordingQueue())
    coordinator.start()
    return coordinator


class TestBuildCoordinator:
    def test_default_processors(self, settings):
        processors = default_processors(settings)
        assert isinstance(processors[Stage.DOWNLOAD], DownloadProcessor)
        assert isinstance(processors[Stage.AUDIO_PROCESSING], AudioProcessor)
        assert isinstance(processors[Stage.SUMMARIZATION], SummarizationProcessor)

    def test_local_backend(self, settings):
        coordinator = build_coordinator(settings)
        try:
            assert isinstance(coordinator.queue, LocalStageQueue)
            assert coordinator.queue.handler is coordinator.orchestrator
            assert isinstance(coordinator.orchestrator.sink, CompositeSink)
        finally:
            coordinator.shutdown(wait=False)

    def test_local_queue_requires_every_processor(self, settings):
        with pytest.raises(ValueError, match="No processor registered"):
            build_coordinator(settings, processors={Stage.DOWNLOAD: DownloadProcessor(settings)})


class TestTaskStatus:
    def test_merges_live_progress(self, coordinator):
        task_id = coordinator.producer.create_flow(VALID_URL).task_id
        coordinator.tracker.upsert(task_id, overall_progress=12.5, stage_progress=50.0)
        status = coordinator.task_status(task_id)
        assert status["progress"] == 12
        assert status["current_stage"] == "download"
        assert status["stage_progress"] == 50.0
        assert status["status"] == "downloading"

    def test_unknown_task(self, coordinator):
        with pytest.raises(TaskNotFoundError):
            coordinator.task_status("task_missing")

    def test_list_newest_first(self, coordinator):
        first = coordinator.producer.create_flow(VALID_URL).task_id
        time.sleep(0.01)
        second = coordinator.producer.create_flow(VALID_URL).task_id
        assert [t["task_id"] for t in coordinator.list_tasks()] == [second, first]

    def test_list_skips_unreadable_manifests(self, coordinator):
        task_id = coordinator.producer.create_flow(VALID_URL).task_id
        (coordinator.store.task_dir(task_id) / MANIFEST_FILE).write_text("{broken")
        assert coordinator.list_tasks() == []


class TestCleanup:
    def _age(self, coordinator, task_id, hours):
        path = coordinator.store.task_dir(task_id) / MANIFEST_FILE
        old = time.time() - hours * 3600
        os.utime(path, (old, old))

    def test_active_flows_are_kept(self, coordinator):
        active = coordinator.producer.create_flow(VALID_URL).task_id
        finished = coordinator.producer.create_flow(VALID_URL).task_id
        coordinator.producer.delete_task(finished)
        coordinator.store.create(finished)
        self._age(coordinator, active, 48)
        self._age(coordinator, finished, 48)

        assert coordinator.cleanup_old_tasks() == 1
        assert coordinator.store.exists(active)
        assert not coordinator.store.exists(finished)


class TestStart:
    def test_corrupt_manifest_does_not_block_start(self, tmp_path):
        settings = make_settings(tmp_path, resume_on_start=True)
        store = ManifestStore(settings.storage_dir)
        store.create("task_bad")
        (store.task_dir("task_bad") / MANIFEST_FILE).write_text("{not json")

        queue = RecordingQueue()
        coordinator = build_coordinator(settings, queue=queue)
        coordinator.start()

        task_id = coordinator.producer.create_flow(VALID_URL).task_id
        assert coordinator.task_status(task_id)["status"] == "downloading"
        assert coordinator.producer.active_flow_count() == 1
