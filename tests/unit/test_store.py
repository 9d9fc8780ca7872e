"""Tests for ManifestStore."""

import os
import threading
import time

import pytest

from ytflow.models.errors import ManifestIOError, TaskNotFoundError, ValidationError
from ytflow.models.flow import FlowOptions, FlowRequest
from ytflow.models.manifest import TaskStatus
from ytflow.storage.manifest_store import MANIFEST_FILE, ManifestStore


class TestManifestStore:
    def test_create_and_load(self, store):
        created = store.create("task_a")
        assert store.exists("task_a")
        loaded = store.load("task_a")
        assert loaded == created
        assert (store.base_dir / "task_a" / MANIFEST_FILE).exists()

    def test_create_twice_fails(self, store):
        store.create("task_a")
        with pytest.raises(ValidationError):
            store.create("task_a")

    def test_load_missing(self, store):
        assert store.load("nope") is None
        assert not store.exists("nope")

    def test_save_overwrites(self, store):
        manifest = store.create("task_a")
        manifest.status = TaskStatus.DOWNLOADING
        manifest.merge_files({"original.mp4": "/x"})
        store.save("task_a", manifest)
        loaded = store.load("task_a")
        assert loaded.status == TaskStatus.DOWNLOADING
        assert loaded.files == {"original.mp4": "/x"}

    def test_save_rejects_mismatched_id(self, store):
        manifest = store.create("task_a")
        with pytest.raises(ManifestIOError):
            store.save("task_b", manifest)

    def test_save_leaves_no_temp_files(self, store):
        manifest = store.create("task_a")
        store.save("task_a", manifest)
        leftovers = [p for p in (store.base_dir / "task_a").iterdir() if p.suffix == ".tmp"]
        assert leftovers == []

    @pytest.mark.parametrize("task_id", ["", "../escape", ".hidden", "a/b"])
    def test_rejects_unsafe_ids(self, store, task_id):
        with pytest.raises(ValidationError):
            store.task_dir(task_id)

    def test_corrupt_manifest(self, store):
        store.create("task_a")
        (store.base_dir / "task_a" / MANIFEST_FILE).write_text("{not json")
        with pytest.raises(ManifestIOError):
            store.load("task_a")

    def test_request_roundtrip(self, store):
        store.create("task_a")
        request = FlowRequest(
            url="https://youtu.be/dQw4w9WgXcQ", options=FlowOptions(priority="high")
        )
        store.save_request("task_a", request)
        assert store.load_request("task_a") == request
        assert store.load_request("missing") is None

    def test_delete(self, store):
        store.create("task_a")
        assert store.delete("task_a")
        assert not store.exists("task_a")
        assert not store.delete("task_a")

    def test_list_task_ids(self, store):
        store.create("task_b")
        store.create("task_a")
        (store.base_dir / "stray").mkdir()
        assert store.list_task_ids() == ["task_a", "task_b"]

    def test_list_files_hides_dotfiles(self, store):
        store.create("task_a")
        with store.lock("task_a"):
            pass
        (store.base_dir / "task_a" / "original.mp4").write_bytes(b"1234")
        names = {f["filename"] for f in store.list_files("task_a")}
        assert names == {MANIFEST_FILE, "original.mp4"}

    def test_cleanup_older_than(self, store):
        store.create("old")
        store.create("new")
        store.create("active")
        stale = time.time() - 48 * 3600
        for task_id in ("old", "active"):
            path = store.base_dir / task_id / MANIFEST_FILE
            os.utime(path, (stale, stale))
        removed = store.cleanup_older_than(24, exclude=["active"])
        assert removed == 1
        assert store.list_task_ids() == ["active", "new"]

    def test_lock_serializes_writers(self, store):
        store.create("task_a")
        inside = []
        overlap = []

        def writer(n):
            with store.lock("task_a"):
                if inside:
                    overlap.append(n)
                inside.append(n)
                manifest = store.load("task_a")
                manifest.merge_files({f"file_{n}": str(n)})
                time.sleep(0.005)
                store.save("task_a", manifest)
                inside.remove(n)

        threads = [threading.Thread(target=writer, args=(n,)) for n in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert overlap == []
        assert len(store.load("task_a").files) == 8

    def test_lock_shared_across_store_instances(self, store):
        store.create("task_a")
        other = ManifestStore(store.base_dir)
        acquired = threading.Event()

        def contender():
            with other.lock("task_a"):
                acquired.set()

        with store.lock("task_a"):
            thread = threading.Thread(target=contender)
            thread.start()
            assert not acquired.wait(0.1)
        thread.join(2)
        assert acquired.is_set()

    def test_lock_does_not_recreate_deleted_task(self, store):
        store.create("task_a")
        store.delete("task_a")
        with pytest.raises(TaskNotFoundError):
            with store.lock("task_a"):
                pass
        assert not store.task_dir("task_a").exists()
