"""Task manifest persistence (one JSON record per task directory)."""

import fcntl
import logging
import os
import shutil
import tempfile
import threading
import time
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from pathlib import Path

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from ytflow.config import get_settings
from ytflow.models.errors import ManifestIOError, TaskNotFoundError, ValidationError
from ytflow.models.flow import FlowRequest
from ytflow.models.manifest import TaskManifest

logger = logging.getLogger(__name__)

MANIFEST_FILE = "manifest.json"
REQUEST_FILE = "request.json"
LOCK_FILE = ".manifest.lock"


class ManifestStore:
    """Durable read/modify/write of task manifests.

    There is no partial-update primitive: writers load, merge and save the
    whole record. Callers that mutate a manifest must do so inside
    ``lock(task_id)``, which serializes writers both within this process and
    across worker processes sharing the same storage directory.
    """

    def __init__(self, base_dir: Path | None = None):
        self.base_dir = Path(base_dir or get_settings().storage_dir).resolve()
        self.base_dir.mkdir(parents=True, exist_ok=True)
        self._locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def task_dir(self, task_id: str) -> Path:
        if not task_id or "/" in task_id or task_id.startswith("."):
            raise ValidationError(f"Invalid task id: {task_id!r}")
        return self.base_dir / task_id

    def exists(self, task_id: str) -> bool:
        return (self.task_dir(task_id) / MANIFEST_FILE).exists()

    def create(self, task_id: str) -> TaskManifest:
        """Create the task directory and a default pending manifest."""
        if self.exists(task_id):
            raise ValidationError(f"Task {task_id} already exists")
        manifest = TaskManifest(task_id=task_id)
        self.save(task_id, manifest)
        return manifest

    def load(self, task_id: str) -> TaskManifest | None:
        """Load a manifest, or None when the task has none."""
        path = self.task_dir(task_id) / MANIFEST_FILE
        if not path.exists():
            return None
        return self._read_model(path, TaskManifest)

    def save(self, task_id: str, manifest: TaskManifest) -> Path:
        """Overwrite the manifest atomically."""
        if manifest.task_id != task_id:
            raise ManifestIOError(
                f"Manifest for {manifest.task_id} cannot be saved under {task_id}",
                details={"task_id": task_id},
            )
        return self._write_model(self.task_dir(task_id) / MANIFEST_FILE, manifest)

    def save_request(self, task_id: str, request: FlowRequest) -> Path:
        return self._write_model(self.task_dir(task_id) / REQUEST_FILE, request)

    def load_request(self, task_id: str) -> FlowRequest | None:
        path = self.task_dir(task_id) / REQUEST_FILE
        if not path.exists():
            return None
        return self._read_model(path, FlowRequest)

    @contextmanager
    def lock(self, task_id: str) -> Iterator[None]:
        """Per-task critical section for load-merge-save cycles.

        Raises ``TaskNotFoundError`` once the task directory is gone, so late
        events for a deleted task never recreate it.
        """
        task_dir = self.task_dir(task_id)
        if not task_dir.is_dir():
            raise TaskNotFoundError(task_id)
        with self._locks_guard:
            thread_lock = self._locks.setdefault(task_id, threading.Lock())
        with thread_lock:
            if not task_dir.is_dir():
                raise TaskNotFoundError(task_id)
            try:
                handle = open(task_dir / LOCK_FILE, "a+")
            except FileNotFoundError:
                raise TaskNotFoundError(task_id)
            except OSError as e:
                raise ManifestIOError(
                    f"Cannot lock manifest for {task_id}: {e}", details={"task_id": task_id}
                )
            try:
                fcntl.flock(handle.fileno(), fcntl.LOCK_EX)
                yield
            finally:
                fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
                handle.close()

    def delete(self, task_id: str) -> bool:
        """Delete a task's directory and everything in it."""
        task_dir = self.task_dir(task_id)
        with self._locks_guard:
            self._locks.pop(task_id, None)
        if not task_dir.exists():
            return False
        try:
            shutil.rmtree(task_dir)
        except OSError as e:
            raise ManifestIOError(f"Failed to delete task {task_id}: {e}")
        logger.info(f"Deleted all data for task {task_id}")
        return True

    def list_task_ids(self) -> list[str]:
        """List task IDs that have a manifest."""
        return sorted(
            d.name for d in self.base_dir.iterdir() if d.is_dir() and (d / MANIFEST_FILE).exists()
        )

    def list_files(self, task_id: str) -> list[dict]:
        """Describe the regular files inside a task directory."""
        task_dir = self.task_dir(task_id)
        if not task_dir.exists():
            return []
        files = []
        for path in sorted(task_dir.iterdir()):
            if path.is_file() and not path.name.startswith("."):
                stat = path.stat()
                files.append({"filename": path.name, "path": str(path), "size": stat.st_size})
        return files

    def cleanup_older_than(self, max_age_hours: float, exclude: Iterable[str] = ()) -> int:
        """Remove task directories whose manifest is older than the cutoff."""
        cutoff = time.time() - max_age_hours * 3600
        skip = set(exclude)
        removed = 0
        for task_id in self.list_task_ids():
            if task_id in skip:
                continue
            path = self.task_dir(task_id) / MANIFEST_FILE
            try:
                created = path.stat().st_mtime
            except FileNotFoundError:
                continue
            if created < cutoff:
                self.delete(task_id)
                removed += 1
        if removed:
            logger.info(f"Cleaned up {removed} tasks older than {max_age_hours} hours")
        return removed

    def _read_model(self, path: Path, model_class: type[BaseModel]):
        try:
            return model_class.model_validate_json(path.read_text())
        except OSError as e:
            raise ManifestIOError(f"Failed to read {path.name}: {e}", details={"path": str(path)})
        except PydanticValidationError as e:
            raise ManifestIOError(
                f"Corrupt {path.name}: {e.error_count()} validation errors",
                details={"path": str(path)},
            )

    def _write_model(self, path: Path, model: BaseModel) -> Path:
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
            try:
                with os.fdopen(fd, "w") as f:
                    f.write(model.model_dump_json(indent=2))
                os.replace(tmp_name, path)
            except BaseException:
                Path(tmp_name).unlink(missing_ok=True)
                raise
        except OSError as e:
            raise ManifestIOError(f"Failed to write {path.name}: {e}", details={"path": str(path)})
        return path
