"""In-memory progress aggregate of active flows."""

import logging
import threading
import time
from collections.abc import Callable

from ytflow.models.errors import ManifestIOError
from ytflow.models.flow import FlowProgress
from ytflow.models.manifest import TaskStatus
from ytflow.models.stages import Pipeline
from ytflow.storage.manifest_store import ManifestStore

logger = logging.getLogger(__name__)


class FlowTracker:
    """Thread-safe map of task ID to ``FlowProgress``.

    Nothing here is persisted. Entries of finished flows are kept for a grace
    period so trailing status reads still find them, but they stop counting
    towards admission as soon as they are marked terminal.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._flows: dict[str, FlowProgress] = {}
        self._lock = threading.RLock()

    def get(self, task_id: str) -> FlowProgress | None:
        with self._lock:
            self._purge_expired()
            flow = self._flows.get(task_id)
            return flow.model_copy() if flow else None

    def upsert(self, task_id: str, **patch) -> FlowProgress:
        """Create or update an entry and return a snapshot of it."""
        with self._lock:
            current = self._flows.get(task_id)
            if current is None:
                current = FlowProgress(task_id=task_id, **patch)
            else:
                current = current.model_copy(update=patch)
            self._flows[task_id] = current
            return current.model_copy()

    def remove(self, task_id: str) -> bool:
        with self._lock:
            return self._flows.pop(task_id, None) is not None

    def mark_terminal(self, task_id: str, grace_seconds: float, step: str = "") -> None:
        """Release the capacity slot now; drop the entry after the grace period."""
        with self._lock:
            current = self._flows.get(task_id)
            if current is None:
                return
            patch = {"terminal": True, "expires_at": self._clock() + grace_seconds}
            if step:
                patch["step"] = step
            self._flows[task_id] = current.model_copy(update=patch)

    def count(self) -> int:
        """Number of flows still holding a capacity slot."""
        with self._lock:
            self._purge_expired()
            return sum(1 for f in self._flows.values() if not f.terminal)

    def list_active(self) -> list[FlowProgress]:
        with self._lock:
            self._purge_expired()
            return [f.model_copy() for f in self._flows.values() if not f.terminal]

    def list_all(self) -> list[FlowProgress]:
        with self._lock:
            self._purge_expired()
            return [f.model_copy() for f in self._flows.values()]

    def recover(self, store: ManifestStore, pipeline: Pipeline) -> int:
        """Rebuild entries from manifests that are not yet terminal.

        Used after a restart: the durable manifests are authoritative, so
        every unfinished task gets its capacity slot back. Unreadable
        manifests are logged and skipped.
        """
        recovered = 0
        for task_id in store.list_task_ids():
            try:
                manifest = store.load(task_id)
            except ManifestIOError as e:
                logger.error(f"Skipping {task_id} during recovery: {e}")
                continue
            if manifest is None or manifest.status.is_terminal:
                continue
            stage = pipeline.stage_for_status(manifest.status)
            if stage is None and manifest.status == TaskStatus.PENDING:
                stage = pipeline.resume_stage(manifest.files)
            self.upsert(
                task_id,
                current_stage=stage,
                overall_progress=float(manifest.progress),
                stage_progress=0.0,
                step=manifest.current_step,
                started_at=manifest.created_at,
                attempt=None,
                terminal=False,
                expires_at=None,
            )
            recovered += 1
        if recovered:
            logger.info(f"Recovered {recovered} active flows from manifests")
        return recovered

    def _purge_expired(self) -> None:
        now = self._clock()
        expired = [
            task_id
            for task_id, flow in self._flows.items()
            if flow.expires_at is not None and flow.expires_at <= now
        ]
        for task_id in expired:
            del self._flows[task_id]
