"""Base stage processor abstract class."""

from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Protocol

from ytflow.models.flow import StageJob, StageResult
from ytflow.models.manifest import TaskStatus
from ytflow.models.stages import Stage


class ProgressCallback(Protocol):
    def __call__(
        self, local_progress: float, step: str, phase: TaskStatus | None = None
    ) -> None: ...


def _ignore_progress(local_progress: float, step: str, phase: TaskStatus | None = None) -> None:
    return None


class StageProcessor(ABC):
    """Performs one stage's work.

    Implementations must be safe to re-run from scratch: a failed attempt is
    retried by calling ``run`` again with the same job input.
    """

    stage: Stage

    @abstractmethod
    def run(
        self, job: StageJob, task_dir: Path, on_progress: ProgressCallback = _ignore_progress
    ) -> StageResult:
        """Run the stage and return its result, or raise on failure."""
        ...

    def result(
        self, job: StageJob, files: dict[str, str], metadata: dict[str, Any] | None = None
    ) -> StageResult:
        """Build a successful result for ``job``."""
        return StageResult(
            task_id=job.task_id,
            stage=job.stage,
            success=True,
            files=files,
            metadata=metadata or {},
        )
