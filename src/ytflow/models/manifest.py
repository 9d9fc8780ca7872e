"""Durable task manifest models."""

from datetime import UTC, datetime
from enum import StrEnum

from pydantic import BaseModel, Field, model_validator


class TaskStatus(StrEnum):
    """Lifecycle status of a task, in pipeline order."""

    PENDING = "pending"
    DOWNLOADING = "downloading"
    EXTRACTING = "extracting"
    SEPARATING = "separating"
    TRANSCRIBING = "transcribing"
    SUMMARIZING = "summarizing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (TaskStatus.COMPLETED, TaskStatus.FAILED)


class TaskManifest(BaseModel):
    """Durable per-task record of status, progress, files and error."""

    task_id: str = Field(..., min_length=1)
    status: TaskStatus = Field(default=TaskStatus.PENDING)
    progress: int = Field(default=0, ge=0, le=100)
    current_step: str = Field(default="initializing")
    files: dict[str, str] = Field(default_factory=dict)
    error: str | None = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    finished_at: datetime | None = None

    @model_validator(mode="after")
    def validate_terminal_fields(self) -> "TaskManifest":
        if self.status.is_terminal and self.finished_at is None:
            raise ValueError(f"finished_at is required when status is {self.status.value}")
        if not self.status.is_terminal and self.finished_at is not None:
            raise ValueError(f"finished_at must be empty while status is {self.status.value}")
        if self.status == TaskStatus.FAILED and not self.error:
            raise ValueError("A failed task must carry an error message")
        return self

    def merge_files(self, files: dict[str, str]) -> None:
        """Add artifacts; existing entries are never removed."""
        self.files = {**self.files, **files}

    def advance_progress(self, progress: float) -> None:
        """Raise progress to ``progress``; never lowers it."""
        self.progress = max(self.progress, min(100, int(round(progress))))

    def mark_completed(self, step: str) -> None:
        self.status = TaskStatus.COMPLETED
        self.progress = 100
        self.current_step = step
        self.error = None
        self.finished_at = datetime.now(UTC)

    def mark_failed(self, error: str, step: str) -> None:
        self.status = TaskStatus.FAILED
        self.current_step = step
        self.error = error or "Unknown error"
        self.finished_at = datetime.now(UTC)

    def reset_for_retry(self, step: str) -> None:
        """Put the task back to ``pending`` ahead of a re-run."""
        self.status = TaskStatus.PENDING
        self.current_step = step
        self.error = None
        self.finished_at = None
