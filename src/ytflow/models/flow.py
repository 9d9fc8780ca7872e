"""Flow request, stage job and progress models."""

from datetime import UTC, datetime
from typing import Any, Literal

from pydantic import BaseModel, Field

from ytflow.models.errors import ErrorKind
from ytflow.models.stages import Stage

Priority = Literal["low", "normal", "high"]

PRIORITY_VALUES: dict[str, int] = {"low": 1, "normal": 5, "high": 10}


class FlowOptions(BaseModel):
    """Caller-supplied processing options."""

    priority: Priority = Field(default="normal", description="Queue priority")
    language: str | None = Field(
        default=None, min_length=2, max_length=16, description="Spoken language hint"
    )

    @property
    def priority_value(self) -> int:
        return PRIORITY_VALUES[self.priority]


class FlowRequest(BaseModel):
    """A submitted flow, kept alongside the manifest for later retries."""

    url: str = Field(..., min_length=1)
    options: FlowOptions = Field(default_factory=FlowOptions)


class StageResult(BaseModel):
    """Outcome of one stage attempt."""

    task_id: str
    stage: Stage
    success: bool
    files: dict[str, str] = Field(default_factory=dict)
    metadata: dict[str, Any] = Field(default_factory=dict)
    error: str | None = None
    error_kind: ErrorKind | None = None


class StageJob(BaseModel):
    """Unit of work handed to the queue for one stage attempt."""

    task_id: str
    stage: Stage
    url: str
    options: FlowOptions = Field(default_factory=FlowOptions)
    input: StageResult | None = None
    attempt: int = Field(default=1, ge=1)

    @property
    def job_id(self) -> str:
        return f"{self.task_id}-{self.stage.value}-{self.attempt}"

    def next_attempt(self) -> "StageJob":
        return self.model_copy(update={"attempt": self.attempt + 1})


class FlowHandle(BaseModel):
    """Returned to callers of ``create_flow``."""

    task_id: str
    estimated_duration: int = Field(..., ge=0, description="Seconds, informational only")


class FlowProgress(BaseModel):
    """Ephemeral progress aggregate of one active flow."""

    task_id: str
    current_stage: Stage | None = None
    overall_progress: float = Field(default=0.0, ge=0, le=100)
    stage_progress: float = Field(default=0.0, ge=0, le=100)
    step: str = ""
    started_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    attempt: int | None = Field(default=1, ge=1, description="None when recovered")
    terminal: bool = False
    expires_at: float | None = Field(default=None, exclude=True)
