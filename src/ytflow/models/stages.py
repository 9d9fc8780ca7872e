"""Stage definitions and the pipeline transition table."""

from collections.abc import Iterable, Sequence
from enum import StrEnum

from pydantic import BaseModel, Field, model_validator

from ytflow.models.manifest import TaskStatus


class Stage(StrEnum):
    """Ordered units of the processing pipeline."""

    DOWNLOAD = "download"
    AUDIO_PROCESSING = "audio-processing"
    SUMMARIZATION = "summarization"


class StageDefinition(BaseModel):
    """Static configuration for one stage."""

    model_config = {"frozen": True}

    stage: Stage
    queue: str = Field(..., min_length=1)
    max_attempts: int = Field(default=1, ge=1)
    base_weight: float = Field(..., ge=0, le=100)
    weight_span: float = Field(..., gt=0, le=100)
    timeout_seconds: float = Field(..., gt=0)
    expected_seconds: int = Field(default=0, ge=0)
    concurrency: int = Field(default=1, ge=1)
    statuses: tuple[TaskStatus, ...] = Field(..., min_length=1)
    requires: tuple[str, ...] = ()
    outputs: tuple[str, ...] = ()

    @model_validator(mode="after")
    def validate_weights(self) -> "StageDefinition":
        if self.base_weight + self.weight_span > 100:
            raise ValueError(f"Stage {self.stage.value} weights exceed 100")
        for status in self.statuses:
            if status == TaskStatus.PENDING or status.is_terminal:
                raise ValueError(f"Stage {self.stage.value} cannot own status {status.value}")
        return self

    @property
    def end_weight(self) -> float:
        return self.base_weight + self.weight_span


class Pipeline:
    """Ordered stages plus the transition table derived from them.

    The order of ``definitions`` is the pipeline shape: each stage hands its
    result to the one after it, and the last stage completes the task. Task
    statuses are ranked by the order of the stages that own them, which is
    what "forward" means for status transitions.
    """

    def __init__(self, definitions: Sequence[StageDefinition]):
        if not definitions:
            raise ValueError("A pipeline needs at least one stage")
        self._definitions = tuple(definitions)
        self._by_stage = {d.stage: d for d in self._definitions}
        if len(self._by_stage) != len(self._definitions):
            raise ValueError("Duplicate stage in pipeline")

        self._next: dict[Stage, Stage | None] = {}
        for i, definition in enumerate(self._definitions):
            following = self._definitions[i + 1] if i + 1 < len(self._definitions) else None
            self._next[definition.stage] = following.stage if following else None

        self._status_stage: dict[TaskStatus, Stage] = {}
        self._status_rank: dict[TaskStatus, int] = {TaskStatus.PENDING: 0}
        rank = 1
        for definition in self._definitions:
            for status in definition.statuses:
                if status in self._status_stage:
                    raise ValueError(f"Status {status.value} is owned by two stages")
                self._status_stage[status] = definition.stage
                self._status_rank[status] = rank
                rank += 1
        self._status_rank[TaskStatus.COMPLETED] = rank

    def __iter__(self):
        return iter(self._definitions)

    def __len__(self) -> int:
        return len(self._definitions)

    @property
    def first(self) -> StageDefinition:
        return self._definitions[0]

    @property
    def stages(self) -> list[Stage]:
        return [d.stage for d in self._definitions]

    def definition(self, stage: Stage) -> StageDefinition:
        try:
            return self._by_stage[Stage(stage)]
        except (KeyError, ValueError):
            raise ValueError(f"Stage {stage} is not part of this pipeline")

    def next_stage(self, stage: Stage) -> Stage | None:
        return self._next[self.definition(stage).stage]

    def is_last(self, stage: Stage) -> bool:
        return self.next_stage(stage) is None

    def entry_status(self, stage: Stage) -> TaskStatus:
        return self.definition(stage).statuses[0]

    def stage_for_status(self, status: TaskStatus) -> Stage | None:
        return self._status_stage.get(status)

    def status_rank(self, status: TaskStatus) -> int:
        if status not in self._status_rank:
            raise ValueError(f"Status {status.value} has no rank in this pipeline")
        return self._status_rank[status]

    def is_forward(self, current: TaskStatus, new: TaskStatus) -> bool:
        """Whether moving from ``current`` to ``new`` keeps pipeline order."""
        if current.is_terminal:
            return False
        if new == TaskStatus.FAILED:
            return True
        return self.status_rank(new) >= self.status_rank(current)

    def overall_progress(self, stage: Stage, local_progress: float) -> float:
        """Map stage-local progress (0-100) onto the task-wide 0-100 scale."""
        definition = self.definition(stage)
        local = max(0.0, min(100.0, float(local_progress)))
        return round(definition.base_weight + local * definition.weight_span / 100.0, 2)

    def completion_progress(self, stage: Stage) -> float:
        return self.definition(stage).end_weight

    def resume_stage(self, files: Iterable[str]) -> Stage | None:
        """First stage whose declared outputs are not all present."""
        present = set(files)
        for definition in self._definitions:
            if not set(definition.outputs) <= present:
                return definition.stage
        return None

    def estimated_duration(self) -> int:
        return sum(d.expected_seconds for d in self._definitions)
