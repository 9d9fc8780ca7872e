"""Notification event models."""

import json
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field


class EventType(StrEnum):
    """Events the coordinator emits for viewers."""

    PROGRESS = "progress"
    STATUS_CHANGE = "status-change"
    STAGE_COMPLETE = "stage-complete"
    STAGE_FAILED = "stage-failed"
    COMPLETE = "complete"


class Notification(BaseModel):
    """One event as relayed to subscribers."""

    task_id: str
    type: EventType
    data: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))

    def to_sse(self) -> str:
        """Format as a server-sent-events frame."""
        return f"data: {json.dumps(self.model_dump(mode='json'))}\n\n"
