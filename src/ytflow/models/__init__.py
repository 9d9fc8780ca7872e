"""Data models for ytflow."""

from ytflow.models.errors import (
    CapacityExceeded,
    ErrorKind,
    ErrorResponse,
    ManifestIOError,
    StageExecutionError,
    TaskNotFoundError,
    ValidationError,
    YtFlowError,
)
from ytflow.models.events import EventType, Notification
from ytflow.models.flow import (
    FlowHandle,
    FlowOptions,
    FlowProgress,
    FlowRequest,
    StageJob,
    StageResult,
)
from ytflow.models.manifest import TaskManifest, TaskStatus
from ytflow.models.stages import Pipeline, Stage, StageDefinition
from ytflow.models.summary import Highlight, VideoSummary

__all__ = [
    "CapacityExceeded",
    "ErrorKind",
    "ErrorResponse",
    "EventType",
    "FlowHandle",
    "FlowOptions",
    "FlowProgress",
    "FlowRequest",
    "Highlight",
    "ManifestIOError",
    "Notification",
    "Pipeline",
    "Stage",
    "StageDefinition",
    "StageExecutionError",
    "StageJob",
    "StageResult",
    "TaskManifest",
    "TaskNotFoundError",
    "TaskStatus",
    "ValidationError",
    "VideoSummary",
    "YtFlowError",
]
