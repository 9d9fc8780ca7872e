"""Error hierarchy and error response models."""

from enum import StrEnum

from pydantic import BaseModel, Field


class ErrorKind(StrEnum):
    """Structured cause of a stage failure."""

    INVALID_INPUT = "invalid_input"
    UNSUPPORTED_FORMAT = "unsupported_format"
    NOT_FOUND = "not_found"
    RESOURCE_EXCEEDED = "resource_exceeded"
    TRANSIENT = "transient"
    TIMEOUT = "timeout"
    UNKNOWN = "unknown"


NON_RETRYABLE_KINDS = frozenset(
    {
        ErrorKind.INVALID_INPUT,
        ErrorKind.UNSUPPORTED_FORMAT,
        ErrorKind.NOT_FOUND,
        ErrorKind.RESOURCE_EXCEEDED,
    }
)


class YtFlowError(Exception):
    """Base error for all ytflow errors."""

    def __init__(self, message: str, component: str = "", details: dict | None = None):
        super().__init__(message)
        self.message = message
        self.component = component
        self.details = details or {}


class ValidationError(YtFlowError):
    """Bad input to a flow (never retried)."""

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message, component="validation", details=details)


class CapacityExceeded(YtFlowError):
    """Admission refused because the concurrent flow cap is reached."""

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message, component="admission", details=details)


class TaskNotFoundError(YtFlowError):
    """No manifest exists for the requested task."""

    def __init__(self, task_id: str):
        super().__init__(
            f"Task {task_id} not found", component="store", details={"task_id": task_id}
        )
        self.task_id = task_id


class StageExecutionError(YtFlowError):
    """A stage processor failed."""

    def __init__(
        self,
        message: str,
        kind: ErrorKind = ErrorKind.UNKNOWN,
        component: str = "stage",
        details: dict | None = None,
    ):
        super().__init__(message, component=component, details=details)
        self.kind = kind


class StageCancelled(YtFlowError):
    """Raised inside an attempt that its queue has given up on."""

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message, component="queue", details=details)


class ManifestIOError(YtFlowError):
    """The manifest store is unavailable or holds an unreadable record."""

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message, component="store", details=details)


class ErrorResponse(BaseModel):
    """Standardized error response for API."""

    error_type: str = Field(..., description="Error category")
    component: str = Field(default="", description="Component that raised the error")
    message: str = Field(..., description="Human-readable error message")
    details: dict = Field(default_factory=dict)
    actionable_guidance: str = Field(default="", description="Suggested user action")
    retry_possible: bool = Field(default=False)

    @classmethod
    def from_exception(
        cls, exc: YtFlowError, guidance: str = "", retry: bool = False
    ) -> "ErrorResponse":
        return cls(
            error_type=type(exc).__name__,
            component=exc.component,
            message=exc.message,
            details=exc.details,
            actionable_guidance=guidance,
            retry_possible=retry,
        )
