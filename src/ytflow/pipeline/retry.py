"""Retry eligibility for failed stage attempts."""

from ytflow.models.errors import NON_RETRYABLE_KINDS, ErrorKind
from ytflow.models.flow import StageResult
from ytflow.models.stages import StageDefinition

# Fallback for failures that arrive without a structured kind.
MESSAGE_KINDS: tuple[tuple[str, ErrorKind], ...] = (
    ("invalid youtube url", ErrorKind.INVALID_INPUT),
    ("video not found", ErrorKind.NOT_FOUND),
    ("video too long", ErrorKind.RESOURCE_EXCEEDED),
    ("insufficient disk space", ErrorKind.RESOURCE_EXCEEDED),
    ("invalid file format", ErrorKind.UNSUPPORTED_FORMAT),
)


def classify_error(message: str | None, kind: ErrorKind | None = None) -> ErrorKind:
    """Resolve the error kind, falling back to message matching."""
    if kind is not None and kind != ErrorKind.UNKNOWN:
        return kind
    text = (message or "").lower()
    for needle, matched in MESSAGE_KINDS:
        if needle in text:
            return matched
    return ErrorKind.UNKNOWN


def is_retryable(definition: StageDefinition, attempt: int, result: StageResult) -> bool:
    """Whether a failed attempt should be re-run.

    Refused when the stage has used up its attempts or when the failure is of
    a kind that a re-run cannot fix.
    """
    if result.success:
        return False
    if attempt >= definition.max_attempts:
        return False
    return classify_error(result.error, result.error_kind) not in NON_RETRYABLE_KINDS


def backoff_delay(base_seconds: float, attempt: int) -> float:
    """Exponential delay before ``attempt`` (the first retry is attempt 2)."""
    if attempt <= 1:
        return 0.0
    return base_seconds * (2 ** (attempt - 2))
