"""Runs one stage attempt and folds every outcome into a StageResult."""

import logging
import subprocess
from datetime import UTC, datetime
from pathlib import Path

from ytflow.models.errors import ErrorKind, StageCancelled, StageExecutionError
from ytflow.models.flow import StageJob, StageResult
from ytflow.models.stages import Pipeline
from ytflow.pipeline.retry import classify_error
from ytflow.processors.base import ProgressCallback, StageProcessor

logger = logging.getLogger(__name__)

TIMEOUT_ERRORS: tuple[type[BaseException], ...] = (TimeoutError, subprocess.TimeoutExpired)


def failed_result(
    job: StageJob, message: str, kind: ErrorKind, details: dict | None = None
) -> StageResult:
    return StageResult(
        task_id=job.task_id,
        stage=job.stage,
        success=False,
        files={},
        metadata={
            **(details or {}),
            "attempt": job.attempt,
            "failed_at": datetime.now(UTC).isoformat(),
        },
        error=message,
        error_kind=kind,
    )


def execute_stage(
    job: StageJob,
    processor: StageProcessor,
    pipeline: Pipeline,
    task_dir: Path,
    on_progress: ProgressCallback,
    timeout_errors: tuple[type[BaseException], ...] = TIMEOUT_ERRORS,
) -> StageResult:
    """Run ``processor`` for ``job``. Never raises for stage failures."""
    definition = pipeline.definition(job.stage)

    available = job.input.files if job.input else {}
    missing = [key for key in definition.requires if key not in available]
    if missing:
        return failed_result(
            job,
            f"Stage {job.stage.value} is missing required input: {', '.join(missing)}",
            ErrorKind.INVALID_INPUT,
            {"missing": missing},
        )

    try:
        result = processor.run(job, task_dir, on_progress)
    except StageExecutionError as e:
        logger.warning(f"Stage {job.stage.value} failed for {job.task_id}: {e.message}")
        return failed_result(job, e.message, classify_error(e.message, e.kind), e.details)
    except StageCancelled as e:
        logger.info(f"Stage {job.stage.value} for {job.task_id} stopped: {e.message}")
        return failed_result(job, e.message, ErrorKind.TIMEOUT)
    except timeout_errors as e:
        message = f"Stage {job.stage.value} timed out: {e}"
        logger.warning(f"{message} (task {job.task_id})")
        return failed_result(job, message, ErrorKind.TIMEOUT)
    except Exception as e:
        logger.exception(f"Stage {job.stage.value} crashed for {job.task_id}")
        message = str(e) or type(e).__name__
        return failed_result(job, message, classify_error(message))

    if result.task_id != job.task_id or result.stage != job.stage:
        return failed_result(
            job,
            f"Processor returned a result for {result.task_id}/{result.stage.value}",
            ErrorKind.UNKNOWN,
        )
    if result.success:
        undeclared = [key for key in definition.outputs if key not in result.files]
        if undeclared:
            return failed_result(
                job,
                f"Stage {job.stage.value} did not produce: {', '.join(undeclared)}",
                ErrorKind.UNKNOWN,
            )
    elif result.error_kind is None:
        result = result.model_copy(update={"error_kind": classify_error(result.error)})
    return result
