"""Running external tools with line-by-line output handling."""

import logging
import subprocess
from collections.abc import Callable

from ytflow.models.errors import ErrorKind, StageExecutionError

logger = logging.getLogger(__name__)


def run_streaming(
    cmd: list[str],
    on_line: Callable[[str], None] | None = None,
    component: str = "stage",
) -> list[str]:
    """Run ``cmd``, feeding each merged stdout/stderr line to ``on_line``.

    Returns the output lines. The child is killed if the caller is
    interrupted (for example by a task time limit) while reading.
    """
    try:
        process = subprocess.Popen(
            cmd,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
            errors="replace",
        )
    except FileNotFoundError:
        raise StageExecutionError(
            f"{cmd[0]} not found. Please install it or configure its path.",
            kind=ErrorKind.INVALID_INPUT,
            component=component,
            details={"command": cmd[0]},
        )

    lines: list[str] = []
    try:
        for line in process.stdout:
            lines.append(line)
            if on_line:
                on_line(line)
        process.wait()
    except BaseException:
        process.kill()
        process.wait()
        raise

    if process.returncode != 0:
        tail = "".join(lines[-30:])
        logger.error(f"{cmd[0]} exited with code {process.returncode}")
        raise StageExecutionError(
            f"{cmd[0]} exited with code {process.returncode}: {_last_error_line(lines)}",
            component=component,
            details={"output": tail, "returncode": process.returncode},
        )
    return lines


def _last_error_line(lines: list[str]) -> str:
    for line in reversed(lines):
        text = line.strip()
        if text.startswith("ERROR") or "error" in text.lower():
            return text
    return lines[-1].strip() if lines else ""
