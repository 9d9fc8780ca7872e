"""Download stage: fetch the source video with yt-dlp."""

import json
import logging
import subprocess
from pathlib import Path

from ytflow.config import Settings, get_settings
from ytflow.models.errors import ErrorKind, StageExecutionError
from ytflow.models.flow import StageJob, StageResult
from ytflow.models.manifest import TaskStatus
from ytflow.models.stages import Stage
from ytflow.processors.base import ProgressCallback, StageProcessor, _ignore_progress
from ytflow.processors.commands import run_streaming
from ytflow.processors.progress import parse_ytdlp_progress
from ytflow.validation.urls import extract_video_id

logger = logging.getLogger(__name__)

MAX_DURATION_SECONDS = 4 * 60 * 60

# yt-dlp error text -> (message, kind)
_YTDLP_ERRORS = [
    ("video unavailable", "Video not found", ErrorKind.NOT_FOUND),
    ("private video", "Video not found (private)", ErrorKind.NOT_FOUND),
    ("has been removed", "Video not found (removed)", ErrorKind.NOT_FOUND),
    ("http error 404", "Video not found", ErrorKind.NOT_FOUND),
    ("no space left on device", "Insufficient disk space", ErrorKind.RESOURCE_EXCEEDED),
    ("requested format is not available", "Invalid file format", ErrorKind.UNSUPPORTED_FORMAT),
]


def classify_ytdlp_error(error: StageExecutionError) -> StageExecutionError:
    """Re-raise yt-dlp failures with a well-known message and kind."""
    output = f"{error.message}\n{error.details.get('output', '')}".lower()
    for needle, message, kind in _YTDLP_ERRORS:
        if needle in output:
            return StageExecutionError(
                message, kind=kind, component="download", details=error.details
            )
    return StageExecutionError(
        f"Download failed: {error.message}",
        kind=ErrorKind.TRANSIENT,
        component="download",
        details=error.details,
    )


class DownloadProcessor(StageProcessor):
    """Runs yt-dlp to produce ``original.mp4`` and, if available, ``thumbnail.jpg``."""

    stage = Stage.DOWNLOAD

    def __init__(self, settings: Settings | None = None):
        self.settings = settings or get_settings()

    def run(
        self, job: StageJob, task_dir: Path, on_progress: ProgressCallback = _ignore_progress
    ) -> StageResult:
        video_id = extract_video_id(job.url)
        if video_id is None:
            raise StageExecutionError(
                "Invalid YouTube URL", kind=ErrorKind.INVALID_INPUT, component="download"
            )
        task_dir.mkdir(parents=True, exist_ok=True)
        on_progress(0, "Starting video download", TaskStatus.DOWNLOADING)

        info = self.fetch_info(job.url)
        duration = float(info.get("duration") or 0)
        if duration > MAX_DURATION_SECONDS:
            raise StageExecutionError(
                "Video too long: duration exceeds maximum limit of 4 hours",
                kind=ErrorKind.RESOURCE_EXCEEDED,
                component="download",
                details={"duration": duration, "max_duration": MAX_DURATION_SECONDS},
            )

        video_path = task_dir / "original.mp4"
        self.download_video(job.url, video_path, on_progress)
        if not video_path.exists():
            raise StageExecutionError(
                "Download completed but file not found",
                component="download",
                details={"expected_path": str(video_path)},
            )

        files = {"original.mp4": str(video_path)}
        thumbnail = self.download_thumbnail(job.url, task_dir)
        if thumbnail:
            files["thumbnail.jpg"] = str(thumbnail)

        on_progress(100, "Download completed")
        logger.info(f"Downloaded {video_id} for {job.task_id} ({duration:.0f}s)")
        return self.result(
            job,
            files,
            {
                "video_id": video_id,
                "video_title": info.get("title") or "Unknown Title",
                "video_duration": duration,
                "uploader": info.get("uploader") or "Unknown",
                "file_size": video_path.stat().st_size,
            },
        )

    def fetch_info(self, url: str) -> dict:
        cmd = [
            self.settings.ytdlp_binary,
            "--dump-single-json",
            "--skip-download",
            "--no-playlist",
            "--no-warnings",
            url,
        ]
        try:
            lines = run_streaming(cmd, component="download")
        except StageExecutionError as e:
            raise classify_ytdlp_error(e)
        try:
            return json.loads("".join(lines))
        except json.JSONDecodeError:
            raise StageExecutionError(
                "Failed to parse video info from yt-dlp",
                kind=ErrorKind.TRANSIENT,
                component="download",
            )

    def download_video(self, url: str, output: Path, on_progress: ProgressCallback) -> None:
        cmd = [
            self.settings.ytdlp_binary,
            "-f",
            self.settings.download_format,
            "--no-playlist",
            "--no-warnings",
            "--newline",
            "--merge-output-format",
            "mp4",
            "-o",
            str(output),
            url,
        ]

        def on_line(line: str) -> None:
            percent = parse_ytdlp_progress(line)
            if percent is not None:
                on_progress(percent, f"Downloading video... {round(percent)}%")

        try:
            run_streaming(cmd, on_line, component="download")
        except StageExecutionError as e:
            raise classify_ytdlp_error(e)

    def download_thumbnail(self, url: str, task_dir: Path) -> Path | None:
        """Best-effort thumbnail fetch; a missing thumbnail never fails the stage."""
        cmd = [
            self.settings.ytdlp_binary,
            "--skip-download",
            "--no-playlist",
            "--write-thumbnail",
            "--convert-thumbnails",
            "jpg",
            "-o",
            str(task_dir / "thumbnail.%(ext)s"),
            url,
        ]
        try:
            subprocess.run(cmd, capture_output=True, text=True, timeout=60)
        except (OSError, subprocess.TimeoutExpired) as e:
            logger.warning(f"Thumbnail download failed: {e}")
            return None
        path = task_dir / "thumbnail.jpg"
        return path if path.exists() else None
