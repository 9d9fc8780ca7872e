"""Progress parsing for the external tools the stages drive."""

import re
from collections.abc import Callable

_FFMPEG_TIME = re.compile(r"time=(\d+):(\d+):(\d+\.?\d*)")
_FFMPEG_DURATION = re.compile(r"Duration:\s*(\d+):(\d+):(\d+\.?\d*)")
_YTDLP_PERCENT = re.compile(r"\[download\]\s+(\d+(?:\.\d+)?)%")
_WHISPER_PERCENT = re.compile(r"progress\s*=\s*(\d+)%|\[(\d+)%\]")


def _seconds(match: re.Match) -> float:
    return int(match.group(1)) * 3600 + int(match.group(2)) * 60 + float(match.group(3))


class FFmpegProgressMonitor:
    """Track FFmpeg progress from its stderr ``time=`` lines.

    When ``total_duration`` is unknown it is picked up from the ``Duration:``
    banner FFmpeg prints for the input.
    """

    def __init__(
        self, total_duration: float = 0.0, callback: Callable[[float], None] | None = None
    ):
        self.total_duration = total_duration
        self.callback = callback
        self.current_time = 0.0

    def parse_line(self, line: str) -> float | None:
        """Return progress as a fraction [0, 1] if ``line`` carries any."""
        if self.total_duration <= 0:
            banner = _FFMPEG_DURATION.search(line)
            if banner:
                self.total_duration = _seconds(banner)
                return None
        match = _FFMPEG_TIME.search(line)
        if not match:
            return None
        self.current_time = _seconds(match)
        progress = self.progress
        if self.callback:
            self.callback(progress)
        return progress

    @property
    def progress(self) -> float:
        if self.total_duration <= 0:
            return 0.0
        return min(1.0, self.current_time / self.total_duration)


def parse_ytdlp_progress(line: str) -> float | None:
    """Percentage from a yt-dlp ``[download]  42.1% of ...`` line."""
    match = _YTDLP_PERCENT.search(line)
    if match:
        return min(100.0, float(match.group(1)))
    return None


def parse_whisper_progress(line: str) -> float | None:
    """Percentage from whisper.cpp ``progress = 40%`` or ``[40%]`` output."""
    match = _WHISPER_PERCENT.search(line)
    if match:
        return min(100.0, float(match.group(1) or match.group(2)))
    return None
