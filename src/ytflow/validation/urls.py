"""YouTube URL validation."""

import re

from ytflow.models.errors import ValidationError

_VIDEO_ID = r"([A-Za-z0-9_-]{11})"

YOUTUBE_PATTERNS = [
    re.compile(rf"^(?:https?://)?(?:www\.|m\.)?youtube\.com/watch\?(?:.*&)?v={_VIDEO_ID}"),
    re.compile(rf"^(?:https?://)?youtu\.be/{_VIDEO_ID}"),
    re.compile(rf"^(?:https?://)?(?:www\.)?youtube\.com/embed/{_VIDEO_ID}"),
    re.compile(rf"^(?:https?://)?(?:www\.)?youtube\.com/v/{_VIDEO_ID}"),
    re.compile(rf"^(?:https?://)?(?:www\.|m\.)?youtube\.com/shorts/{_VIDEO_ID}"),
]


def extract_video_id(url: str) -> str | None:
    """Return the 11-character video ID, or None if ``url`` is not a YouTube link."""
    candidate = url.strip()
    for pattern in YOUTUBE_PATTERNS:
        match = pattern.match(candidate)
        if match:
            return match.group(1)
    return None


def validate_youtube_url(url: str) -> str:
    """Validate ``url`` and return its video ID."""
    if not url or not url.strip():
        raise ValidationError("URL is required")
    video_id = extract_video_id(url)
    if video_id is None:
        raise ValidationError("Invalid YouTube URL format", details={"url": url})
    return video_id
