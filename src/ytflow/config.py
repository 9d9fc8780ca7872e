"""Application configuration using Pydantic BaseSettings."""

from pathlib import Path
from typing import Literal

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """ytflow configuration loaded from environment variables."""

    model_config = {"env_prefix": "YTFLOW_", "env_file": ".env", "extra": "ignore"}

    # LLM
    openai_api_key: str = ""
    openai_model: str = "gpt-4o-mini"

    # Redis / Celery
    celery_broker_url: str = "redis://localhost:6379/0"
    celery_result_backend: str = "redis://localhost:6379/1"
    queue_backend: Literal["local", "celery"] = "local"

    # Server
    host: str = "0.0.0.0"
    port: int = 8000
    log_level: str = "INFO"

    # Storage
    storage_dir: Path = Path("./data")
    cleanup_max_age_hours: int = 24
    resume_on_start: bool = True

    # Admission control
    max_concurrent_flows: int = 5

    # Flow tracker
    completed_grace_seconds: float = 30.0
    failed_grace_seconds: float = 60.0
    progress_interval_ms: int = 200

    # Stages
    download_timeout_seconds: float = 300.0
    audio_timeout_seconds: float = 600.0
    summarization_timeout_seconds: float = 120.0
    download_concurrency: int = 3
    audio_concurrency: int = 2
    summarization_concurrency: int = 1
    retry_backoff_seconds: float = 2.0

    # External binaries
    ytdlp_binary: str = "yt-dlp"
    ffmpeg_binary: str = "ffmpeg"
    whisper_binary: str = "whisper-cli"
    whisper_model_path: Path = Path("./models/ggml-large-v3.bin")
    download_format: str = "best[ext=mp4][height<=1080]"


def get_settings() -> Settings:
    """Return settings instance."""
    return Settings()
