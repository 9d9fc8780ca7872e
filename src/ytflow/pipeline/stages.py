"""The video processing pipeline: download, audio processing, summarization."""

from ytflow.config import Settings, get_settings
from ytflow.models.manifest import TaskStatus
from ytflow.models.stages import Pipeline, Stage, StageDefinition

# Fixed split of overall progress: download 0-25, audio 25-85, summary 85-100.
DOWNLOAD_WEIGHT = (0.0, 25.0)
AUDIO_WEIGHT = (25.0, 60.0)
SUMMARIZATION_WEIGHT = (85.0, 15.0)


def build_pipeline(settings: Settings | None = None) -> Pipeline:
    """Build the stage table, taking timeouts and concurrency from settings."""
    settings = settings or get_settings()
    return Pipeline(
        [
            StageDefinition(
                stage=Stage.DOWNLOAD,
                queue="download",
                max_attempts=3,
                base_weight=DOWNLOAD_WEIGHT[0],
                weight_span=DOWNLOAD_WEIGHT[1],
                timeout_seconds=settings.download_timeout_seconds,
                expected_seconds=30,
                concurrency=settings.download_concurrency,
                statuses=(TaskStatus.DOWNLOADING,),
                outputs=("original.mp4",),
            ),
            StageDefinition(
                stage=Stage.AUDIO_PROCESSING,
                queue="audio-processing",
                max_attempts=2,
                base_weight=AUDIO_WEIGHT[0],
                weight_span=AUDIO_WEIGHT[1],
                timeout_seconds=settings.audio_timeout_seconds,
                expected_seconds=60,
                concurrency=settings.audio_concurrency,
                statuses=(TaskStatus.EXTRACTING, TaskStatus.SEPARATING, TaskStatus.TRANSCRIBING),
                requires=("original.mp4",),
                outputs=("audio.wav", "vocals.wav", "transcription.json", "transcript.txt"),
            ),
            StageDefinition(
                stage=Stage.SUMMARIZATION,
                queue="summarization",
                max_attempts=3,
                base_weight=SUMMARIZATION_WEIGHT[0],
                weight_span=SUMMARIZATION_WEIGHT[1],
                timeout_seconds=settings.summarization_timeout_seconds,
                expected_seconds=15,
                concurrency=settings.summarization_concurrency,
                statuses=(TaskStatus.SUMMARIZING,),
                requires=("transcription.json",),
                outputs=("summary.json", "summary.txt"),
            ),
        ]
    )
