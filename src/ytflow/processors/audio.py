"""Audio stage: extract, isolate voice, transcribe."""

import json
import logging
from pathlib import Path

from ytflow.config import Settings, get_settings
from ytflow.models.errors import ErrorKind, StageExecutionError
from ytflow.models.flow import StageJob, StageResult
from ytflow.models.manifest import TaskStatus
from ytflow.models.stages import Stage
from ytflow.processors.base import ProgressCallback, StageProcessor, _ignore_progress
from ytflow.processors.commands import run_streaming
from ytflow.processors.progress import FFmpegProgressMonitor, parse_whisper_progress

logger = logging.getLogger(__name__)

# Share of the stage's local progress taken by each step
EXTRACT_SPAN = (0.0, 30.0)
SEPARATE_SPAN = (30.0, 45.0)
TRANSCRIBE_SPAN = (45.0, 100.0)

# Keep the speech band and even out loudness ahead of transcription
VOICE_FILTER = "highpass=f=80,lowpass=f=8000,loudnorm"


def _scaled(span: tuple[float, float], fraction: float) -> float:
    start, end = span
    return start + (end - start) * max(0.0, min(1.0, fraction))


class AudioProcessor(StageProcessor):
    """Turns ``original.mp4`` into audio, a voice track and a transcription."""

    stage = Stage.AUDIO_PROCESSING

    def __init__(self, settings: Settings | None = None):
        self.settings = settings or get_settings()

    def run(
        self, job: StageJob, task_dir: Path, on_progress: ProgressCallback = _ignore_progress
    ) -> StageResult:
        video_path = Path(job.input.files["original.mp4"])
        if not video_path.exists():
            raise StageExecutionError(
                f"Input video missing: {video_path}",
                kind=ErrorKind.INVALID_INPUT,
                component="audio",
            )
        audio_path = task_dir / "audio.wav"
        vocals_path = task_dir / "vocals.wav"

        on_progress(EXTRACT_SPAN[0], "Extracting audio", TaskStatus.EXTRACTING)
        extract_progress = self._span_reporter(on_progress, EXTRACT_SPAN, "Extracting audio")
        self.extract_audio(video_path, audio_path, extract_progress)

        on_progress(SEPARATE_SPAN[0], "Isolating voice track", TaskStatus.SEPARATING)
        separate_progress = self._span_reporter(on_progress, SEPARATE_SPAN, "Isolating voice track")
        self.separate_voice(audio_path, vocals_path, separate_progress)

        on_progress(TRANSCRIBE_SPAN[0], "Transcribing audio", TaskStatus.TRANSCRIBING)
        outputs = self.transcribe(vocals_path, task_dir, job.options.language, on_progress)

        segments = self._segment_count(outputs["transcription.json"])
        on_progress(100, "Audio processing completed")
        logger.info(f"Transcribed {segments} segments for {job.task_id}")
        return self.result(
            job,
            {"audio.wav": str(audio_path), "vocals.wav": str(vocals_path), **outputs},
            {
                "segments": segments,
                "language": job.options.language or "auto",
                "audio_size": audio_path.stat().st_size,
            },
        )

    def extract_audio(self, video_path: Path, audio_path: Path, on_fraction) -> None:
        """16 kHz mono PCM, the input format whisper expects."""
        cmd = [
            self.settings.ffmpeg_binary,
            "-y",
            "-i",
            str(video_path),
            "-vn",
            "-acodec",
            "pcm_s16le",
            "-ar",
            "16000",
            "-ac",
            "1",
            str(audio_path),
        ]
        self._run_ffmpeg(cmd, on_fraction)
        if not audio_path.exists() or audio_path.stat().st_size == 0:
            raise StageExecutionError(
                "Audio extraction produced no output",
                kind=ErrorKind.UNSUPPORTED_FORMAT,
                component="audio",
            )

    def separate_voice(self, audio_path: Path, vocals_path: Path, on_fraction) -> None:
        cmd = [
            self.settings.ffmpeg_binary,
            "-y",
            "-i",
            str(audio_path),
            "-af",
            VOICE_FILTER,
            "-ar",
            "16000",
            "-ac",
            "1",
            str(vocals_path),
        ]
        self._run_ffmpeg(cmd, on_fraction)

    def transcribe(
        self,
        vocals_path: Path,
        task_dir: Path,
        language: str | None,
        on_progress: ProgressCallback,
    ) -> dict[str, str]:
        model_path = Path(self.settings.whisper_model_path)
        if not model_path.exists():
            raise StageExecutionError(
                f"Whisper model not found at: {model_path}",
                kind=ErrorKind.INVALID_INPUT,
                component="audio",
            )
        base = task_dir / "transcription"
        cmd = [
            self.settings.whisper_binary,
            "-m",
            str(model_path),
            "-f",
            str(vocals_path),
            "-of",
            str(base),
            "-l",
            language or "auto",
            "-pp",
            "-otxt",
            "-osrt",
            "-oj",
        ]

        def on_line(line: str) -> None:
            percent = parse_whisper_progress(line)
            if percent is not None:
                on_progress(
                    _scaled(TRANSCRIBE_SPAN, percent / 100), f"Transcribing... {round(percent)}%"
                )

        run_streaming(cmd, on_line, component="audio")

        json_path = base.with_suffix(".json")
        if not json_path.exists():
            raise StageExecutionError(
                "Transcription produced no output", component="audio"
            )
        outputs = {"transcription.json": str(json_path)}
        for produced, key in ((".srt", "subtitle.srt"), (".txt", "transcript.txt")):
            source = base.with_suffix(produced)
            if source.exists():
                target = task_dir / key
                source.replace(target)
                outputs[key] = str(target)
        return outputs

    def _run_ffmpeg(self, cmd: list[str], on_fraction) -> None:
        monitor = FFmpegProgressMonitor(callback=on_fraction)
        try:
            run_streaming(cmd, monitor.parse_line, component="audio")
        except StageExecutionError as e:
            output = str(e.details.get("output", "")).lower()
            if "invalid data found" in output or "does not contain any stream" in output:
                raise StageExecutionError(
                    "Invalid file format: no decodable audio stream",
                    kind=ErrorKind.UNSUPPORTED_FORMAT,
                    component="audio",
                    details=e.details,
                )
            if "no space left on device" in output:
                raise StageExecutionError(
                    "Insufficient disk space",
                    kind=ErrorKind.RESOURCE_EXCEEDED,
                    component="audio",
                    details=e.details,
                )
            raise

    @staticmethod
    def _span_reporter(on_progress: ProgressCallback, span: tuple[float, float], step: str):
        def report(fraction: float) -> None:
            on_progress(_scaled(span, fraction), f"{step}... {round(fraction * 100)}%")

        return report

    @staticmethod
    def _segment_count(path: str) -> int:
        try:
            data = json.loads(Path(path).read_text())
        except (OSError, json.JSONDecodeError) as e:
            raise StageExecutionError(f"Unreadable transcription: {e}", component="audio")
        return len(data.get("transcription", []))
