"""Summarization stage: turn the transcription into a structured summary."""

import json
import logging
import re
from pathlib import Path

import openai
from openai import OpenAI

from ytflow.config import Settings, get_settings
from ytflow.models.errors import ErrorKind, StageExecutionError
from ytflow.models.flow import StageJob, StageResult
from ytflow.models.manifest import TaskStatus
from ytflow.models.stages import Stage
from ytflow.models.summary import Highlight, VideoSummary
from ytflow.processors.base import ProgressCallback, StageProcessor, _ignore_progress
from ytflow.processors.prompts import SYSTEM_PROMPT, build_summary_prompt

logger = logging.getLogger(__name__)

# Keeps the prompt well inside the model's context window
MAX_TRANSCRIPT_CHARS = 120_000


def load_segments(path: Path) -> list[dict]:
    """Read whisper.cpp JSON output as ``{"start", "end", "text"}`` segments."""
    try:
        data = json.loads(path.read_text())
    except (OSError, json.JSONDecodeError) as e:
        raise StageExecutionError(
            f"Invalid file format: unreadable transcription ({e})",
            kind=ErrorKind.UNSUPPORTED_FORMAT,
            component="summarization",
        )
    segments = []
    for item in data.get("transcription", []):
        text = (item.get("text") or "").strip()
        if not text:
            continue
        offsets = item.get("offsets", {})
        segments.append(
            {
                "start": offsets.get("from", 0) / 1000.0,
                "end": offsets.get("to", 0) / 1000.0,
                "text": text,
            }
        )
    return segments


def format_transcript(segments: list[dict]) -> str:
    lines = []
    for segment in segments:
        minutes, seconds = divmod(int(segment["start"]), 60)
        lines.append(f"[{minutes:02d}:{seconds:02d}] {segment['text']}")
    return "\n".join(lines)


def parse_llm_response(response_text: str) -> dict:
    """Parse an LLM response, tolerating markdown-wrapped JSON."""
    text = (response_text or "").strip()
    fenced = re.search(r"```(?:json)?\s*\n?(.*?)\n?```", text, re.DOTALL)
    if fenced:
        text = fenced.group(1).strip()
    try:
        return json.loads(text)
    except json.JSONDecodeError as e:
        brace_match = re.search(r"\{.*\}", text, re.DOTALL)
        if brace_match:
            try:
                return json.loads(brace_match.group())
            except json.JSONDecodeError:
                pass
        raise StageExecutionError(
            f"Failed to parse LLM response as JSON: {e}",
            kind=ErrorKind.TRANSIENT,
            component="summarization",
            details={"response_preview": text[:200]},
        )


def render_summary_text(summary: VideoSummary) -> str:
    """Readable markdown version of the summary."""
    parts = ["# Video Summary", "", "## Summary", summary.summary, ""]
    if summary.key_points:
        parts += ["## Key Points", *[f"- {point}" for point in summary.key_points], ""]
    if summary.highlights:
        parts.append("## Highlights")
        for h in summary.highlights:
            parts.append(f"- **{_clock(h.start)}-{_clock(h.end)}**: {h.note}")
        parts.append("")
    if summary.topics:
        parts += ["## Topics Covered", ", ".join(summary.topics), ""]
    if summary.conclusion:
        parts += ["## Conclusion", summary.conclusion, ""]
    parts += [
        "## Metadata",
        f"- Total Words: {summary.total_words}",
        f"- Model: {summary.model}",
        f"- Language: {summary.language}",
    ]
    return "\n".join(parts) + "\n"


def _clock(seconds: float) -> str:
    minutes, secs = divmod(int(seconds), 60)
    return f"{minutes:02d}:{secs:02d}"


class SummarizationProcessor(StageProcessor):
    """Summarizes ``transcription.json`` with an OpenAI chat model."""

    stage = Stage.SUMMARIZATION

    def __init__(
        self,
        client: OpenAI | None = None,
        model: str | None = None,
        settings: Settings | None = None,
    ):
        self.settings = settings or get_settings()
        self.model = model or self.settings.openai_model
        self.client = client
        if self.client is None and self.settings.openai_api_key:
            self.client = OpenAI(
                api_key=self.settings.openai_api_key,
                timeout=self.settings.summarization_timeout_seconds,
            )

    def run(
        self, job: StageJob, task_dir: Path, on_progress: ProgressCallback = _ignore_progress
    ) -> StageResult:
        if self.client is None:
            raise StageExecutionError(
                "OpenAI API key is not configured",
                kind=ErrorKind.INVALID_INPUT,
                component="summarization",
            )
        on_progress(0, "Preparing transcript", TaskStatus.SUMMARIZING)

        segments = load_segments(Path(job.input.files["transcription.json"]))
        if not segments:
            raise StageExecutionError(
                "Transcription is empty; nothing to summarize",
                kind=ErrorKind.INVALID_INPUT,
                component="summarization",
            )
        transcript = format_transcript(segments)[:MAX_TRANSCRIPT_CHARS]
        duration = segments[-1]["end"]
        language = job.options.language or "the language of the transcript"

        on_progress(20, "Generating summary")
        data = self._call_llm(build_summary_prompt(transcript, language, duration))
        on_progress(80, "Saving summary")

        summary = self._build_summary(data, segments, job.options.language)
        json_path = task_dir / "summary.json"
        text_path = task_dir / "summary.txt"
        json_path.write_text(summary.model_dump_json(indent=2))
        text_path.write_text(render_summary_text(summary))

        on_progress(100, "Summary completed")
        return self.result(
            job,
            {"summary.json": str(json_path), "summary.txt": str(text_path)},
            {
                "model": self.model,
                "total_words": summary.total_words,
                "highlights": len(summary.highlights),
            },
        )

    def _call_llm(self, prompt: str) -> dict:
        try:
            response = self.client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": SYSTEM_PROMPT},
                    {"role": "user", "content": prompt},
                ],
                response_format={"type": "json_object"},
                temperature=0.3,
            )
        except openai.AuthenticationError as e:
            raise StageExecutionError(
                f"OpenAI authentication failed: {e}",
                kind=ErrorKind.INVALID_INPUT,
                component="summarization",
            )
        except openai.BadRequestError as e:
            raise StageExecutionError(
                f"OpenAI rejected the request: {e}",
                kind=ErrorKind.RESOURCE_EXCEEDED,
                component="summarization",
            )
        except openai.APITimeoutError as e:
            raise StageExecutionError(
                f"OpenAI request timed out: {e}", kind=ErrorKind.TIMEOUT, component="summarization"
            )
        except openai.APIError as e:
            raise StageExecutionError(
                f"OpenAI request failed: {e}", kind=ErrorKind.TRANSIENT, component="summarization"
            )
        return parse_llm_response(response.choices[0].message.content)

    def _build_summary(
        self, data: dict, segments: list[dict], language: str | None
    ) -> VideoSummary:
        text = data.get("summary")
        if not isinstance(text, str) or not text.strip():
            raise StageExecutionError(
                "Invalid summary format from OpenAI",
                kind=ErrorKind.TRANSIENT,
                component="summarization",
            )
        highlights = []
        for item in data.get("highlights") or []:
            try:
                highlights.append(Highlight.model_validate(item))
            except ValueError:
                logger.debug(f"Dropping malformed highlight: {item}")
        return VideoSummary(
            summary=text.strip(),
            highlights=highlights,
            topics=[t for t in data.get("topics") or [] if isinstance(t, str)],
            key_points=[p for p in data.get("key_points") or [] if isinstance(p, str)],
            conclusion=data.get("conclusion") if isinstance(data.get("conclusion"), str) else None,
            model=self.model,
            language=language or "auto",
            total_words=sum(len(s["text"].split()) for s in segments),
        )
