"""Summary output models."""

from pydantic import BaseModel, Field


class Highlight(BaseModel):
    start: float = Field(..., ge=0, description="Seconds from start")
    end: float = Field(..., ge=0, description="Seconds from start")
    note: str


class VideoSummary(BaseModel):
    """Structured summary written to summary.json."""

    summary: str = Field(..., min_length=1)
    highlights: list[Highlight] = Field(default_factory=list)
    topics: list[str] = Field(default_factory=list)
    key_points: list[str] = Field(default_factory=list)
    conclusion: str | None = None
    model: str = ""
    language: str = "auto"
    total_words: int = Field(default=0, ge=0)
