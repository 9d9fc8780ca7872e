"""Prompt templates for transcript summarization."""

SYSTEM_PROMPT = """You are a professional video content analyst.
Analyze video transcripts and provide comprehensive summaries.

Instructions:
- Focus on the main ideas, key insights, and important information
- Provide timestamps (in seconds) for significant moments when available
- Use clear, concise language
- Always return valid JSON

Return JSON with this exact structure:
{
  "summary": "2-3 sentence overview of the main content",
  "highlights": [{"start": 35.2, "end": 48.5, "note": "Key point or insight"}],
  "topics": ["topic1", "topic2"],
  "key_points": ["point1", "point2"],
  "conclusion": "Brief conclusion if applicable"
}"""


def build_summary_prompt(transcript: str, language: str, duration: float) -> str:
    """Build the user prompt for one transcript."""
    return f"""Analyze this video transcript and summarize it in {language}.

Video duration: {round(duration)} seconds ({round(duration / 60)} minutes)

Transcript:
{transcript}
"""
