"""Gemini digestion service.

Turns captured text into a summary plus a list of ideas. The prompt asks for
JSON only; markdown fences around the JSON are tolerated.
"""

import asyncio
import json

import google.generativeai as genai
from pydantic import ValidationError

from digestion.config import config
from digestion.errors import DigestionResponseError
from digestion.queue.models import ContentType, DigestionResponse
from digestion.utils.logger import get_logger

logger = get_logger(__name__)

DIGESTION_PROMPT = """You are digesting a note the user captured{source}.

NOTE:
{content}

Produce:
1. "summary": one or two sentences capturing what the note is about.
2. "ideas": the distinct ideas, tasks, or insights in the note, each a short standalone sentence.
   Return an empty list if there are none.
3. "confidence": "high", "medium", or "low" depending on how clear the note is.

Return ONLY valid JSON in this format:
{{"summary": "...", "ideas": ["...", "..."], "confidence": "high"}}
"""

SOURCE_HINTS = {
    ContentType.AUDIO_TRANSCRIBED: " as a voice memo (automatic transcript, may contain recognition errors)",
    ContentType.TEXT: " as text",
}


def strip_code_fences(response_text: str) -> str:
    """Remove markdown code fences the model sometimes wraps JSON in."""
    response_text = response_text.strip()
    if response_text.startswith("```json"):
        response_text = response_text[7:]
    if response_text.startswith("```"):
        response_text = response_text[3:]
    if response_text.endswith("```"):
        response_text = response_text[:-3]
    return response_text.strip()


def parse_digestion_response(response_text: str) -> DigestionResponse:
    """
    Parse and validate the model output.

    Args:
        response_text: Raw model text.

    Returns:
        Validated DigestionResponse.

    Raises:
        DigestionResponseError: Output is not JSON or does not match the schema.
    """
    try:
        data = json.loads(strip_code_fences(response_text))
    except json.JSONDecodeError as e:
        raise DigestionResponseError(f"Gemini response is not valid JSON: {e}") from e

    if isinstance(data, dict) and isinstance(data.get("confidence"), str):
        data["confidence"] = data["confidence"].lower()

    try:
        return DigestionResponse.model_validate(data)
    except ValidationError as e:
        raise DigestionResponseError(f"Gemini response has unexpected shape: {e}") from e


class GeminiDigestionService:
    """Digests capture text with Google Gemini."""

    def __init__(
        self,
        api_key: str | None = None,
        model: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ):
        self.model_name = model or config.gemini_model
        self.temperature = temperature if temperature is not None else config.gemini_temperature
        self.max_tokens = max_tokens or config.gemini_max_tokens

        genai.configure(api_key=api_key or config.google_ai_api_key.get_secret_value())
        self.model = genai.GenerativeModel(
            model_name=self.model_name,
            generation_config=genai.GenerationConfig(
                temperature=self.temperature,
                max_output_tokens=self.max_tokens,
                response_mime_type="application/json",
            ),
        )
        logger.info(f"Digestion service initialized with model: {self.model_name}")

    async def digest(self, content: str, content_type: ContentType) -> DigestionResponse:
        """
        Summarize a note and pull out its ideas.

        Args:
            content: Cleaned capture text.
            content_type: Where the text came from.

        Returns:
            DigestionResponse with summary, ideas, and confidence.

        Raises:
            DigestionResponseError: The model returned unusable output.
        """
        prompt = DIGESTION_PROMPT.format(
            content=content,
            source=SOURCE_HINTS[content_type],
        )

        response = await asyncio.to_thread(self.model.generate_content, prompt)
        digest = parse_digestion_response(response.text)

        logger.debug(
            f"Gemini digestion: {len(digest.ideas)} ideas, confidence {digest.confidence}"
        )
        return digest
