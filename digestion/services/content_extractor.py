"""Content extraction for digestion.

Audio captures are digested from their transcript, text captures from the
raw text. Whitespace is collapsed and oversized content is truncated.
"""

import re

from digestion.config import config
from digestion.errors import ContentExtractionError
from digestion.queue.models import ContentType, ExtractedContent, content_type_for_capture
from digestion.services.interfaces import ContentRepository
from digestion.utils.logger import get_logger

logger = get_logger(__name__)

_WHITESPACE = re.compile(r"[ \t]+")
_BLANK_LINES = re.compile(r"\n{3,}")

# Capture columns tried in order for each content type
TEXT_FIELDS: dict[ContentType, tuple[str, ...]] = {
    ContentType.AUDIO_TRANSCRIBED: ("normalized_text", "transcript", "raw_content"),
    ContentType.TEXT: ("raw_content", "normalized_text"),
}


def normalize_text(text: str) -> str:
    text = _WHITESPACE.sub(" ", text.replace("\r\n", "\n"))
    text = _BLANK_LINES.sub("\n\n", text)
    return text.strip()


class CaptureContentExtractor:
    """Loads digestible text for a capture from the content repository."""

    def __init__(self, captures: ContentRepository, max_chars: int | None = None) -> None:
        self._captures = captures
        self.max_chars = max_chars or config.max_content_chars

    async def extract_content(self, capture_id: str) -> ExtractedContent:
        """
        Load and clean the text to digest.

        Args:
            capture_id: Capture to read.

        Returns:
            ExtractedContent with the text and its content type.

        Raises:
            ContentExtractionError: Capture missing or has no text.
        """
        capture = await self._captures.get_capture(capture_id)
        if capture is None:
            raise ContentExtractionError(f"Capture {capture_id} not found")

        content_type = content_type_for_capture(capture)
        text = ""
        for field in TEXT_FIELDS[content_type]:
            value = capture.get(field)
            if isinstance(value, str) and value.strip():
                text = normalize_text(value)
                break

        if not text:
            raise ContentExtractionError(
                f"Capture {capture_id} has no {content_type.value} content to digest"
            )

        if len(text) > self.max_chars:
            logger.warning(
                f"Truncating capture {capture_id} from {len(text)} to {self.max_chars} chars"
            )
            text = text[: self.max_chars]

        return ExtractedContent(content=text, content_type=content_type)
