"""Collaborator interfaces used by the digestion pipeline and submission service."""

from typing import Any, Protocol

from digestion.queue.models import (
    CaptureStatus,
    ContentType,
    DigestionResponse,
    DigestResult,
    ExtractedContent,
)


class ContentRepository(Protocol):
    """Capture records and their digestion status."""

    async def get_capture(self, capture_id: str) -> dict[str, Any] | None: ...

    async def update_status(
        self,
        capture_id: str,
        status: CaptureStatus,
        extra_fields: dict[str, Any] | None = None,
    ) -> None: ...


class ContentExtractor(Protocol):
    """Loads digestible text for a capture."""

    async def extract_content(self, capture_id: str) -> ExtractedContent: ...


class DigestionService(Protocol):
    """AI service producing a summary and ideas from text."""

    async def digest(self, content: str, content_type: ContentType) -> DigestionResponse: ...


class DerivedItemRepository(Protocol):
    """Stores the digest and its derived items."""

    async def create_with_items(
        self,
        capture_id: str,
        owner_id: str,
        summary: str,
        items: list[str],
        processing_time_ms: int,
        confidence_score: float | None,
    ) -> DigestResult: ...


class EventBus(Protocol):
    """Topic-based event publication."""

    async def publish(self, topic: str, payload: dict[str, Any]) -> None: ...
