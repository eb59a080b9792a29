"""
Supabase Client Wrapper

Provides async-compatible wrapper for Supabase operations on captures,
thoughts (digest summaries), and ideas (derived items).
"""

import asyncio
from datetime import UTC, datetime
from functools import lru_cache
from typing import Any

from supabase import Client, create_client

from digestion.config import config
from digestion.errors import PersistenceError
from digestion.queue.models import CaptureStatus, DigestResult
from digestion.utils.logger import get_logger

logger = get_logger(__name__)


class SupabaseClient:
    """Wrapper for Supabase database operations.

    The underlying client is synchronous; every call runs in a worker thread
    so the event loop (and the job timeout) keeps running.
    """

    def __init__(self, client: Client, captures_table: str | None = None) -> None:
        self._client = client
        self._captures_table = captures_table or config.captures_table

    # ----- Capture Operations -----

    async def get_capture(self, capture_id: str) -> dict[str, Any] | None:
        """
        Fetch a capture record by ID.

        Args:
            capture_id: UUID of the capture.

        Returns:
            Capture record dict or None if not found.

        Raises:
            PersistenceError: If the query itself failed.
        """

        def query() -> list[dict[str, Any]]:
            response = (
                self._client.table(self._captures_table)
                .select("*")
                .eq("id", capture_id)
                .limit(1)
                .execute()
            )
            return response.data or []

        try:
            rows = await asyncio.to_thread(query)
        except Exception as e:
            logger.error(f"Failed to fetch capture {capture_id}: {e}")
            raise PersistenceError(f"Failed to fetch capture {capture_id}: {e}") from e

        return rows[0] if rows else None

    async def update_status(
        self,
        capture_id: str,
        status: CaptureStatus,
        extra_fields: dict[str, Any] | None = None,
    ) -> None:
        """
        Update the digestion status of a capture.

        Args:
            capture_id: UUID of the capture.
            status: New digestion status.
            extra_fields: Additional columns to write (timestamps, error details).

        Raises:
            PersistenceError: If the update failed.
        """
        update_data: dict[str, Any] = {
            "status": status.value,
            "updated_at": datetime.now(UTC).isoformat(),
            **(extra_fields or {}),
        }

        def update() -> None:
            self._client.table(self._captures_table).update(update_data).eq(
                "id", capture_id
            ).execute()

        try:
            await asyncio.to_thread(update)
        except Exception as e:
            logger.error(f"Failed to update capture {capture_id} status to {status.value}: {e}")
            raise PersistenceError(
                f"Failed to update capture {capture_id} status: {e}"
            ) from e

        logger.debug(f"Updated capture {capture_id} status to {status.value}")

    # ----- Thought / Idea Operations -----

    async def create_with_items(
        self,
        capture_id: str,
        owner_id: str,
        summary: str,
        items: list[str],
        processing_time_ms: int,
        confidence_score: float | None,
    ) -> DigestResult:
        """
        Store a digest summary and its derived ideas.

        Args:
            capture_id: UUID of the digested capture.
            owner_id: UUID of the owner.
            summary: Digest summary text.
            items: Idea texts, in order.
            processing_time_ms: Time spent digesting so far.
            confidence_score: Numeric confidence, if the AI reported one.

        Returns:
            DigestResult with the new thought ID and idea count.

        Raises:
            PersistenceError: If either insert failed.
        """
        now = datetime.now(UTC).isoformat()

        def insert() -> DigestResult:
            thought = (
                self._client.table("thoughts")
                .insert(
                    {
                        "capture_id": capture_id,
                        "user_id": owner_id,
                        "summary": summary,
                        "processing_time_ms": processing_time_ms,
                        "confidence_score": confidence_score,
                        "created_at": now,
                        "updated_at": now,
                    }
                )
                .execute()
            )
            if not thought.data:
                raise PersistenceError(f"Thought insert for capture {capture_id} returned no row")
            thought_id = thought.data[0]["id"]

            if items:
                self._client.table("ideas").insert(
                    [
                        {
                            "thought_id": thought_id,
                            "user_id": owner_id,
                            "text": text,
                            "order_index": index,
                            "created_at": now,
                            "updated_at": now,
                        }
                        for index, text in enumerate(items)
                    ]
                ).execute()

            return DigestResult(thought_id=str(thought_id), item_count=len(items))

        try:
            result = await asyncio.to_thread(insert)
        except PersistenceError:
            raise
        except Exception as e:
            logger.error(f"Failed to store digest for capture {capture_id}: {e}")
            raise PersistenceError(f"Failed to store digest for capture {capture_id}: {e}") from e

        logger.info(
            f"Created thought {result.thought_id} with {result.item_count} ideas "
            f"for capture {capture_id}"
        )
        return result

    async def check_connection(self) -> bool:
        """Check that the captures table is reachable."""
        try:
            await asyncio.to_thread(
                lambda: self._client.table(self._captures_table).select("id").limit(1).execute()
            )
            return True
        except Exception as e:
            logger.error(f"Supabase health check failed: {e}")
            return False


@lru_cache
def get_supabase_client() -> SupabaseClient:
    """Get cached Supabase client instance."""
    client = create_client(
        config.supabase_url,
        config.supabase_service_key.get_secret_value(),
    )
    return SupabaseClient(client)
