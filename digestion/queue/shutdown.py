"""
Graceful Shutdown Coordinator

Tracks in-flight job handlers and, once shutdown starts, refuses new work and
waits for every tracked handler to settle, whatever its outcome.
"""

import asyncio
from typing import Any

from digestion.utils.logger import get_logger

logger = get_logger(__name__)


class GracefulShutdownCoordinator:
    """Shutdown flag plus the set of in-flight handler futures."""

    def __init__(self) -> None:
        self._shutting_down = asyncio.Event()
        self._in_flight: set[asyncio.Future[Any]] = set()

    @property
    def is_shutting_down(self) -> bool:
        return self._shutting_down.is_set()

    @property
    def in_flight_count(self) -> int:
        return len(self._in_flight)

    def track(self, future: asyncio.Future[Any]) -> asyncio.Future[Any]:
        """Register a handler future; it is forgotten once it completes."""
        self._in_flight.add(future)
        future.add_done_callback(self._in_flight.discard)
        return future

    async def wait_for_shutdown(self, timeout: float | None = None) -> bool:
        """
        Block until shutdown starts.

        Args:
            timeout: Maximum wait in seconds.

        Returns:
            True if shutdown started, False if the timeout elapsed first.
        """
        try:
            await asyncio.wait_for(self._shutting_down.wait(), timeout)
        except TimeoutError:
            return False
        return True

    async def shutdown(self) -> list[Any]:
        """
        Stop accepting work and wait for all in-flight handlers.

        Handlers are never cancelled here; each is bounded by the job timeout.

        Returns:
            Results or exceptions of the handlers that were in flight.
        """
        self._shutting_down.set()
        pending = list(self._in_flight)
        logger.info(f"Shutting down, waiting for {len(pending)} in-flight job(s)")

        if not pending:
            return []

        results = await asyncio.gather(*pending, return_exceptions=True)
        failures = [r for r in results if isinstance(r, BaseException)]
        if failures:
            logger.warning(f"{len(failures)} in-flight job(s) ended with an error during shutdown")
        logger.info("All in-flight jobs settled")
        return results
