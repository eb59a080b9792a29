"""API route modules."""

from digestion.api.routers import digestion, health

__all__ = ["digestion", "health"]
