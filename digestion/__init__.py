"""Capture digestion queue: priority job scheduling and AI digestion worker."""

__version__ = "1.0.0"
