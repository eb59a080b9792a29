"""Shared utilities for the digestion worker and API."""
