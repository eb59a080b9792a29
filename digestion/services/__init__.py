"""Services used by the digestion pipeline and the submission API."""
