"""HTTP API for submitting captures and inspecting the digestion queue."""
