"""Glass HTTP API."""
