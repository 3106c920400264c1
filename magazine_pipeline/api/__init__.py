"""Layout bridge HTTP API."""
