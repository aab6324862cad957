"""Web UI and NDJSON bridge for the opencode CLI."""

__version__ = "0.1.0"
