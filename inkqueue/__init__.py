"""inkqueue - async job queue with API key rotation for generation providers."""

__version__ = "1.0.0"
