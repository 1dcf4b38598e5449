"""Prompt storage, search, lifecycle maintenance, usage tracking and statistics."""

__version__ = "0.1.0"
__all__ = ["models", "storage", "queries", "lifecycle", "tracking", "stats"]