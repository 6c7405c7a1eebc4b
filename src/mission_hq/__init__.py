"""Task orchestration engine for AI agent missions."""

__version__ = "0.1.0"
