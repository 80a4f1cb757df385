"""AI backend layer."""

from .protocol import ResearchClient, ResearchFile, ResearchStatus

__all__ = ["ResearchClient", "ResearchFile", "ResearchStatus"]
