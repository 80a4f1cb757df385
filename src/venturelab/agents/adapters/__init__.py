"""AI backend adapters."""

from .base import AgentAuthenticationError, RequestThrottle
from .gemini import GeminiAdapter

__all__ = ["AgentAuthenticationError", "GeminiAdapter", "RequestThrottle"]
