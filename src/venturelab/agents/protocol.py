"""
Protocol definitions for the AI backend.

The pipeline needs two capabilities: short synchronous generation, and a
start/poll/cleanup triad for long-running research tasks that cannot finish
within one executor invocation.
"""

from dataclasses import dataclass
from typing import Literal, Protocol, runtime_checkable

from ..pipeline.models import DeepResearchHandle

ResearchState = Literal["pending", "running", "completed", "failed"]


@dataclass
class ResearchFile:
    """A named document made available to a research task."""

    name: str
    content: str


@dataclass
class ResearchStatus:
    """Result of polling a research task."""

    status: ResearchState
    result: str | None = None
    error: str | None = None

    @property
    def is_finished(self) -> bool:
        return self.status in ("completed", "failed")


@runtime_checkable
class ResearchClient(Protocol):
    """
    Protocol for AI backends used by the step executor.

    Implementations may throttle research starts internally; the executor
    never sees that.
    """

    async def generate_content(self, prompt: str) -> str:
        """
        Generate text for a prompt.

        Raises:
            ContentGenerationError: If generation fails or returns nothing
        """
        ...

    async def start_deep_research(
        self,
        prompt: str,
        files: list[ResearchFile],
        store_name: str,
    ) -> DeepResearchHandle:
        """
        Submit a research task and return immediately.

        Args:
            prompt: Research request
            files: Documents the task may search
            store_name: Display name for the remote document store

        Returns:
            Handle needed to poll or clean up the task
        """
        ...

    async def check_deep_research(self, handle: DeepResearchHandle) -> ResearchStatus:
        """Cheap status check for a previously started task."""
        ...

    async def cleanup_deep_research(self, handle: DeepResearchHandle) -> None:
        """Release remote resources tied to the handle."""
        ...
