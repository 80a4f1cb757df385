"""Persistence interface consumed by the step executor."""

from typing import Any, Protocol, runtime_checkable

from ..pipeline.models import ExistingFilter, ExistingHypothesis, Hypothesis, Resource, Run


@runtime_checkable
class PipelineStore(Protocol):
    """
    Storage capability for runs, hypotheses and input resources.

    ``update_run_status`` and ``update_hypothesis`` take partial updates as
    keyword arguments named after model fields.
    """

    async def get_run(self, run_id: int) -> Run | None: ...

    async def get_resource(self, resource_id: int) -> Resource | None: ...

    async def update_run_status(self, run_id: int, **updates: Any) -> None: ...

    async def create_hypothesis(self, hypothesis: Hypothesis) -> Hypothesis: ...

    async def get_hypothesis(self, uuid: str) -> Hypothesis | None: ...

    async def update_hypothesis(self, uuid: str, **updates: Any) -> None: ...

    async def get_hypotheses_for_run(self, run_id: int) -> list[Hypothesis]: ...

    async def get_existing_hypotheses(
        self, project_id: int, existing_filter: ExistingFilter
    ) -> list[ExistingHypothesis]: ...
