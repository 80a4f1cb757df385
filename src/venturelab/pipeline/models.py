"""
Data models for pipeline runs.

This module defines the persisted state the step executor works from:
- Run: one pipeline execution and its progress bag
- Hypothesis: one candidate business idea spawned by a run
- DeepResearchHandle: reference to an in-flight asynchronous research task
- Phase / StepResult: what the executor did and whether more work remains
"""

from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Literal
from uuid import uuid4

from pydantic import BaseModel, Field

RunStatus = Literal["pending", "running", "paused", "completed", "error", "cancelled"]
HypothesisStatus = Literal["pending", "step2_2", "step3", "step4", "step5", "completed", "error"]
ResourceKind = Literal["target_spec", "technical_assets"]

TERMINAL_RUN_STATUSES: frozenset[str] = frozenset({"completed", "error", "cancelled"})
EVALUATION_STATUSES: frozenset[str] = frozenset({"step3", "step4", "step5"})
DONE_HYPOTHESIS_STATUSES: frozenset[str] = frozenset({"completed", "error"})

# Key under Hypothesis.full_data holding the in-flight research handle.
HANDLE_KEY = "research_handle"
# Key under Hypothesis.full_data counting research restarts after getting stuck.
RESTARTS_KEY = "research_restarts"
# Key under Hypothesis.full_data counting consecutive failed status checks.
POLL_ERRORS_KEY = "research_poll_errors"


def utcnow() -> datetime:
    return datetime.now(UTC)


class Phase(str, Enum):
    """Next unit of work for a run."""

    RUN_RESEARCH_START = "step2_1_start"
    RUN_RESEARCH_POLLING = "step2_1_polling"
    STRUCTURING = "step2_1_5"
    HYPOTHESIS_RESEARCH_START = "step2_2_start"
    HYPOTHESIS_RESEARCH_POLLING = "step2_2_polling"
    EVALUATION = "evaluation"
    COMPLETED = "completed"
    ERROR = "error"


class DeepResearchHandle(BaseModel):
    """Opaque reference to an in-flight research task; passed back to the adapter as-is."""

    interaction_id: str = Field(..., min_length=1)
    file_search_store_name: str | None = Field(
        default=None, description="Remote document store tied to the task, deleted on cleanup"
    )


class LegacyHypothesisHandle(BaseModel):
    """Single-hypothesis handle stored on the run by older versions."""

    hypothesis_uuid: str
    handle: DeepResearchHandle


class StructuringBatch(BaseModel):
    """Hypotheses extracted from run-level research, kept on the run until all are stored."""

    tier: str
    items: list[dict[str, str]] = Field(default_factory=list)


class ExistingFilter(BaseModel):
    """Restricts which previously generated hypotheses are excluded from new research."""

    enabled: bool = False
    target_spec_ids: list[int] | None = None
    technical_assets_ids: list[int] | None = None


class ProgressInfo(BaseModel):
    """Free-form progress bag persisted on the run. Unknown keys are preserved."""

    message: str | None = None
    phase: str | None = None
    research_handle: DeepResearchHandle | None = Field(
        default=None, description="Run-level in-flight research; at most one"
    )
    legacy_hypothesis_handle: LegacyHypothesisHandle | None = None
    existing_filter: ExistingFilter | None = None
    structuring_batch: StructuringBatch | None = None
    in_flight_count: int | None = None
    completed_count: int | None = None
    total_hypotheses: int | None = None

    model_config = {"extra": "allow"}


class Resource(BaseModel):
    """An input document referenced by runs."""

    id: int | None = None
    project_id: int
    kind: ResourceKind
    name: str
    content: str


class Run(BaseModel):
    """One pipeline execution."""

    id: int | None = None
    project_id: int
    job_name: str = ""
    target_spec_id: int | None = None
    technical_assets_id: int | None = None
    hypothesis_count: int = Field(default=5, ge=1)
    status: RunStatus = "pending"
    current_step: int = 0
    research_output: str | None = Field(
        default=None, description="Raw text produced by run-level research"
    )
    progress_info: ProgressInfo = Field(default_factory=ProgressInfo)
    error_message: str | None = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    completed_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_RUN_STATUSES


class Hypothesis(BaseModel):
    """A candidate business idea and its per-stage outputs."""

    uuid: str = Field(default_factory=lambda: str(uuid4()))
    run_id: int
    project_id: int
    hypothesis_number: int = Field(..., ge=1)
    index_in_run: int = Field(..., ge=0)
    display_title: str
    summary: str = ""
    research_detail: str | None = None
    technical_evaluation: str | None = None
    competitive_evaluation: str | None = None
    integration_output: str | None = None
    processing_status: HypothesisStatus = "pending"
    error_message: str | None = None
    full_data: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def research_handle(self) -> DeepResearchHandle | None:
        raw = self.full_data.get(HANDLE_KEY)
        if not raw:
            return None
        return DeepResearchHandle.model_validate(raw)

    @property
    def has_research_output(self) -> bool:
        return bool(self.research_detail)

    @property
    def restart_count(self) -> int:
        return int(self.full_data.get(RESTARTS_KEY, 0))

    @property
    def poll_error_count(self) -> int:
        return int(self.full_data.get(POLL_ERRORS_KEY, 0))


class ExistingHypothesis(BaseModel):
    """A hypothesis from an earlier run, listed so new research avoids repeating it."""

    title: str
    summary: str = ""


@dataclass
class StepResult:
    """Outcome of one executor invocation."""

    phase: Phase | None
    has_more: bool
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "phase": self.phase.value if self.phase else None,
            "has_more": self.has_more,
            "error": self.error,
        }
