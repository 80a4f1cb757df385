"""Request and response models for the HTTP API."""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field


class StepResponse(BaseModel):
    """Result of executing one step."""

    run_id: int
    phase: str | None
    has_more: bool
    error: str | None = None
    chained: bool = Field(default=False, description="Whether the next step was scheduled")


class RecoveryEntry(BaseModel):
    run_id: int
    status: str
    resumed: bool
    error: str | None = None


class SweepResponse(BaseModel):
    """Outcome of a recovery sweep."""

    checked: int
    results: list[RecoveryEntry] = Field(default_factory=list)
    timestamp: datetime


class HypothesisSummary(BaseModel):
    uuid: str
    hypothesis_number: int
    display_title: str
    processing_status: str
    error_message: str | None = None
    technical_total: float | None = None
    competitive_total: float | None = None


class RunDetailResponse(BaseModel):
    """Run state plus a summary of its hypotheses."""

    id: int
    project_id: int
    job_name: str
    status: str
    current_step: int
    progress: dict[str, Any] = Field(default_factory=dict)
    error_message: str | None = None
    updated_at: datetime
    completed_at: datetime | None = None
    hypotheses: list[HypothesisSummary] = Field(default_factory=list)
