"""
Pipeline orchestration: phase resolution, step execution and run recovery.

The executor lives in ``venturelab.pipeline.executor`` and the callers in
``venturelab.pipeline.runner``.
"""

from .errors import PipelineError
from .models import (
    DeepResearchHandle,
    Hypothesis,
    Phase,
    ProgressInfo,
    Resource,
    Run,
    StepResult,
)
from .phases import categorize_hypotheses, next_phase

__all__ = [
    "DeepResearchHandle",
    "Hypothesis",
    "Phase",
    "PipelineError",
    "ProgressInfo",
    "Resource",
    "Run",
    "StepResult",
    "categorize_hypotheses",
    "next_phase",
]
