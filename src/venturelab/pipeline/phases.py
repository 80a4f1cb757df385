"""
Phase resolution: map persisted run state to the next unit of work.

Everything here is pure. The executor calls ``next_phase`` on freshly loaded
state and dispatches on the result; nothing is remembered between calls.
"""

from dataclasses import dataclass, field

from .models import (
    DONE_HYPOTHESIS_STATUSES,
    EVALUATION_STATUSES,
    TERMINAL_RUN_STATUSES,
    Hypothesis,
    Phase,
    ProgressInfo,
)

DEFAULT_MAX_CONCURRENT = 5


@dataclass
class HypothesisBuckets:
    """Partition of a run's hypotheses by research/evaluation state."""

    pending: list[Hypothesis] = field(default_factory=list)
    polling: list[Hypothesis] = field(default_factory=list)
    ready: list[Hypothesis] = field(default_factory=list)
    evaluating: list[Hypothesis] = field(default_factory=list)
    done: list[Hypothesis] = field(default_factory=list)
    stuck: list[Hypothesis] = field(default_factory=list)

    @property
    def startable(self) -> list[Hypothesis]:
        """Pending first, then stuck."""
        return self.pending + self.stuck


def categorize_hypotheses(hypotheses: list[Hypothesis]) -> HypothesisBuckets:
    """
    Partition hypotheses by state.

    A hypothesis in ``step2_2`` is polling (handle, no output), ready (output
    present) or stuck (neither), never more than one.
    """
    buckets = HypothesisBuckets()
    for h in hypotheses:
        status = h.processing_status
        if status == "pending":
            buckets.pending.append(h)
        elif status == "step2_2":
            if h.has_research_output:
                buckets.ready.append(h)
            elif h.research_handle is not None:
                buckets.polling.append(h)
            else:
                buckets.stuck.append(h)
        elif status in EVALUATION_STATUSES:
            buckets.evaluating.append(h)
        elif status in DONE_HYPOTHESIS_STATUSES:
            buckets.done.append(h)
    return buckets


def next_phase(
    status: str,
    current_step: int,
    hypotheses: list[Hypothesis],
    progress_info: ProgressInfo | None = None,
    max_concurrent: int = DEFAULT_MAX_CONCURRENT,
) -> Phase | None:
    """
    Decide the next phase for a run. First matching rule wins.

    Args:
        status: Run status
        current_step: Coarse step index (1 once run-level research output is stored)
        hypotheses: All hypotheses of the run
        progress_info: Run progress bag, consulted for in-flight handles
        max_concurrent: Maximum hypotheses researched at once

    Returns:
        Phase to execute, or None when there is nothing to do
    """
    if status in TERMINAL_RUN_STATUSES or status == "paused":
        return None

    if progress_info is not None:
        if progress_info.research_handle is not None:
            return Phase.RUN_RESEARCH_POLLING
        if progress_info.legacy_hypothesis_handle is not None:
            return Phase.HYPOTHESIS_RESEARCH_POLLING

    if status == "pending":
        return Phase.RUN_RESEARCH_START

    if status != "running":
        return None

    if current_step == 1:
        # A stored batch means structuring was interrupted after extraction.
        if not hypotheses or (progress_info is not None and progress_info.structuring_batch is not None):
            return Phase.STRUCTURING

    buckets = categorize_hypotheses(hypotheses)

    if buckets.polling:
        return Phase.HYPOTHESIS_RESEARCH_POLLING

    if buckets.startable and len(buckets.polling) < max_concurrent:
        return Phase.HYPOTHESIS_RESEARCH_START

    if buckets.ready or buckets.evaluating:
        return Phase.EVALUATION

    if hypotheses and len(buckets.done) == len(hypotheses):
        return Phase.COMPLETED

    return None
