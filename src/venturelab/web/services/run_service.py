"""
Run service backing the HTTP endpoints.

Owns the store, the AI adapter, the executor and the chainer for the life of
the app.
"""

import logging
import secrets
from datetime import UTC, datetime

from ...agents.adapters.base import RequestThrottle
from ...agents.adapters.gemini import GeminiAdapter
from ...config import AppConfig
from ...pipeline.executor import StepExecutor
from ...pipeline.models import Hypothesis, Run, StepResult
from ...pipeline.runner import StepChainer, recover_stale_runs
from ...store.sqlite import RunStore
from ..models.api_models import (
    HypothesisSummary,
    RecoveryEntry,
    RunDetailResponse,
    SweepResponse,
)

logger = logging.getLogger(__name__)


def _reported_total(hypothesis: Hypothesis, rubric: str) -> float | None:
    scores = hypothesis.full_data.get("scores") or {}
    data = (scores.get(rubric) or {}).get("data") or {}
    return data.get("weighted_total")


def summarize_run(run: Run, hypotheses: list[Hypothesis]) -> RunDetailResponse:
    progress = run.progress_info.model_dump(mode="json", exclude_none=True)
    return RunDetailResponse(
        id=run.id,
        project_id=run.project_id,
        job_name=run.job_name,
        status=run.status,
        current_step=run.current_step,
        progress=progress,
        error_message=run.error_message,
        updated_at=run.updated_at,
        completed_at=run.completed_at,
        hypotheses=[
            HypothesisSummary(
                uuid=h.uuid,
                hypothesis_number=h.hypothesis_number,
                display_title=h.display_title,
                processing_status=h.processing_status,
                error_message=h.error_message,
                technical_total=_reported_total(h, "technical"),
                competitive_total=_reported_total(h, "competitive"),
            )
            for h in hypotheses
        ],
    )


class RunService:
    """Executes steps, chains the next one and sweeps stale runs."""

    def __init__(
        self,
        config: AppConfig,
        store: RunStore | None = None,
        executor: StepExecutor | None = None,
        chainer: StepChainer | None = None,
    ):
        self.config = config
        self.cron_secret = config.get_cron_secret()
        self.store = store or RunStore(config.storage.db_path)
        if executor is None:
            adapter = GeminiAdapter(
                model=config.ai.model,
                api_key=config.get_api_key(),
                research_agent=config.ai.deep_research_agent,
                base_url=config.ai.base_url,
                timeout=config.ai.timeout_seconds,
                max_retries=config.ai.max_retries,
                throttle=RequestThrottle(config.ai.min_request_interval_seconds),
            )
            executor = StepExecutor(self.store, adapter, config.pipeline)
        self.executor = executor
        self.chainer = chainer or StepChainer(
            base_url=config.scheduler.base_url,
            cron_secret=self.cron_secret,
            max_retries=config.scheduler.chain_max_retries,
            timeout=config.scheduler.chain_timeout_seconds,
        )

    def check_secret(self, provided: str | None) -> bool:
        """Constant-time comparison; always False when no secret is configured."""
        if not self.cron_secret or not provided:
            return False
        return secrets.compare_digest(provided, self.cron_secret)

    async def initialize(self) -> None:
        await self.store.initialize()

    async def close(self) -> None:
        await self.store.close()

    async def process_step(self, run_id: int) -> StepResult:
        return await self.executor.execute_step(run_id)

    async def chain(self, run_id: int) -> bool:
        return await self.chainer.schedule_next(run_id)

    async def sweep(self) -> SweepResponse:
        results = await recover_stale_runs(
            self.store,
            self.chainer.schedule_next,
            stale_after_seconds=self.config.scheduler.stale_after_seconds,
            limit=self.config.scheduler.recovery_batch_size,
        )
        return SweepResponse(
            checked=len(results),
            results=[RecoveryEntry(**r.to_dict()) for r in results],
            timestamp=datetime.now(UTC),
        )

    async def get_run_detail(self, run_id: int) -> RunDetailResponse | None:
        run = await self.store.get_run(run_id)
        if run is None:
            return None
        hypotheses = await self.store.get_hypotheses_for_run(run_id)
        return summarize_run(run, hypotheses)
