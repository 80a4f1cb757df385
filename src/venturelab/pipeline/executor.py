"""
Step executor: performs exactly one unit of pipeline work per call.

Each call loads the run, asks ``next_phase`` what to do, runs one handler,
persists the result (always refreshing ``updated_at``), and reports whether
more work remains. Nothing is kept in memory between calls, so any caller
(self-chaining HTTP requests, a local loop, the recovery sweep) can drive a
run from wherever it was left.

Long research calls use a start/poll/cleanup lifecycle: the start handler
persists the handle before returning, polls re-persist it while running, and
completion cleans up, stores the output and clears the handle.
"""

import logging
from datetime import datetime
from typing import TYPE_CHECKING, Any, Awaitable, Callable

from ..agents.protocol import ResearchFile
from ..config import PipelineConfig
from ..parsers import (
    check_competitive_total,
    check_technical_total,
    parse_competitive_evaluation,
    parse_technical_evaluation,
)
from ..utils.logging import StructuredLogger
from .errors import DeepResearchError, HypothesisNotFoundError, MissingResourceError, get_error_message
from .models import (
    HANDLE_KEY,
    POLL_ERRORS_KEY,
    RESTARTS_KEY,
    Hypothesis,
    Phase,
    ProgressInfo,
    Resource,
    Run,
    StepResult,
    StructuringBatch,
    utcnow,
)
from .phases import categorize_hypotheses, next_phase
from .prompts import (
    HYPOTHESIS_RESEARCH_INSTRUCTIONS,
    HYPOTHESIS_RESEARCH_PROMPT,
    RUN_RESEARCH_PROMPT,
    build_competitive_prompt,
    build_hypothesis_research_context,
    build_integration_prompt,
    build_research_instructions,
    build_technical_prompt,
)
from .structuring import build_hypothesis_context, structure_hypotheses

if TYPE_CHECKING:
    from ..agents.protocol import ResearchClient
    from ..store.protocol import PipelineStore

logger = logging.getLogger(__name__)

Handler = Callable[[Run, list[Hypothesis], StructuredLogger], Awaitable[bool]]


def _without_handle(full_data: dict[str, Any]) -> dict[str, Any]:
    data = dict(full_data)
    data.pop(HANDLE_KEY, None)
    data.pop(POLL_ERRORS_KEY, None)
    return data


class StepExecutor:
    """
    Drives a run one phase at a time.

    Usage:
        executor = StepExecutor(store, GeminiAdapter(api_key=...))
        result = await executor.execute_step(run_id)
        while result.has_more:
            result = await executor.execute_step(run_id)
    """

    def __init__(
        self,
        store: "PipelineStore",
        ai: "ResearchClient",
        config: PipelineConfig | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        """
        Initialize the executor.

        Args:
            store: Persistence collaborator
            ai: AI collaborator (generation plus research lifecycle)
            config: Concurrency cap, restart cap and truncation limits
            clock: Source of timestamps written to ``updated_at``
        """
        self.store = store
        self.ai = ai
        self.config = config or PipelineConfig()
        self._now = clock
        self._handlers: dict[Phase, Handler] = {
            Phase.RUN_RESEARCH_START: self._start_run_research,
            Phase.RUN_RESEARCH_POLLING: self._poll_run_research,
            Phase.STRUCTURING: self._structure,
            Phase.HYPOTHESIS_RESEARCH_START: self._start_hypothesis_research,
            Phase.HYPOTHESIS_RESEARCH_POLLING: self._poll_hypothesis_research,
            Phase.EVALUATION: self._evaluate,
            Phase.COMPLETED: self._complete,
        }

    async def execute_step(self, run_id: int) -> StepResult:
        """
        Execute the next unit of work for a run.

        Args:
            run_id: Run to advance

        Returns:
            StepResult with the phase executed and whether more work remains.
            Handler failures mark the run ``error`` and return has_more=False.
        """
        run = await self.store.get_run(run_id)
        if run is None:
            return StepResult(phase=Phase.ERROR, has_more=False, error=f"Run {run_id} not found")

        if run.status == "completed":
            return StepResult(phase=Phase.COMPLETED, has_more=False)
        if run.status in ("error", "cancelled"):
            return StepResult(phase=Phase.ERROR, has_more=False, error=run.error_message)

        log = StructuredLogger(__name__, run_id=run_id)

        try:
            hypotheses = await self.store.get_hypotheses_for_run(run_id)
            phase = next_phase(
                run.status,
                run.current_step,
                hypotheses,
                run.progress_info,
                max_concurrent=self.config.max_concurrent_research,
            )
            if phase is None:
                log.info(f"Nothing to do (status={run.status})")
                return StepResult(phase=None, has_more=False)

            log.info(f"Executing phase {phase.value}")
            has_more = await self._handlers[phase](run, hypotheses, log)
            return StepResult(phase=phase, has_more=has_more)

        except Exception as e:
            message = get_error_message(e)
            log.exception(f"Step failed: {message}")
            await self._mark_run_error(run_id, message, log)
            return StepResult(phase=Phase.ERROR, has_more=False, error=message)

    async def _mark_run_error(self, run_id: int, message: str, log: StructuredLogger) -> None:
        try:
            await self.store.update_run_status(
                run_id, status="error", error_message=message, updated_at=self._now()
            )
        except Exception as db_error:
            log.error(f"Failed to record run error: {db_error}")

    async def _update_run(self, run: Run, **updates: Any) -> None:
        updates["updated_at"] = self._now()
        await self.store.update_run_status(run.id, **updates)

    async def _load_resources(self, run: Run) -> tuple[Resource, Resource]:
        target = await self.store.get_resource(run.target_spec_id) if run.target_spec_id else None
        if target is None:
            raise MissingResourceError("target_spec", run.target_spec_id)
        assets = await self.store.get_resource(run.technical_assets_id) if run.technical_assets_id else None
        if assets is None:
            raise MissingResourceError("technical_assets", run.technical_assets_id)
        return target, assets

    # --- Run-level research ---

    async def _start_run_research(self, run: Run, hypotheses: list[Hypothesis], log: StructuredLogger) -> bool:
        target, assets = await self._load_resources(run)
        info = run.progress_info

        await self._update_run(
            run,
            progress_info=info.model_copy(
                update={"message": "Starting run-level research", "phase": Phase.RUN_RESEARCH_START.value}
            ),
        )

        existing = []
        if info.existing_filter and info.existing_filter.enabled:
            existing = await self.store.get_existing_hypotheses(run.project_id, info.existing_filter)
            log.info(f"Excluding {len(existing)} existing hypotheses")

        handle = await self.ai.start_deep_research(
            RUN_RESEARCH_PROMPT,
            [
                ResearchFile("target_specification", target.content),
                ResearchFile("technical_assets", assets.content),
                ResearchFile("task_instructions", build_research_instructions(run.hypothesis_count, existing)),
            ],
            store_name=f"venturelab-run-{run.id}-research",
        )
        log.info(f"Run-level research started: {handle.interaction_id}")

        # The status flips to running only together with the handle, so a
        # crash before this point leaves the run pending and it is restarted.
        await self._update_run(
            run,
            status="running",
            progress_info=ProgressInfo(
                message="Run-level research in progress",
                phase=Phase.RUN_RESEARCH_POLLING.value,
                research_handle=handle,
                existing_filter=info.existing_filter,
            ),
        )
        return True

    async def _poll_run_research(self, run: Run, hypotheses: list[Hypothesis], log: StructuredLogger) -> bool:
        info = run.progress_info
        handle = info.research_handle
        if handle is None:
            raise DeepResearchError("No run-level research handle in progress info")

        status = await self.ai.check_deep_research(handle)
        log.info(f"Run-level research {handle.interaction_id}: {status.status}")

        if status.status == "completed":
            await self.ai.cleanup_deep_research(handle)
            output = status.result or ""
            await self._update_run(
                run,
                current_step=1,
                research_output=output,
                progress_info=ProgressInfo(
                    message="Run-level research complete",
                    phase=Phase.RUN_RESEARCH_POLLING.value,
                    existing_filter=info.existing_filter,
                ),
            )
            log.info(f"Run-level research output: {len(output)} chars")
            return True

        if status.status == "failed":
            await self.ai.cleanup_deep_research(handle)
            raise DeepResearchError(f"Deep research failed: {status.error or 'unknown error'}")

        await self._update_run(
            run,
            progress_info=info.model_copy(update={"message": f"Run-level research {status.status}..."}),
        )
        return True

    async def _structure(self, run: Run, hypotheses: list[Hypothesis], log: StructuredLogger) -> bool:
        """
        Turn run-level research output into hypothesis records.

        The extracted batch is saved on the run before any record is created,
        so an interrupted step resumes with the same batch and only creates
        the records that are still missing.
        """
        info = run.progress_info
        batch = info.structuring_batch

        if batch is None:
            output = run.research_output or ""
            parsed, tier = await structure_hypotheses(
                self.ai,
                output,
                run.hypothesis_count,
                fallback_title=run.job_name,
                title_max=self.config.title_max_chars,
                summary_max=self.config.summary_max_chars,
                input_chars=self.config.structuring_input_chars,
            )
            log.info(f"Structured {len(parsed)} hypotheses ({tier})")
            batch = StructuringBatch(tier=tier, items=[item.to_dict() for item in parsed])
            info = info.model_copy(
                update={
                    "message": "Structuring hypotheses",
                    "phase": Phase.STRUCTURING.value,
                    "structuring_batch": batch,
                    "total_hypotheses": len(batch.items),
                }
            )
            await self._update_run(run, progress_info=info)
        else:
            log.info(f"Resuming structuring: {len(hypotheses)}/{len(batch.items)} hypotheses stored")

        stored = {h.index_in_run for h in hypotheses}
        for index, item in enumerate(batch.items):
            if index in stored:
                continue
            await self.store.create_hypothesis(
                Hypothesis(
                    run_id=run.id,
                    project_id=run.project_id,
                    hypothesis_number=index + 1,
                    index_in_run=index,
                    display_title=item["title"],
                    summary=item["summary"],
                    full_data={"raw": item, "structuring": batch.tier},
                )
            )

        await self._update_run(
            run,
            current_step=2,
            progress_info=info.model_copy(
                update={
                    "message": f"Created {len(batch.items)} hypotheses",
                    "phase": Phase.STRUCTURING.value,
                    "structuring_batch": None,
                    "total_hypotheses": len(batch.items),
                }
            ),
        )
        return True

    # --- Hypothesis research ---

    async def _start_hypothesis_research(
        self, run: Run, hypotheses: list[Hypothesis], log: StructuredLogger
    ) -> bool:
        target, assets = await self._load_resources(run)
        buckets = categorize_hypotheses(hypotheses)
        in_flight = len(buckets.polling)
        slots = self.config.max_concurrent_research - in_flight
        if slots <= 0:
            log.info(f"No research slots available ({in_flight} in flight)")
            return True

        to_start = buckets.startable[:slots]
        log.info(f"Starting research for {len(to_start)} hypotheses ({in_flight} in flight)")

        started = 0
        for hypothesis in to_start:
            if await self._start_one(run, hypothesis, target, assets, log):
                started += 1

        await self._update_run(
            run,
            progress_info=run.progress_info.model_copy(
                update={
                    "message": f"Researching {in_flight + started} hypotheses",
                    "phase": Phase.HYPOTHESIS_RESEARCH_POLLING.value,
                    "in_flight_count": in_flight + started,
                }
            ),
        )
        return True

    async def _start_one(
        self,
        run: Run,
        hypothesis: Hypothesis,
        target: Resource,
        assets: Resource,
        log: StructuredLogger,
    ) -> bool:
        """Start research for one hypothesis. Failures only affect that hypothesis."""
        hlog = log.add_context(hypothesis=hypothesis.hypothesis_number)
        full_data = _without_handle(hypothesis.full_data)

        if hypothesis.processing_status == "step2_2":
            restarts = hypothesis.restart_count
            if restarts >= self.config.max_research_restarts:
                message = f"Research stalled after {restarts} restarts"
                hlog.warning(message)
                await self.store.update_hypothesis(
                    hypothesis.uuid, processing_status="error", error_message=message, full_data=full_data
                )
                return False
            full_data[RESTARTS_KEY] = restarts + 1
            hlog.info(f"Restarting stalled research (restart {restarts + 1})")

        context = build_hypothesis_research_context(
            hypothesis.display_title, hypothesis.uuid, hypothesis.hypothesis_number, hypothesis.summary
        )
        try:
            handle = await self.ai.start_deep_research(
                HYPOTHESIS_RESEARCH_PROMPT,
                [
                    ResearchFile("target_specification", target.content),
                    ResearchFile("technical_assets", assets.content),
                    ResearchFile("hypothesis_context", context),
                    ResearchFile("task_instructions", HYPOTHESIS_RESEARCH_INSTRUCTIONS),
                ],
                store_name=f"venturelab-{run.id}-{hypothesis.uuid[:8]}",
            )
        except Exception as e:
            hlog.error(f"Failed to start research: {e}")
            await self.store.update_hypothesis(
                hypothesis.uuid,
                processing_status="error",
                error_message=get_error_message(e),
                full_data=full_data,
            )
            return False

        full_data[HANDLE_KEY] = handle.model_dump(mode="json")
        await self.store.update_hypothesis(hypothesis.uuid, processing_status="step2_2", full_data=full_data)
        hlog.info(f"Research started: {handle.interaction_id}")
        return True

    async def _poll_hypothesis_research(
        self, run: Run, hypotheses: list[Hypothesis], log: StructuredLogger
    ) -> bool:
        if run.progress_info.legacy_hypothesis_handle is not None:
            return await self._poll_legacy_handle(run, log)

        buckets = categorize_hypotheses(hypotheses)
        finished = 0
        still_running = 0

        for hypothesis in buckets.polling:
            handle = hypothesis.research_handle
            hlog = log.add_context(hypothesis=hypothesis.hypothesis_number)
            try:
                status = await self.ai.check_deep_research(handle)
                hlog.debug(f"Research status: {status.status}")

                if status.status == "completed":
                    await self.ai.cleanup_deep_research(handle)
                    await self.store.update_hypothesis(
                        hypothesis.uuid,
                        research_detail=status.result or "",
                        full_data=_without_handle(hypothesis.full_data),
                    )
                    finished += 1
                elif status.status == "failed":
                    hlog.error(f"Research failed: {status.error}")
                    await self.ai.cleanup_deep_research(handle)
                    await self.store.update_hypothesis(
                        hypothesis.uuid,
                        processing_status="error",
                        error_message=status.error or "Deep research failed",
                        full_data=_without_handle(hypothesis.full_data),
                    )
                    finished += 1
                else:
                    if hypothesis.poll_error_count:
                        full_data = dict(hypothesis.full_data)
                        full_data.pop(POLL_ERRORS_KEY)
                        await self.store.update_hypothesis(hypothesis.uuid, full_data=full_data)
                    still_running += 1
            except Exception as e:
                if await self._record_poll_error(hypothesis, e, hlog):
                    finished += 1
                else:
                    still_running += 1

        done = len(buckets.done) + len(buckets.ready) + len(buckets.evaluating) + finished
        await self._update_run(
            run,
            progress_info=run.progress_info.model_copy(
                update={
                    "message": f"{still_running} hypotheses researching, {done} done",
                    "phase": Phase.HYPOTHESIS_RESEARCH_POLLING.value,
                    "in_flight_count": still_running,
                    "completed_count": done,
                }
            ),
        )
        return True

    async def _record_poll_error(self, hypothesis: Hypothesis, error: Exception, hlog: StructuredLogger) -> bool:
        """
        Count a failed status check against the hypothesis.

        Returns True once the consecutive-failure cap is reached and the
        hypothesis has been marked error; False while it stays in flight.
        """
        errors = hypothesis.poll_error_count + 1
        limit = self.config.max_poll_errors
        hlog.error(f"Error polling research ({errors}/{limit}): {error}")

        if errors < limit:
            full_data = dict(hypothesis.full_data)
            full_data[POLL_ERRORS_KEY] = errors
            await self.store.update_hypothesis(hypothesis.uuid, full_data=full_data)
            return False

        try:
            await self.ai.cleanup_deep_research(hypothesis.research_handle)
        except Exception as e:
            hlog.warning(f"Cleanup after failed polling raised: {e}")
        await self.store.update_hypothesis(
            hypothesis.uuid,
            processing_status="error",
            error_message=f"Research status unavailable after {errors} attempts: {get_error_message(error)}",
            full_data=_without_handle(hypothesis.full_data),
        )
        return True

    async def _poll_legacy_handle(self, run: Run, log: StructuredLogger) -> bool:
        """Poll a single-hypothesis handle stored on the run by older versions."""
        info = run.progress_info
        legacy = info.legacy_hypothesis_handle
        hypothesis = await self.store.get_hypothesis(legacy.hypothesis_uuid)
        if hypothesis is None:
            raise HypothesisNotFoundError(legacy.hypothesis_uuid)

        status = await self.ai.check_deep_research(legacy.handle)
        log.info(f"Legacy research {legacy.handle.interaction_id}: {status.status}")

        if status.status in ("completed", "failed"):
            await self.ai.cleanup_deep_research(legacy.handle)
            if status.status == "completed":
                await self.store.update_hypothesis(
                    hypothesis.uuid, processing_status="step2_2", research_detail=status.result or ""
                )
            else:
                await self.store.update_hypothesis(
                    hypothesis.uuid,
                    processing_status="error",
                    error_message=status.error or "Deep research failed",
                )
            await self._update_run(
                run,
                progress_info=info.model_copy(
                    update={"legacy_hypothesis_handle": None, "message": "Legacy research finished"}
                ),
            )
            return True

        await self._update_run(
            run,
            progress_info=info.model_copy(update={"message": f"Hypothesis research {status.status}..."}),
        )
        return True

    # --- Evaluation ---

    async def _evaluate(self, run: Run, hypotheses: list[Hypothesis], log: StructuredLogger) -> bool:
        target, assets = await self._load_resources(run)
        buckets = categorize_hypotheses(hypotheses)
        # Interrupted evaluations resume before new ones begin.
        hypothesis = (buckets.evaluating + buckets.ready)[0]
        hlog = log.add_context(hypothesis=hypothesis.hypothesis_number)

        try:
            await self._evaluate_one(hypothesis, target, assets, hlog)
        except Exception as e:
            message = get_error_message(e)
            hlog.error(f"Evaluation failed: {message}")
            await self.store.update_hypothesis(hypothesis.uuid, processing_status="error", error_message=message)

        await self._update_run(
            run,
            progress_info=run.progress_info.model_copy(
                update={
                    "message": f"Evaluated hypothesis {hypothesis.hypothesis_number}",
                    "phase": Phase.EVALUATION.value,
                }
            ),
        )
        return True

    async def _evaluate_one(
        self,
        hypothesis: Hypothesis,
        target: Resource,
        assets: Resource,
        log: StructuredLogger,
    ) -> None:
        """Run the technical, competitive and integration stages, skipping any already stored."""
        context = build_hypothesis_context(
            hypothesis.display_title,
            hypothesis.uuid,
            hypothesis.summary,
            hypothesis.research_detail,
            target.content,
            assets.content,
        )

        technical = hypothesis.technical_evaluation
        if not technical:
            await self.store.update_hypothesis(hypothesis.uuid, processing_status="step3")
            technical = await self.ai.generate_content(build_technical_prompt(context))
            await self.store.update_hypothesis(hypothesis.uuid, technical_evaluation=technical)

        competitive = hypothesis.competitive_evaluation
        if not competitive:
            await self.store.update_hypothesis(hypothesis.uuid, processing_status="step4")
            competitive = await self.ai.generate_content(build_competitive_prompt(context, technical))
            await self.store.update_hypothesis(hypothesis.uuid, competitive_evaluation=competitive)

        integration = hypothesis.integration_output
        if not integration:
            await self.store.update_hypothesis(hypothesis.uuid, processing_status="step5")
            integration = await self.ai.generate_content(
                build_integration_prompt(context, technical, competitive)
            )

        full_data = dict(hypothesis.full_data)
        full_data["scores"] = score_evaluations(technical, competitive, log)
        await self.store.update_hypothesis(
            hypothesis.uuid,
            integration_output=integration,
            processing_status="completed",
            full_data=full_data,
        )
        log.info("Evaluation complete")

    async def _complete(self, run: Run, hypotheses: list[Hypothesis], log: StructuredLogger) -> bool:
        succeeded = sum(1 for h in hypotheses if h.processing_status == "completed")
        now = self._now()
        await self._update_run(
            run,
            status="completed",
            current_step=5,
            completed_at=now,
            progress_info=ProgressInfo(
                message="Completed",
                phase=Phase.COMPLETED.value,
                total_hypotheses=len(hypotheses),
                completed_count=succeeded,
            ),
        )
        log.info(f"Run completed ({succeeded}/{len(hypotheses)} hypotheses succeeded)")
        return False


def score_evaluations(technical: str, competitive: str, log: StructuredLogger | None = None) -> dict[str, Any]:
    """
    Parse both evaluation reports and check their reported totals.

    Returns:
        Dict with ``technical`` and ``competitive`` entries, each holding the
        parse result and a ``weighted_total_check``
    """
    technical_result = parse_technical_evaluation(technical)
    competitive_result = parse_competitive_evaluation(competitive)
    checks = {
        "technical": check_technical_total(technical_result.data),
        "competitive": check_competitive_total(competitive_result.data),
    }

    scores: dict[str, Any] = {}
    for name, result in (("technical", technical_result), ("competitive", competitive_result)):
        check = checks[name]
        if log is not None:
            if not result.success:
                log.warning(f"{name} report incomplete: {'; '.join(result.errors)}")
            if check.consistent is False:
                log.warning(
                    f"{name} weighted total mismatch: reported {check.reported}, calculated {check.calculated}"
                )
        scores[name] = {**result.to_dict(), "weighted_total_check": check.to_dict()}
    return scores
