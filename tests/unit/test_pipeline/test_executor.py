"""
Tests for the step executor.

These tests drive runs through an in-memory store with a fake AI client and
verify:
- The full phase sequence from submission to completion
- Terminal runs are left untouched
- Run-level failures mark the run as error
- Per-hypothesis failures are isolated
- Concurrency and restart caps
"""

import json

import pytest
import pytest_asyncio

from venturelab.agents.protocol import ResearchStatus
from venturelab.config import PipelineConfig
from venturelab.pipeline.errors import ContentGenerationError, DeepResearchError
from venturelab.pipeline.executor import StepExecutor, score_evaluations
from venturelab.pipeline.models import (
    HANDLE_KEY,
    POLL_ERRORS_KEY,
    RESTARTS_KEY,
    DeepResearchHandle,
    Hypothesis,
    LegacyHypothesisHandle,
    Phase,
    ProgressInfo,
    Resource,
    Run,
    StructuringBatch,
)
from venturelab.store.sqlite import RunStore

TECHNICAL_REPORT = """\
当該テーマの魅力度：高
当該テーマについての総評：有望。
科学的妥当性（20％）：4
製造実現性（15％）：3
性能優位（20％）：5
粗利率（20％）：4
市場魅力度（10％）：4
規制・安全環境（5％）：4
知財防衛（5％）：3
戦略適合（5％）：2
8項目の加重合計（100点満点）：78.0
"""

COMPETITIVE_REPORT = """\
事業価値×参入確率に基づく魅力度：高
参入確率：高
資産転用性（20％）：4
投資・運転と回収見通し（20％）：3
サプライチェーン実現性（15％）：4
規制・安全適合（15％）：5
FTO／知財自由度（10％）：3
チャネル適合（10％）：4
パートナー入手性（10％）：3
7項目の加重合計（100点満点）：80.0
"""


class FakeResearchClient:
    """In-process stand-in for the AI backend."""

    def __init__(self, titles: tuple[str, ...] = ("Solar glass", "Wind blades")):
        self.titles = titles
        self.started: list[tuple[str, list, str]] = []
        self.statuses: dict[str, ResearchStatus] = {}
        self.cleaned: list[str] = []
        self.prompts: list[str] = []
        self.fail_start_for: set[str] = set()
        self.fail_generate_for: str | None = None
        self._counter = 0

    async def start_deep_research(self, prompt, files, store_name):
        if any(marker in store_name for marker in self.fail_start_for):
            raise DeepResearchError("start refused")
        self._counter += 1
        self.started.append((prompt, files, store_name))
        return DeepResearchHandle(
            interaction_id=f"int-{self._counter}",
            file_search_store_name=f"stores/{self._counter}",
        )

    async def check_deep_research(self, handle):
        return self.statuses.get(handle.interaction_id, ResearchStatus("running"))

    async def cleanup_deep_research(self, handle):
        self.cleaned.append(handle.interaction_id)

    async def generate_content(self, prompt):
        self.prompts.append(prompt)
        if self.fail_generate_for and self.fail_generate_for in prompt:
            raise ContentGenerationError("model unavailable")
        if prompt.startswith("以下の調査レポートから"):
            return json.dumps(
                {"hypotheses": [{"title": t, "summary": f"{t} summary"} for t in self.titles]}
            )
        if prompt.startswith("以下の仮説を技術"):
            return TECHNICAL_REPORT
        if prompt.startswith("以下の仮説を事業参入"):
            return COMPETITIVE_REPORT
        return "Integrated report"


@pytest_asyncio.fixture
async def store():
    s = RunStore(":memory:")
    await s.initialize()
    yield s
    await s.close()


@pytest.fixture
def ai():
    return FakeResearchClient()


async def _submit(store: RunStore, **fields) -> Run:
    spec = await store.create_resource(
        Resource(project_id=1, kind="target_spec", name="spec", content="Needs of automotive OEMs")
    )
    assets = await store.create_resource(
        Resource(project_id=1, kind="technical_assets", name="assets", content="Thin-film coating know-how")
    )
    fields.setdefault("target_spec_id", spec.id)
    fields.setdefault("technical_assets_id", assets.id)
    return await store.create_run(Run(project_id=1, hypothesis_count=2, job_name="Coatings", **fields))


async def _add_hypothesis(store: RunStore, run: Run, n: int, **fields) -> Hypothesis:
    fields.setdefault("display_title", f"Idea {n}")
    return await store.create_hypothesis(
        Hypothesis(run_id=run.id, project_id=1, hypothesis_number=n, index_in_run=n - 1, **fields)
    )


def _handle(n: int) -> dict:
    return {"interaction_id": f"int-{n}", "file_search_store_name": f"stores/{n}"}


@pytest.mark.asyncio
async def test_missing_run(store, ai):
    result = await StepExecutor(store, ai).execute_step(99)

    assert result.phase == Phase.ERROR
    assert not result.has_more
    assert result.error == "Run 99 not found"


@pytest.mark.asyncio
async def test_full_run_lifecycle(store, ai):
    """Test a run from submission to completion, one step at a time."""
    executor = StepExecutor(store, ai)
    run = await _submit(store)

    # Run-level research starts and persists its handle
    result = await executor.execute_step(run.id)
    assert (result.phase, result.has_more) == (Phase.RUN_RESEARCH_START, True)
    loaded = await store.get_run(run.id)
    assert loaded.status == "running"
    assert loaded.progress_info.research_handle.interaction_id == "int-1"
    _, files, store_name = ai.started[0]
    assert store_name == f"venturelab-run-{run.id}-research"
    assert [f.name for f in files] == ["target_specification", "technical_assets", "task_instructions"]
    assert files[0].content == "Needs of automotive OEMs"

    # Still running: handle kept
    result = await executor.execute_step(run.id)
    assert result.phase == Phase.RUN_RESEARCH_POLLING
    assert (await store.get_run(run.id)).progress_info.research_handle is not None

    # Completed: output stored, handle cleared, remote resources released
    ai.statuses["int-1"] = ResearchStatus("completed", result="Market findings")
    result = await executor.execute_step(run.id)
    loaded = await store.get_run(run.id)
    assert loaded.current_step == 1
    assert loaded.research_output == "Market findings"
    assert loaded.progress_info.research_handle is None
    assert ai.cleaned == ["int-1"]

    # Structuring
    result = await executor.execute_step(run.id)
    assert result.phase == Phase.STRUCTURING
    hypotheses = await store.get_hypotheses_for_run(run.id)
    assert [h.display_title for h in hypotheses] == ["Solar glass", "Wind blades"]
    assert [h.hypothesis_number for h in hypotheses] == [1, 2]
    assert hypotheses[0].full_data["structuring"] == "ai"
    assert (await store.get_run(run.id)).current_step == 2

    # Both hypotheses start research
    result = await executor.execute_step(run.id)
    assert result.phase == Phase.HYPOTHESIS_RESEARCH_START
    hypotheses = await store.get_hypotheses_for_run(run.id)
    assert [h.processing_status for h in hypotheses] == ["step2_2", "step2_2"]
    assert [h.research_handle.interaction_id for h in hypotheses] == ["int-2", "int-3"]

    # One finishes, one keeps running
    ai.statuses["int-2"] = ResearchStatus("completed", result="Solar detail")
    result = await executor.execute_step(run.id)
    assert result.phase == Phase.HYPOTHESIS_RESEARCH_POLLING
    first, second = await store.get_hypotheses_for_run(run.id)
    assert first.research_detail == "Solar detail"
    assert HANDLE_KEY not in first.full_data
    assert second.research_handle is not None

    # Polling wins over evaluating the ready one
    ai.statuses["int-3"] = ResearchStatus("completed", result="Wind detail")
    result = await executor.execute_step(run.id)
    assert result.phase == Phase.HYPOTHESIS_RESEARCH_POLLING
    assert (await store.get_run(run.id)).progress_info.completed_count == 2

    # One evaluation per step
    for _ in range(2):
        result = await executor.execute_step(run.id)
        assert (result.phase, result.has_more) == (Phase.EVALUATION, True)

    hypotheses = await store.get_hypotheses_for_run(run.id)
    assert [h.processing_status for h in hypotheses] == ["completed", "completed"]
    assert hypotheses[0].technical_evaluation == TECHNICAL_REPORT
    assert hypotheses[0].integration_output == "Integrated report"
    scores = hypotheses[0].full_data["scores"]
    assert scores["technical"]["weighted_total_check"] == {
        "reported": 78.0,
        "calculated": 78.0,
        "consistent": True,
    }
    assert scores["competitive"]["weighted_total_check"]["consistent"] is False

    result = await executor.execute_step(run.id)
    assert (result.phase, result.has_more) == (Phase.COMPLETED, False)
    loaded = await store.get_run(run.id)
    assert loaded.status == "completed"
    assert loaded.current_step == 5
    assert loaded.completed_at is not None
    assert loaded.progress_info.completed_count == 2

    # 1 structuring call plus 3 evaluation calls per hypothesis
    assert len(ai.prompts) == 7


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("status", "phase"),
    [("completed", Phase.COMPLETED), ("error", Phase.ERROR), ("cancelled", Phase.ERROR)],
)
async def test_terminal_runs_are_not_modified(store, ai, status, phase):
    run = await _submit(store, status=status, error_message="boom" if status == "error" else None)

    result = await StepExecutor(store, ai).execute_step(run.id)

    assert result.phase == phase
    assert not result.has_more
    if status == "error":
        assert result.error == "boom"
    loaded = await store.get_run(run.id)
    assert loaded.updated_at == run.updated_at
    assert loaded.status == status
    assert ai.started == []


@pytest.mark.asyncio
async def test_paused_run_does_nothing(store, ai):
    run = await _submit(
        store,
        status="paused",
        progress_info=ProgressInfo(research_handle=DeepResearchHandle(**_handle(1))),
    )

    result = await StepExecutor(store, ai).execute_step(run.id)

    assert result.phase is None
    assert not result.has_more
    assert (await store.get_run(run.id)).status == "paused"


@pytest.mark.asyncio
async def test_missing_resource_marks_run_error(store, ai):
    run = await _submit(store, target_spec_id=None)

    result = await StepExecutor(store, ai).execute_step(run.id)

    assert result.phase == Phase.ERROR
    assert not result.has_more
    assert result.error == "target_spec resource not found"
    loaded = await store.get_run(run.id)
    assert loaded.status == "error"
    assert loaded.error_message == "target_spec resource not found"


@pytest.mark.asyncio
async def test_start_failure_leaves_no_handle(store, ai):
    ai.fail_start_for = {"research"}
    run = await _submit(store)

    result = await StepExecutor(store, ai).execute_step(run.id)

    assert result.error == "start refused"
    loaded = await store.get_run(run.id)
    assert loaded.status == "error"
    assert loaded.progress_info.research_handle is None


@pytest.mark.asyncio
async def test_run_research_failure(store, ai):
    run = await _submit(
        store,
        status="running",
        progress_info=ProgressInfo(research_handle=DeepResearchHandle(**_handle(5))),
    )
    ai.statuses["int-5"] = ResearchStatus("failed", error="quota exceeded")

    result = await StepExecutor(store, ai).execute_step(run.id)

    assert result.phase == Phase.ERROR
    assert result.error == "Deep research failed: quota exceeded"
    assert ai.cleaned == ["int-5"]
    assert (await store.get_run(run.id)).status == "error"


@pytest.mark.asyncio
async def test_structuring_batch_saved_before_records(store, ai):
    run = await _submit(store, status="running", current_step=1, research_output="Market findings")
    batches_seen = []
    create = store.create_hypothesis

    async def recording_create(hypothesis):
        batches_seen.append((await store.get_run(run.id)).progress_info.structuring_batch)
        return await create(hypothesis)

    store.create_hypothesis = recording_create

    await StepExecutor(store, ai).execute_step(run.id)

    assert [len(batch.items) for batch in batches_seen] == [2, 2]
    loaded = await store.get_run(run.id)
    assert loaded.current_step == 2
    assert loaded.progress_info.structuring_batch is None
    assert loaded.progress_info.total_hypotheses == 2


@pytest.mark.asyncio
async def test_interrupted_structuring_creates_missing_hypotheses(store, ai):
    batch = StructuringBatch(
        tier="ai",
        items=[{"title": "Solar glass", "summary": "s"}, {"title": "Wind blades", "summary": "w"}],
    )
    run = await _submit(
        store,
        status="running",
        current_step=1,
        research_output="Market findings",
        progress_info=ProgressInfo(structuring_batch=batch),
    )
    await _add_hypothesis(store, run, 1, display_title="Solar glass", summary="s")

    result = await StepExecutor(store, ai).execute_step(run.id)

    assert result.phase == Phase.STRUCTURING
    assert ai.prompts == []
    hypotheses = await store.get_hypotheses_for_run(run.id)
    assert [h.display_title for h in hypotheses] == ["Solar glass", "Wind blades"]
    assert [h.index_in_run for h in hypotheses] == [0, 1]
    loaded = await store.get_run(run.id)
    assert loaded.current_step == 2
    assert loaded.progress_info.structuring_batch is None


@pytest.mark.asyncio
async def test_existing_filter_is_sent_with_instructions(store, ai):
    previous = await _submit(store, status="completed")
    await _add_hypothesis(store, previous, 1, display_title="Old idea", summary="Already explored")
    run = await _submit(
        store,
        progress_info=ProgressInfo.model_validate(
            {"existing_filter": {"enabled": True, "target_spec_ids": [previous.target_spec_id]}}
        ),
    )

    await StepExecutor(store, ai).execute_step(run.id)

    _, files, _ = ai.started[0]
    assert "Old idea" in files[2].content
    loaded = await store.get_run(run.id)
    assert loaded.progress_info.existing_filter.enabled


@pytest.mark.asyncio
async def test_concurrency_cap(store, ai):
    run = await _submit(store, status="running", current_step=2)
    for n in (1, 2, 3):
        await _add_hypothesis(store, run, n)
    executor = StepExecutor(store, ai, PipelineConfig(max_concurrent_research=2))

    result = await executor.execute_step(run.id)

    assert result.phase == Phase.HYPOTHESIS_RESEARCH_START
    statuses = [h.processing_status for h in await store.get_hypotheses_for_run(run.id)]
    assert statuses == ["step2_2", "step2_2", "pending"]

    result = await executor.execute_step(run.id)
    assert result.phase == Phase.HYPOTHESIS_RESEARCH_POLLING
    assert len(ai.started) == 2


@pytest.mark.asyncio
async def test_start_failure_is_isolated(store, ai):
    run = await _submit(store, status="running", current_step=2)
    await _add_hypothesis(store, run, 1, uuid="bad00000-0000-0000-0000-000000000000")
    await _add_hypothesis(store, run, 2)
    ai.fail_start_for = {"bad00000"}

    result = await StepExecutor(store, ai).execute_step(run.id)

    assert result.has_more
    first, second = await store.get_hypotheses_for_run(run.id)
    assert first.processing_status == "error"
    assert first.error_message == "start refused"
    assert second.processing_status == "step2_2"
    assert (await store.get_run(run.id)).status == "running"


@pytest.mark.asyncio
async def test_stuck_hypothesis_restart_cap(store, ai):
    run = await _submit(store, status="running", current_step=2)
    await _add_hypothesis(store, run, 1, processing_status="step2_2", full_data={RESTARTS_KEY: 1})
    await _add_hypothesis(store, run, 2, processing_status="step2_2")
    executor = StepExecutor(store, ai, PipelineConfig(max_research_restarts=1))

    result = await executor.execute_step(run.id)

    assert result.phase == Phase.HYPOTHESIS_RESEARCH_START
    first, second = await store.get_hypotheses_for_run(run.id)
    assert first.processing_status == "error"
    assert first.error_message == "Research stalled after 1 restarts"
    assert second.processing_status == "step2_2"
    assert second.restart_count == 1
    assert second.research_handle is not None


@pytest.mark.asyncio
async def test_poll_errors_keep_hypothesis_running(store, ai):
    run = await _submit(store, status="running", current_step=2)
    await _add_hypothesis(store, run, 1, processing_status="step2_2", full_data={HANDLE_KEY: _handle(8)})

    async def broken_check(handle):
        raise RuntimeError("network down")

    ai.check_deep_research = broken_check

    result = await StepExecutor(store, ai).execute_step(run.id)

    assert result.phase == Phase.HYPOTHESIS_RESEARCH_POLLING
    assert result.has_more
    (hypothesis,) = await store.get_hypotheses_for_run(run.id)
    assert hypothesis.research_handle.interaction_id == "int-8"
    assert hypothesis.poll_error_count == 1
    assert (await store.get_run(run.id)).status == "running"


@pytest.mark.asyncio
async def test_repeated_poll_errors_mark_hypothesis_error(store, ai):
    run = await _submit(store, status="running", current_step=2)
    await _add_hypothesis(store, run, 1, processing_status="step2_2", full_data={HANDLE_KEY: _handle(8)})
    await _add_hypothesis(store, run, 2, processing_status="completed", research_detail="done")

    async def expired_check(handle):
        raise RuntimeError("404 interaction not found")

    ai.check_deep_research = expired_check
    executor = StepExecutor(store, ai, PipelineConfig(max_poll_errors=3))

    for _ in range(2):
        result = await executor.execute_step(run.id)
        assert result.phase == Phase.HYPOTHESIS_RESEARCH_POLLING
    stuck, _ = await store.get_hypotheses_for_run(run.id)
    assert stuck.processing_status == "step2_2"
    assert stuck.poll_error_count == 2

    await executor.execute_step(run.id)

    failed, _ = await store.get_hypotheses_for_run(run.id)
    assert failed.processing_status == "error"
    assert "404 interaction not found" in failed.error_message
    assert failed.research_handle is None
    assert POLL_ERRORS_KEY not in failed.full_data
    assert ai.cleaned == ["int-8"]

    final = await executor.execute_step(run.id)
    assert final.phase == Phase.COMPLETED
    assert not final.has_more
    assert (await store.get_run(run.id)).status == "completed"


@pytest.mark.asyncio
async def test_successful_poll_resets_error_count(store, ai):
    run = await _submit(store, status="running", current_step=2)
    await _add_hypothesis(
        store, run, 1, processing_status="step2_2", full_data={HANDLE_KEY: _handle(8), POLL_ERRORS_KEY: 2}
    )

    await StepExecutor(store, ai, PipelineConfig(max_poll_errors=3)).execute_step(run.id)

    (hypothesis,) = await store.get_hypotheses_for_run(run.id)
    assert hypothesis.poll_error_count == 0
    assert hypothesis.research_handle.interaction_id == "int-8"


@pytest.mark.asyncio
async def test_failed_hypothesis_research(store, ai):
    run = await _submit(store, status="running", current_step=2)
    await _add_hypothesis(store, run, 1, processing_status="step2_2", full_data={HANDLE_KEY: _handle(4)})
    ai.statuses["int-4"] = ResearchStatus("failed", error="agent crashed")

    await StepExecutor(store, ai).execute_step(run.id)

    (hypothesis,) = await store.get_hypotheses_for_run(run.id)
    assert hypothesis.processing_status == "error"
    assert hypothesis.error_message == "agent crashed"
    assert hypothesis.research_handle is None
    assert ai.cleaned == ["int-4"]


@pytest.mark.asyncio
async def test_evaluation_failure_is_isolated(store, ai):
    run = await _submit(store, status="running", current_step=2)
    await _add_hypothesis(store, run, 1, display_title="Wind blades", processing_status="step2_2", research_detail="x")
    await _add_hypothesis(store, run, 2, display_title="Solar glass", processing_status="step2_2", research_detail="y")
    ai.fail_generate_for = "Wind blades"
    executor = StepExecutor(store, ai)

    result = await executor.execute_step(run.id)

    assert (result.phase, result.has_more) == (Phase.EVALUATION, True)
    first, second = await store.get_hypotheses_for_run(run.id)
    assert first.processing_status == "error"
    assert first.error_message == "model unavailable"
    assert (await store.get_run(run.id)).status == "running"

    await executor.execute_step(run.id)
    result = await executor.execute_step(run.id)

    assert result.phase == Phase.COMPLETED
    assert (await store.get_hypothesis(second.uuid)).processing_status == "completed"
    assert (await store.get_run(run.id)).progress_info.completed_count == 1


@pytest.mark.asyncio
async def test_evaluation_resumes_after_stored_stages(store, ai):
    run = await _submit(store, status="running", current_step=2)
    await _add_hypothesis(
        store,
        run,
        1,
        processing_status="step4",
        research_detail="detail",
        technical_evaluation=TECHNICAL_REPORT,
    )

    await StepExecutor(store, ai).execute_step(run.id)

    assert len(ai.prompts) == 2
    assert ai.prompts[0].startswith("以下の仮説を事業参入")
    assert TECHNICAL_REPORT in ai.prompts[0]
    (hypothesis,) = await store.get_hypotheses_for_run(run.id)
    assert hypothesis.processing_status == "completed"
    assert hypothesis.competitive_evaluation == COMPETITIVE_REPORT


@pytest.mark.asyncio
async def test_legacy_handle_completes_hypothesis(store, ai):
    run = await _submit(store, status="running", current_step=2)
    hypothesis = await _add_hypothesis(store, run, 1, processing_status="step2_2")
    legacy = LegacyHypothesisHandle(hypothesis_uuid=hypothesis.uuid, handle=DeepResearchHandle(**_handle(3)))
    await store.update_run_status(run.id, progress_info=ProgressInfo(legacy_hypothesis_handle=legacy))
    ai.statuses["int-3"] = ResearchStatus("completed", result="legacy detail")
    executor = StepExecutor(store, ai)

    result = await executor.execute_step(run.id)

    assert result.phase == Phase.HYPOTHESIS_RESEARCH_POLLING
    assert (await store.get_hypothesis(hypothesis.uuid)).research_detail == "legacy detail"
    assert (await store.get_run(run.id)).progress_info.legacy_hypothesis_handle is None
    assert (await executor.execute_step(run.id)).phase == Phase.EVALUATION


@pytest.mark.asyncio
async def test_legacy_handle_for_missing_hypothesis(store, ai):
    legacy = LegacyHypothesisHandle(hypothesis_uuid="gone", handle=DeepResearchHandle(**_handle(3)))
    run = await _submit(
        store, status="running", current_step=2, progress_info=ProgressInfo(legacy_hypothesis_handle=legacy)
    )

    result = await StepExecutor(store, ai).execute_step(run.id)

    assert result.phase == Phase.ERROR
    assert result.error == "Hypothesis gone not found"


def test_score_evaluations_on_unparseable_reports():
    scores = score_evaluations("no scores here", COMPETITIVE_REPORT)

    assert scores["technical"]["success"] is False
    assert scores["technical"]["weighted_total_check"]["consistent"] is None
    assert scores["competitive"]["data"]["entry_probability"] == "高"
