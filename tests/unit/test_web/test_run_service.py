"""
Tests for the run service and app factory.

These tests verify:
- Secret checks fail closed when no secret is configured
- Run details summarize hypotheses and their reported totals
- The sweep triggers stale runs through the chainer
- The app lifecycle initializes and closes the service
"""

from datetime import timedelta

import pytest
import pytest_asyncio
from fastapi.testclient import TestClient

from venturelab.config import AppConfig
from venturelab.pipeline.models import Hypothesis, Run, utcnow
from venturelab.store.sqlite import RunStore
from venturelab.web import create_app
from venturelab.web.api import runs
from venturelab.web.services.run_service import RunService


class _FakeExecutor:
    async def execute_step(self, run_id):
        raise AssertionError("not expected")


class _FakeChainer:
    def __init__(self):
        self.scheduled: list[int] = []

    async def schedule_next(self, run_id):
        self.scheduled.append(run_id)
        return True


@pytest_asyncio.fixture
async def store():
    s = RunStore(":memory:")
    await s.initialize()
    yield s
    await s.close()


def _service(store, chainer=None) -> RunService:
    return RunService(AppConfig(), store=store, executor=_FakeExecutor(), chainer=chainer or _FakeChainer())


def test_check_secret(monkeypatch):
    monkeypatch.setenv("CRON_SECRET", "s3cret")
    service = _service(RunStore(":memory:"))

    assert service.check_secret("s3cret")
    assert not service.check_secret("other")
    assert not service.check_secret(None)


def test_check_secret_without_configured_secret(monkeypatch):
    monkeypatch.delenv("CRON_SECRET", raising=False)
    service = _service(RunStore(":memory:"))

    assert not service.check_secret("")
    assert not service.check_secret("anything")


@pytest.mark.asyncio
async def test_get_run_detail(store):
    run = await store.create_run(Run(project_id=1, job_name="Coatings", status="running", current_step=2))
    await store.create_hypothesis(
        Hypothesis(
            run_id=run.id,
            project_id=1,
            hypothesis_number=1,
            index_in_run=0,
            display_title="Solar glass",
            processing_status="completed",
            full_data={"scores": {"technical": {"data": {"weighted_total": 78.0}}}},
        )
    )
    service = _service(store)

    detail = await service.get_run_detail(run.id)

    assert detail.job_name == "Coatings"
    assert detail.hypotheses[0].technical_total == 78.0
    assert detail.hypotheses[0].competitive_total is None
    assert await service.get_run_detail(999) is None


@pytest.mark.asyncio
async def test_sweep_schedules_stale_runs(store):
    stale = await store.create_run(
        Run(project_id=1, status="running", updated_at=utcnow() - timedelta(hours=1))
    )
    await store.create_run(Run(project_id=1, status="running"))
    chainer = _FakeChainer()

    sweep = await _service(store, chainer).sweep()

    assert sweep.checked == 1
    assert sweep.results[0].run_id == stale.id
    assert sweep.results[0].resumed
    assert chainer.scheduled == [stale.id]


class _LifecycleService:
    def __init__(self):
        self.initialized = False
        self.closed = False

    async def initialize(self):
        self.initialized = True

    async def close(self):
        self.closed = True


def test_app_lifespan_manages_service():
    service = _LifecycleService()
    app = create_app(AppConfig(), service=service)

    with TestClient(app) as client:
        assert service.initialized
        assert runs._run_service is service
        assert client.get("/").json()["message"] == "venturelab API"

    assert service.closed
    assert runs._run_service is None
