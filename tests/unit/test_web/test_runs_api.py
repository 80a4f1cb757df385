from datetime import UTC, datetime

from fastapi import FastAPI
from fastapi.testclient import TestClient

from venturelab.pipeline.models import Phase, StepResult
from venturelab.web.api import cron, runs
from venturelab.web.models.api_models import (
    HypothesisSummary,
    RecoveryEntry,
    RunDetailResponse,
    SweepResponse,
)

SECRET = "s3cret"


class _FakeService:
    def __init__(self, result: StepResult | None = None):
        self.result = result or StepResult(Phase.RUN_RESEARCH_POLLING, True)
        self.processed: list[int] = []
        self.chained: list[int] = []
        self.swept = 0

    def check_secret(self, provided):
        return provided == SECRET

    async def process_step(self, run_id):
        self.processed.append(run_id)
        return self.result

    async def chain(self, run_id):
        self.chained.append(run_id)
        return True

    async def sweep(self):
        self.swept += 1
        return SweepResponse(
            checked=1,
            results=[RecoveryEntry(run_id=4, status="running", resumed=True)],
            timestamp=datetime.now(UTC),
        )

    async def get_run_detail(self, run_id):
        if run_id != 3:
            return None
        return RunDetailResponse(
            id=3,
            project_id=1,
            job_name="Coatings",
            status="running",
            current_step=2,
            progress={"message": "Researching 2 hypotheses"},
            updated_at=datetime.now(UTC),
            hypotheses=[
                HypothesisSummary(
                    uuid="h-1",
                    hypothesis_number=1,
                    display_title="Solar glass",
                    processing_status="completed",
                    technical_total=78.0,
                )
            ],
        )


def _build_client(fake_service):
    app = FastAPI()
    runs._run_service = fake_service
    app.include_router(runs.router, prefix="/api/runs")
    app.include_router(cron.router, prefix="/api/cron")
    return TestClient(app)


def test_process_requires_secret():
    fake = _FakeService()
    client = _build_client(fake)

    assert client.post("/api/runs/3/process").status_code == 401
    assert client.post("/api/runs/3/process", headers={"x-cron-secret": "wrong"}).status_code == 401
    assert fake.processed == []


def test_process_runs_one_step_and_chains():
    fake = _FakeService()
    client = _build_client(fake)

    response = client.post("/api/runs/3/process", headers={"x-cron-secret": SECRET})

    assert response.status_code == 200
    assert response.json() == {
        "run_id": 3,
        "phase": "step2_1_polling",
        "has_more": True,
        "error": None,
        "chained": True,
    }
    assert fake.processed == [3]
    assert fake.chained == [3]


def test_process_does_not_chain_when_finished():
    fake = _FakeService(StepResult(Phase.ERROR, False, "target_spec resource not found"))
    client = _build_client(fake)

    response = client.post("/api/runs/3/process", headers={"x-cron-secret": SECRET})

    body = response.json()
    assert body["has_more"] is False
    assert body["error"] == "target_spec resource not found"
    assert fake.chained == []


def test_get_run_detail():
    client = _build_client(_FakeService())

    response = client.get("/api/runs/3")

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "running"
    assert body["hypotheses"][0]["technical_total"] == 78.0


def test_get_missing_run_returns_404():
    client = _build_client(_FakeService())

    assert client.get("/api/runs/9").status_code == 404


def test_cron_requires_bearer_token():
    fake = _FakeService()
    client = _build_client(fake)

    assert client.get("/api/cron/process-runs").status_code == 401
    assert client.get("/api/cron/process-runs", headers={"Authorization": SECRET}).status_code == 401
    assert fake.swept == 0


def test_cron_sweeps_stale_runs():
    fake = _FakeService()
    client = _build_client(fake)

    response = client.get("/api/cron/process-runs", headers={"Authorization": f"Bearer {SECRET}"})

    assert response.status_code == 200
    body = response.json()
    assert body["checked"] == 1
    assert body["results"] == [{"run_id": 4, "status": "running", "resumed": True, "error": None}]
    assert fake.swept == 1


def test_uninitialized_service_returns_500():
    client = _build_client(None)

    assert client.get("/api/runs/3").status_code == 500
