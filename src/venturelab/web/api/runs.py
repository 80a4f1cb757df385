"""
Runs REST API endpoints.

Provides:
- POST /api/runs/{run_id}/process - Execute one step and chain the next
- GET /api/runs/{run_id} - Run status with hypothesis summaries
"""

import logging
from typing import Annotated

from fastapi import APIRouter, BackgroundTasks, Depends, Header, HTTPException

from ...config import AppConfig
from ..models.api_models import RunDetailResponse, StepResponse
from ..services.run_service import RunService

logger = logging.getLogger(__name__)

router = APIRouter(tags=["runs"])

_run_service: RunService | None = None


async def init_run_service(config: AppConfig, service: RunService | None = None) -> None:
    """Initialize run service (called by server.py on startup)."""
    global _run_service
    _run_service = service or RunService(config)
    await _run_service.initialize()


async def shutdown_run_service() -> None:
    """Shutdown run service (called by server.py on shutdown)."""
    global _run_service
    if _run_service:
        await _run_service.close()
        _run_service = None


def get_run_service() -> RunService:
    """Get initialized run service dependency."""
    if _run_service is None:
        raise HTTPException(status_code=500, detail="Run service not initialized")
    return _run_service


@router.post("/{run_id}/process", response_model=StepResponse)
async def process_run(
    run_id: int,
    background_tasks: BackgroundTasks,
    service: Annotated[RunService, Depends(get_run_service)],
    x_cron_secret: Annotated[str | None, Header()] = None,
) -> StepResponse:
    """
    Execute exactly one step for a run.

    When more work remains the next step is requested in the background so
    the response is not held open while the next step runs.

    Headers:
        - x-cron-secret: Shared secret
    """
    if not service.check_secret(x_cron_secret):
        raise HTTPException(status_code=401, detail="Unauthorized")

    result = await service.process_step(run_id)
    phase = result.phase.value if result.phase is not None else None
    logger.info(f"Run {run_id}: phase={phase} has_more={result.has_more}")

    if result.has_more:
        background_tasks.add_task(service.chain, run_id)

    return StepResponse(
        run_id=run_id,
        phase=phase,
        has_more=result.has_more,
        error=result.error,
        chained=result.has_more,
    )


@router.get("/{run_id}", response_model=RunDetailResponse)
async def get_run(
    run_id: int,
    service: Annotated[RunService, Depends(get_run_service)],
) -> RunDetailResponse:
    """Get current state of a run."""
    detail = await service.get_run_detail(run_id)
    if detail is None:
        raise HTTPException(status_code=404, detail=f"Run {run_id} not found")
    return detail
