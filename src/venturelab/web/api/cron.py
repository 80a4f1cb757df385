"""
Cron REST API endpoints.

Provides:
- GET /api/cron/process-runs - Resume runs that stopped making progress
"""

import logging
from typing import Annotated

from fastapi import APIRouter, Depends, Header, HTTPException

from ..models.api_models import SweepResponse
from ..services.run_service import RunService
from .runs import get_run_service

logger = logging.getLogger(__name__)

router = APIRouter(tags=["cron"])


def _bearer_token(authorization: str | None) -> str | None:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token:
        return None
    return token.strip()


@router.get("/process-runs", response_model=SweepResponse)
async def process_runs(
    service: Annotated[RunService, Depends(get_run_service)],
    authorization: Annotated[str | None, Header()] = None,
) -> SweepResponse:
    """
    Sweep stale runs and re-trigger each one.

    Headers:
        - Authorization: Bearer <cron secret>
    """
    if not service.check_secret(_bearer_token(authorization)):
        raise HTTPException(status_code=401, detail="Unauthorized")

    sweep = await service.sweep()
    resumed = sum(1 for r in sweep.results if r.resumed)
    logger.info(f"Cron sweep: {sweep.checked} stale runs, {resumed} resumed")
    return sweep
