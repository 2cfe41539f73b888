from fastapi import APIRouter, Depends, HTTPException, status

from sniper.api.deps import get_coordinator
from sniper.core.security import require_admin_key
from sniper.jobs.coordinator import Coordinator
from sniper.schemas.admin import CycleReport, StatsOut
from sniper.services.repository import RepositoryUnavailableError

router = APIRouter(dependencies=[Depends(require_admin_key)])


@router.post("/trigger", response_model=CycleReport)
async def trigger_cycle(coordinator: Coordinator = Depends(get_coordinator)) -> CycleReport:
    report = await coordinator.trigger()
    if report.status == "failed":
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=report.error or "cycle failed")
    if report.status == "skipped":
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=report.error or "cycle skipped")
    return report


@router.get("/stats", response_model=StatsOut)
async def get_stats(coordinator: Coordinator = Depends(get_coordinator)) -> StatsOut:
    try:
        return await coordinator.stats()
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
