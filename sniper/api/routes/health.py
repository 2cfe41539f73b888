import logging

from fastapi import APIRouter, Depends, HTTPException, status

from sniper.api.deps import get_repository
from sniper.services.repository import Repository, RepositoryError

router = APIRouter()
logger = logging.getLogger(__name__)


@router.get("/livez")
async def livez() -> dict[str, str]:
    return {"status": "ok"}


@router.get("/readyz")
async def readyz(repository: Repository = Depends(get_repository)) -> dict[str, str]:
    try:
        ready = await repository.ping()
    except (RepositoryError, OSError) as exc:
        logger.warning("readiness check failed: %s", exc)
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    if not ready:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="store is not reachable")
    return {"status": "ready"}
