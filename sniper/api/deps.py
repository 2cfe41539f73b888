from fastapi import HTTPException, Request, status

from sniper.jobs.coordinator import Coordinator
from sniper.services.repository import Repository


def get_coordinator(request: Request) -> Coordinator:
    coordinator = getattr(request.app.state, "coordinator", None)
    if coordinator is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="pipeline is not running")
    return coordinator


def get_repository(request: Request) -> Repository:
    return get_coordinator(request).repository
