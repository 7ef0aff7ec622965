#  HDR Backend - Health Route
#
#  Unauthenticated liveness probe, mounted at /health and /api/v1/health.
#
#  Depends on: container.py, models/schemas.py
#  Used by:    app.py

from dependency_injector.wiring import inject, Provide
from fastapi import APIRouter, Depends

from hdr_backend.container import Container
from hdr_backend.models.schemas import HealthOut
from hdr_backend.services.tasks import TaskRunner

router = APIRouter(tags=["health"])


@router.get("/health")
@inject
async def health(runner: TaskRunner = Depends(Provide[Container.runner])) -> HealthOut:
    return HealthOut(status="ok", background_tasks=runner.pending)
