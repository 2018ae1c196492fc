"""HTTP endpoints.

- GET /api/sync: run one invocation (the platform cron hits this)
- GET /health: liveness, no external dependencies checked

/api/sync answers 500 only for connectivity errors; every other status,
including partial and insufficient-time outcomes, is a 200 so the cron
does not treat normal budget exhaustion as a failure.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, status
from fastapi.responses import JSONResponse

from src.dealsync.config import get_settings
from src.dealsync.core.monitoring import track_invocation
from src.dealsync.sync.factory import build_orchestrator
from src.dealsync.sync.orchestrator import SyncOrchestrator
from src.dealsync.sync.report import summary_line
from src.dealsync.sync.schemas import InvocationStatus

router = APIRouter()


def get_orchestrator() -> SyncOrchestrator:
    """Build a fresh orchestrator per request; invocations share no state."""
    return build_orchestrator(get_settings())


@router.get("/api/sync", tags=["sync"])
async def run_sync(orchestrator: SyncOrchestrator = Depends(get_orchestrator)):
    async with track_invocation() as tracker:
        result = await orchestrator.run()
        tracker["status"] = result.status.value

    status_code = (
        status.HTTP_500_INTERNAL_SERVER_ERROR
        if result.status == InvocationStatus.CONNECTIVITY_ERROR
        else status.HTTP_200_OK
    )
    return JSONResponse(
        status_code=status_code,
        content={
            "status": result.status.value,
            "summary": summary_line(result),
            "result": result.model_dump(mode="json"),
        },
    )


@router.get("/health", tags=["health"])
async def health_check():
    """Basic liveness check."""
    settings = get_settings()
    return {"status": "ok", "environment": settings.ENVIRONMENT.value}
