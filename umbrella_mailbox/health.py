"""FastAPI health endpoints for Kubernetes liveness and readiness probes."""

from __future__ import annotations

import time
from typing import TYPE_CHECKING, Any

from fastapi import FastAPI
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

if TYPE_CHECKING:
    from .worker import IngestionWorker


class HealthStatus(BaseModel):
    """Response model for the /health endpoint."""

    pipeline: str
    status: str
    uptime_seconds: float
    cycles_completed: int
    seconds_since_last_cycle: float | None = None
    last_error: str | None = None
    pending_read: int = 0
    provider: dict[str, Any] = Field(default_factory=dict)


def create_health_app(worker: IngestionWorker) -> FastAPI:
    """Build a minimal FastAPI app with ``/health`` and ``/ready`` routes."""
    from .worker import WorkerStatus

    app = FastAPI(title=f"{worker.config.name} health", docs_url=None, redoc_url=None)

    @app.get("/health")
    async def health() -> JSONResponse:
        coordinator = worker.pipeline.coordinator
        now = time.monotonic()
        status = HealthStatus(
            pipeline=worker.config.name,
            status=worker.status.value,
            uptime_seconds=now - worker.start_time,
            cycles_completed=coordinator.cycles_completed,
            seconds_since_last_cycle=(now - worker.last_cycle_at) if worker.last_cycle_at else None,
            last_error=worker.last_error,
            pending_read=len(coordinator.pending_read),
            provider=await worker.pipeline.provider.health_check(),
        )
        code = 200 if worker.status in (WorkerStatus.RUNNING, WorkerStatus.STARTING) else 503
        return JSONResponse(content=status.model_dump(mode="json"), status_code=code)

    @app.get("/ready")
    async def ready() -> JSONResponse:
        is_ready = worker.status == WorkerStatus.RUNNING
        return JSONResponse(
            content={"ready": is_ready},
            status_code=200 if is_ready else 503,
        )

    return app
