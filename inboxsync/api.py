"""FastAPI app: liveness/readiness probes, sync status and the live feed."""

from __future__ import annotations

import time
from typing import TYPE_CHECKING

from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse

from .models import HealthStatus, ServiceStatus

if TYPE_CHECKING:
    from .service import SyncService


def create_app(service: SyncService) -> FastAPI:
    """Build the FastAPI app served alongside the sync loops.

    ``/health`` and ``/ready`` serve Kubernetes probes, ``/status`` the
    per-account connection map, and ``/ws`` pushes ``new_email`` events.
    """
    app = FastAPI(title=f"{service.config.name}", docs_url=None, redoc_url=None)

    @app.get("/health")
    async def health() -> JSONResponse:
        details = await service.health_check()
        status = HealthStatus(
            service_name=service.config.name,
            status=service.status,
            uptime_seconds=time.monotonic() - service.start_time,
            accounts=service.manager.details(),
            details=details,
        )
        code = 200 if service.status in (ServiceStatus.RUNNING, ServiceStatus.STARTING) else 503
        return JSONResponse(content=status.model_dump(mode="json"), status_code=code)

    @app.get("/ready")
    async def ready() -> JSONResponse:
        is_ready = service.status == ServiceStatus.RUNNING
        return JSONResponse(
            content={"ready": is_ready},
            status_code=200 if is_ready else 503,
        )

    @app.get("/status")
    async def status() -> JSONResponse:
        return JSONResponse(
            content={
                "running": service.manager.is_running,
                "accounts": service.manager.status(),
            }
        )

    @app.websocket("/ws")
    async def live_feed(websocket: WebSocket) -> None:
        await service.broadcaster.connect(websocket)
        try:
            # Viewers only listen; drain anything they send until they leave
            while True:
                await websocket.receive_text()
        except WebSocketDisconnect:
            pass
        finally:
            service.broadcaster.disconnect(websocket)

    return app
