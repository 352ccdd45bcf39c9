"""Liveness and readiness endpoints."""

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from gateway.core.database import check_connection

router = APIRouter(tags=["health"])


@router.get("/healthz")
def healthz():
    """Lightweight liveness check (no deps)."""
    return {"status": "ok"}


@router.get("/readyz")
async def readyz(request: Request):
    """Readiness check: database connectivity."""
    connected = await run_in_threadpool(check_connection, request.app.state.engine)
    if not connected:
        return JSONResponse(status_code=503, content={"status": "unavailable", "db": False})
    return {"status": "ok", "db": True}
