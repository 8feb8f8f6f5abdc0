"""
Health Router
Liveness and readiness checks.

Endpoints:
- /healthz - Basic liveness check (is the process running?)
- /readyz - Readiness check (database reachable, object store configured)
"""

import asyncio
import time
from datetime import datetime, timezone

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from sqlalchemy import text

from deed_integrity.core.config import Settings, get_settings
from deed_integrity.core.dependencies import get_sessions

router = APIRouter(tags=["Health"])

# Track startup time for uptime calculation
_start_time = time.time()


@router.get("/healthz")
async def health_check():
    """
    Liveness check: is the app process running?
    Returns 200 if the process is alive.
    """
    return {"status": "ok", "timestamp": datetime.now(timezone.utc).isoformat()}


@router.get("/readyz")
async def readiness_check(
    settings: Settings = Depends(get_settings),
    sessions=Depends(get_sessions),
):
    """
    Readiness check - is the app ready to serve traffic?
    Returns 503 when the database cannot be reached.
    """
    checks = {}
    details = {}
    start = time.perf_counter()

    try:
        db_start = time.perf_counter()
        async with sessions() as session:
            await asyncio.wait_for(session.execute(text("SELECT 1")), timeout=5.0)
        checks["database"] = True
        details["database_latency_ms"] = round((time.perf_counter() - db_start) * 1000, 2)
    except asyncio.TimeoutError:
        checks["database"] = False
        details["database_error"] = "Connection timeout (5s)"
    except Exception as e:
        checks["database"] = False
        details["database_error"] = str(e)

    checks["object_store"] = settings.storage_backend
    if settings.storage_backend == "r2":
        details["object_store_configured"] = bool(
            settings.r2_account_id and settings.r2_access_key_id and settings.r2_secret_access_key
        )
    else:
        details["object_store_configured"] = True

    details["check_duration_ms"] = round((time.perf_counter() - start) * 1000, 2)
    ready = checks["database"] is True and details["object_store_configured"]

    return JSONResponse(
        status_code=200 if ready else 503,
        content={
            "status": "ready" if ready else "degraded",
            "checks": checks,
            "details": details,
            "version": settings.app_version,
            "uptime_seconds": round(time.time() - _start_time, 2),
            "timestamp": datetime.now(timezone.utc).isoformat(),
        },
    )
