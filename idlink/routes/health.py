# idlink/routes/health.py
"""
Health check endpoints.
"""

import time

from fastapi import APIRouter
from fastapi.responses import JSONResponse

from idlink.services.redis_client import fast_redis

router = APIRouter()


@router.get("/healthz")
async def healthz():
    """Basic health check - always returns 200 if app is running."""
    return {"status": "ok", "service": "idlink"}


@router.get("/readyz")
async def readyz():
    """Readiness check covering Redis, which holds every verification store."""
    checks = {}

    t0 = time.time()
    try:
        redis_ok = await fast_redis.ping()
        checks["redis"] = {
            "ok": bool(redis_ok),
            "latency_ms": round((time.time() - t0) * 1000, 1),
        }
    except Exception as e:
        checks["redis"] = {"ok": False, "error": f"{type(e).__name__}: {e}"}

    overall_ok = all(check["ok"] for check in checks.values())
    return JSONResponse(
        status_code=200 if overall_ok else 503,
        content={"overall_ok": overall_ok, "checks": checks},
    )
