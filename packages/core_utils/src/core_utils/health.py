"""
core_utils.health – health-check routes for FastAPI services.

Provides attach_health_routes() to wire /healthz and /readyz with custom
liveness and readiness checks.
"""

import asyncio
from typing import Awaitable, Callable, Mapping, Union

from fastapi import APIRouter, FastAPI
from fastapi.responses import JSONResponse

# A health check can return:
#  - bool
#  - dict (arbitrary JSON body; "ready": False marks it unhealthy)
#  - Awaitable of either
HealthCheck = Callable[[], Union[bool, dict, Awaitable[Union[bool, dict]]]]
HealthChecks = Mapping[str, HealthCheck]

__all__ = ["attach_health_routes", "HealthCheck", "HealthChecks"]


def attach_health_routes(app: FastAPI, *, checks: HealthChecks) -> None:
    """
    Register health-check endpoints on the app.

    Endpoints:
        GET /healthz -> { "status": "ok" | "fail" } or custom dict.
        GET /readyz  -> readiness check result directly if dict, or
                        { "ready": <bool> }; 503 when not ready.
    """
    router = APIRouter()

    async def _run_check(fn: HealthCheck) -> Union[bool, dict]:
        res = fn()
        if asyncio.iscoroutine(res):
            res = await res
        return res

    @router.get("/healthz", include_in_schema=False)
    async def _healthz():
        if "liveness" not in checks:
            return {"status": "ok"}
        res = await _run_check(checks["liveness"])
        if isinstance(res, dict):
            return res
        return {"status": "ok" if bool(res) else "fail"}

    @router.get("/readyz", include_in_schema=False)
    async def _readyz():
        if "readiness" not in checks:
            return {"ready": True}
        res = await _run_check(checks["readiness"])
        body = res if isinstance(res, dict) else {"ready": bool(res)}
        return JSONResponse(status_code=200 if body.get("ready", True) else 503, content=body)

    app.include_router(router)
