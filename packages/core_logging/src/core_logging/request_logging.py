from __future__ import annotations
import time
from typing import Tuple
from fastapi import FastAPI, Request
from core_logging import get_logger, log_stage, bind_request_id, bind_caller_id
from core_utils.ids import generate_request_id
import core_metrics

_QUIET_PATHS: Tuple[str, ...] = ("/healthz", "/readyz", "/metrics")
_UNMATCHED = "unmatched"


def _route_template(request: Request) -> str:
    # Resource ids in FHIR paths would explode label cardinality; label by template.
    route = request.scope.get("route")
    return getattr(route, "path", None) or _UNMATCHED


def attach_request_logging(
    app: FastAPI,
    *,
    service: str,
    metric_prefix: str,
    quiet_paths: Tuple[str, ...] = _QUIET_PATHS,
) -> None:
    """
    Request logger middleware.

    Binds (or adopts) ``x-request-id`` for every request, clears any caller id
    left from a previous request on the same context, logs one request and
    one response line (not for probes and scrapes) and records:

      - {metric_prefix}_ttfb_seconds (histogram{route})
      - {metric_prefix}_http_requests_total (counter{method,route,code})
      - {metric_prefix}_http_5xx_total (counter)
    """
    logger = get_logger(service)

    @app.middleware("http")
    async def _request_logger(request: Request, call_next):
        target = str(request.url.path or "")
        quiet = any(target.endswith(p) for p in quiet_paths)

        req_id = request.headers.get("x-request-id") or generate_request_id()
        bind_request_id(req_id)
        bind_caller_id(None)
        t0 = time.perf_counter()
        if not quiet:
            log_stage(
                logger, "http.server", "http.server.request",
                request_id=req_id,
                http={"method": request.method, "target": target},
            )

        resp = await call_next(request)
        resp.headers["x-request-id"] = req_id

        dt = time.perf_counter() - t0
        route = _route_template(request)
        core_metrics.histogram(f"{metric_prefix}_ttfb_seconds", dt, route=route)
        core_metrics.counter(
            f"{metric_prefix}_http_requests_total", 1,
            method=request.method, route=route, code=str(resp.status_code),
        )
        if resp.status_code >= 500:
            core_metrics.counter(f"{metric_prefix}_http_5xx_total", 1)

        if not quiet:
            log_stage(
                logger, "http.server", "http.server.response",
                request_id=req_id,
                http={"status_code": resp.status_code, "method": request.method, "target": target, "route": route},
                latency_ms=int(dt * 1000.0),
            )
        return resp

__all__ = ["attach_request_logging"]
