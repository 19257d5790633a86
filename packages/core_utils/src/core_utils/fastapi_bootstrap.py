"""
core_utils.fastapi_bootstrap - one-call FastAPI wiring for edge services.

Applies request logging, the Prometheus scrape endpoint, optional CORS and
reverse-proxy header handling. Health endpoints are attached explicitly by
each service (see core_utils.health).

Environment knobs (all optional):
  CORS_ORIGINS           Comma/space separated origins (e.g. "https://x, https://y").
  PROXY_HEADERS          "0" disables X-Forwarded-* handling (default on).
"""
from __future__ import annotations
import os, re
from fastapi import FastAPI
from starlette.middleware.cors import CORSMiddleware
from uvicorn.middleware.proxy_headers import ProxyHeadersMiddleware

from core_logging.request_logging import attach_request_logging
from core_metrics.fastapi import attach_prometheus_endpoint

def _parse_origins(s: str | None) -> list[str]:
    if not s:
        return []
    # split on comma or whitespace
    return [p.strip() for p in re.split(r"[\s,]+", s) if p.strip()]

def _metric_prefix(service_name: str) -> str:
    return re.sub(r"[^a-zA-Z0-9_]", "_", service_name)

def setup_service(
    app: FastAPI,
    service_name: str,
    *,
    enable_cors_env: str = "CORS_ORIGINS",
    attach_metrics_endpoint: bool = True,
) -> None:
    """
    Apply standard wiring to `app`:

      • Request logging + request metrics (core_logging.request_logging)
      • /metrics scrape endpoint (core_metrics.fastapi)
      • Optional CORS via starlette CORSMiddleware (origins from env var)
      • X-Forwarded-* handling so generated URLs match the public origin
    """
    attach_request_logging(app, service=service_name, metric_prefix=_metric_prefix(service_name))
    if attach_metrics_endpoint:
        attach_prometheus_endpoint(app)

    origins = _parse_origins(os.getenv(enable_cors_env))
    if origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=origins,
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
            expose_headers=["location", "etag", "last-modified", "x-request-id"],
        )

    if os.getenv("PROXY_HEADERS", "1").lower() in ("1", "true", "yes"):
        # Trusted hosts are enforced by the ingress in front of the edge.
        app.add_middleware(ProxyHeadersMiddleware, trusted_hosts="*")

__all__ = ["setup_service"]
