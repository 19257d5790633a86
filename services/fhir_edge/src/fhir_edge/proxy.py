"""
Forwarding to the backend FHIR server.

The edge buffers backend responses: decorators need the body to update the
index before the response is relayed.
"""
from __future__ import annotations
import time
from typing import Iterable, Optional, Tuple

import httpx
from starlette.requests import Request
from starlette.responses import Response

import core_metrics
from core_http.headers import build_backend_headers, filter_response_headers
from core_logging import get_logger, log_stage

from .endpoint import backend_url, request_tail
from .errors import UpstreamError, UpstreamTimeout
from .search_scope import strip_scope_params

logger = get_logger("fhir_edge")


class BackendProxy:
    def __init__(self, client: httpx.AsyncClient, *, mount_path: str = ""):
        self._client = client
        self._mount_path = mount_path

    async def forward(
        self,
        request: Request,
        *,
        endpoint: str,
        params: Optional[Iterable[Tuple[str, str]]] = None,
        body: Optional[bytes] = None,
    ) -> httpx.Response:
        """
        Send *request* to the backend at *endpoint* and return the buffered response.

        *params* replaces the query string (edge-only parameters are always
        stripped); *body* replaces the request body.
        """
        tail = request_tail(request.scope.get("raw_path") or request.url.path, self._mount_path)
        url = backend_url(endpoint, tail)
        query = list(params) if params is not None else strip_scope_params(request.query_params.multi_items())
        content = body if body is not None else await request.body()
        headers = build_backend_headers(request.headers.items())
        method = request.method.upper()

        t0 = time.perf_counter()
        log_stage(logger, "proxy", "backend.request", http={"method": method, "target": tail}, param_keys=sorted({k for k, _ in query}))
        try:
            resp = await self._client.request(method, url, params=query or None, headers=headers, content=content or None)
        except httpx.TimeoutException as exc:
            core_metrics.counter("fhir_edge_backend_errors_total", 1, kind="timeout")
            log_stage(logger, "proxy", "backend.timeout", url=url, error=str(exc), level="ERROR")
            raise UpstreamTimeout(details={"url": url}) from exc
        except httpx.HTTPError as exc:
            core_metrics.counter("fhir_edge_backend_errors_total", 1, kind="transport")
            log_stage(logger, "proxy", "backend.unreachable", url=url, error=str(exc), level="ERROR")
            raise UpstreamError(details={"url": url, "error": type(exc).__name__}) from exc

        latency = core_metrics.record_latency_ms("fhir_edge_backend", t0, method=method)
        log_stage(
            logger, "proxy", "backend.response",
            http={"method": method, "target": tail, "status_code": resp.status_code},
            latency_ms=int(latency),
        )
        return resp


def relay(resp: httpx.Response) -> Response:
    """Caller-facing copy of a backend response: same status, body and end-to-end headers."""
    out = Response(content=resp.content, status_code=resp.status_code)
    for name, value in filter_response_headers(resp.headers.multi_items()):
        out.headers.append(name, value)
    return out


__all__ = ["BackendProxy", "relay"]
