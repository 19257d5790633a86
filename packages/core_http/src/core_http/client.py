from typing import Optional
import httpx
from core_config.constants import timeout_for_stage
from core_logging import get_logger, log_stage, current_request_id

logger = get_logger("core_http")

def build_timeout(seconds: float) -> httpx.Timeout:
    # Separate connect/read/write/pool timeouts; read dominates
    connect = min(5.0, max(0.1, seconds * 0.3))
    read    = max(0.1, seconds)
    write   = max(0.1, seconds)
    pool    = min(seconds, 5.0)
    return httpx.Timeout(connect=connect, read=read, write=write, pool=pool)

def build_http_client(
    *,
    timeout_ms: Optional[int] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    max_connections: int = 100,
) -> httpx.AsyncClient:
    """
    Construct the ``httpx.AsyncClient`` used to reach backend FHIR servers.

    The client is owned by whoever builds it (the edge builds one per app in
    ``create_app`` and closes it on shutdown). Redirects are not followed so
    ``Location`` headers reach the caller untouched. Tests pass an
    ``httpx.MockTransport`` as *transport*.
    """
    base_sec = (timeout_ms / 1000.0) if timeout_ms is not None else timeout_for_stage("backend")
    log_stage(
        logger, "http.client", "client_built",
        timeout_sec=base_sec, request_id=(current_request_id() or "startup"),
    )
    return httpx.AsyncClient(
        timeout=build_timeout(base_sec),
        transport=transport,
        follow_redirects=False,
        limits=httpx.Limits(max_connections=max_connections),
    )

__all__ = ["build_http_client", "build_timeout"]
