from __future__ import annotations
from typing import Mapping, Optional
from urllib.parse import urlsplit

from core_config.constants import TARGET_ENDPOINT_HEADER

_DEFAULT_PORTS = {"http": 80, "https": 443}


def _origin(url: str) -> str:
    parts = urlsplit(url)
    if not parts.scheme or not parts.hostname:
        raise ValueError(f"not an absolute URL: {url!r}")
    host = parts.hostname
    if ":" in host:
        host = f"[{host}]"
    port = parts.port
    if port is not None and port != _DEFAULT_PORTS.get(parts.scheme.lower()):
        host = f"{host}:{port}"
    return f"{parts.scheme.lower()}://{host}"


def resolve_endpoint(headers: Mapping[str, str], *, default_fhir_url: str, proxy_path: str = "") -> str:
    """
    Backend base URL for a request.

    ``x-target-fhir-endpoint`` (origin + path) wins over the configured
    ``default_fhir_url + proxy_path``. Raises ValueError for a header that is
    not an absolute URL.
    """
    target: Optional[str] = headers.get(TARGET_ENDPOINT_HEADER)
    if target:
        return _origin(target) + urlsplit(target).path
    return f"{default_fhir_url}{proxy_path}"


def request_tail(raw_path: bytes | str, mount_path: str = "") -> str:
    """The request path below the mount point, still percent-encoded."""
    path = raw_path.decode("latin-1") if isinstance(raw_path, (bytes, bytearray)) else str(raw_path)
    path = path.split("?", 1)[0]
    if mount_path and path.startswith(mount_path):
        path = path[len(mount_path):]
    return path if path.startswith("/") else "/" + path


def backend_url(endpoint: str, tail: str) -> str:
    return endpoint.rstrip("/") + (tail or "/")


__all__ = ["resolve_endpoint", "request_tail", "backend_url"]
