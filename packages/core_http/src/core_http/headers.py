"""
Canonical HTTP header names and forwarding rules for the FHIR edge.
"""
from typing import Final, Iterable, Mapping, Dict

from core_config.constants import TARGET_AUTH_HEADER, TARGET_ENDPOINT_HEADER

AUTHORIZATION: Final[str]   = "authorization"
HOST: Final[str]            = "host"
CONTENT_LENGTH: Final[str]  = "content-length"

# RFC 9110 §7.6.1 connection-specific headers; never relayed by a proxy.
HOP_BY_HOP_HEADERS: Final[frozenset[str]] = frozenset({
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "te",
    "trailer",
    "transfer-encoding",
    "upgrade",
})

# Set by httpx itself on the outbound request / by Starlette on the relay.
_RECOMPUTED: Final[frozenset[str]] = frozenset({HOST, CONTENT_LENGTH, "content-encoding"})


def _connection_tokens(headers: Mapping[str, str]) -> set[str]:
    raw = headers.get("connection") or headers.get("Connection") or ""
    return {t.strip().lower() for t in raw.split(",") if t.strip()}


def build_backend_headers(incoming: Iterable[tuple[str, str]]) -> Dict[str, str]:
    """
    Headers for the outbound backend request.

    - the caller's own ``authorization`` is dropped (it authenticates to the edge,
      not to the backend);
    - ``x-target-fhir-server-authorization`` becomes ``authorization``;
    - ``x-target-fhir-endpoint`` and hop-by-hop headers are dropped.
    """
    pairs = [(str(k).lower(), v) for k, v in incoming]
    src = dict(pairs)
    drop = HOP_BY_HOP_HEADERS | _RECOMPUTED | _connection_tokens(src) | {
        AUTHORIZATION, TARGET_AUTH_HEADER, TARGET_ENDPOINT_HEADER,
    }
    out: Dict[str, str] = {}
    for name, value in pairs:
        if name in drop:
            continue
        out[name] = value
    backend_auth = src.get(TARGET_AUTH_HEADER)
    if backend_auth:
        out[AUTHORIZATION] = backend_auth
    return out


def filter_response_headers(headers: Iterable[tuple[str, str]]) -> list[tuple[str, str]]:
    """Backend response headers safe to relay to the caller (repeats preserved)."""
    pairs = [(str(k).lower(), v) for k, v in headers]
    drop = HOP_BY_HOP_HEADERS | _RECOMPUTED | _connection_tokens(dict(pairs))
    return [(k, v) for k, v in pairs if k not in drop]


__all__ = [
    "AUTHORIZATION",
    "HOP_BY_HOP_HEADERS",
    "build_backend_headers",
    "filter_response_headers",
]
