from .errors import attach_standard_error_handlers, error_payload, raise_http_error
from .client import build_http_client

__all__ = [
    "attach_standard_error_handlers",
    "error_payload",
    "raise_http_error",
    "build_http_client",
]
