from enum import Enum

class ErrorCode(str, Enum):
    """
    Canonical error codes for the public error envelope.
    """
    identity_required         = "identity_required"
    identity_invalid          = "identity_invalid"
    resource_id_required      = "resource_id_required"
    ownership_denied          = "ownership_denied"
    index_unavailable         = "index_unavailable"
    index_write_failed        = "index_write_failed"
    validation_failed         = "validation_failed"
    internal                  = "internal"
    upstream_timeout          = "upstream_timeout"
    upstream_error            = "upstream_error"

__all__ = ["ErrorCode"]
