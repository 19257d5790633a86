"""
Request-fatal conditions raised by the edge before anything is forwarded.

Each carries its HTTP status and canonical error code; ``app`` turns them
into the standard error envelope.
"""
from __future__ import annotations
from typing import Any, Optional

from core_logging.error_codes import ErrorCode


class OwnershipError(Exception):
    status_code: int = 400
    code: ErrorCode = ErrorCode.validation_failed
    default_message: str = "Request rejected"

    def __init__(self, message: Optional[str] = None, *, details: Optional[Any] = None):
        super().__init__(message or self.default_message)
        self.message = message or self.default_message
        self.details = details


class IdentityRequired(OwnershipError):
    status_code = 403
    code = ErrorCode.identity_required
    default_message = "User identification required."


class IdentityInvalid(OwnershipError):
    status_code = 401
    code = ErrorCode.identity_invalid
    default_message = "Id token verification failed."


class ResourceIdRequired(OwnershipError):
    status_code = 400
    code = ErrorCode.resource_id_required
    default_message = "Resource id not specified"


class OwnershipDenied(OwnershipError):
    # One message for "never existed", "deleted" and "owned by someone else".
    status_code = 401
    code = ErrorCode.ownership_denied
    default_message = (
        "The resource is not found. This is due to either the user is not owner "
        "of this resource, or it has been deleted from the storage."
    )


class OwnershipLookupFailed(OwnershipError):
    status_code = 400
    code = ErrorCode.index_unavailable
    default_message = "Error finding owner permissions."


class SearchScopeUnavailable(OwnershipError):
    status_code = 404
    code = ErrorCode.index_unavailable
    default_message = "Owned resource ids could not be resolved."


class UpstreamError(OwnershipError):
    status_code = 502
    code = ErrorCode.upstream_error
    default_message = "Backend FHIR server unreachable"


class UpstreamTimeout(OwnershipError):
    status_code = 504
    code = ErrorCode.upstream_timeout
    default_message = "Backend FHIR server timed out"


__all__ = [
    "OwnershipError",
    "IdentityRequired",
    "IdentityInvalid",
    "ResourceIdRequired",
    "OwnershipDenied",
    "OwnershipLookupFailed",
    "SearchScopeUnavailable",
    "UpstreamError",
    "UpstreamTimeout",
]
