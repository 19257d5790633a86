"""Ownership records and the per-request scope every component works in."""
from __future__ import annotations
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from core_config.constants import DEFAULT_INDEX_ROOT
from core_index.keys import IndexPath, endpoint_path, resource_id_path, resource_path

OwnershipRecord = Dict[str, Any]


def now_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def storage_record(resource: Any) -> Optional[OwnershipRecord]:
    """
    Ownership record for a FHIR resource body, or ``None`` without one.

    ``updatedAt`` prefers the resource ``date``, then ``meta.lastUpdated``,
    then the current time. ``resName`` is the resource ``name`` when it is a
    plain string (Questionnaire and friends), else ``""``.
    """
    if not isinstance(resource, dict):
        return None
    meta = resource.get("meta") if isinstance(resource.get("meta"), dict) else {}
    name = resource.get("name")
    return {
        "updatedAt": resource.get("date") or meta.get("lastUpdated") or now_timestamp(),
        "resName": name if isinstance(name, str) else "",
    }


def fallback_record() -> OwnershipRecord:
    return {"updatedAt": now_timestamp(), "resName": ""}


@dataclass(frozen=True)
class RequestScope:
    """Who is asking, which backend is targeted and which resource the route names."""

    caller: str
    endpoint: str
    resource_type: Optional[str] = None
    resource_id: Optional[str] = None
    root: str = DEFAULT_INDEX_ROOT

    def endpoint_path(self) -> IndexPath:
        return endpoint_path(self.caller, self.endpoint, root=self.root)

    def type_path(self, resource_type: Optional[str] = None) -> IndexPath:
        return resource_path(resource_type or self.resource_type or "", self.caller, self.endpoint, root=self.root)

    def id_path(self, resource_id: Optional[str] = None) -> IndexPath:
        return resource_id_path(
            self.resource_type or "",
            self.caller,
            self.endpoint,
            resource_id or self.resource_id or "",
            root=self.root,
        )


__all__ = ["OwnershipRecord", "RequestScope", "storage_record", "fallback_record", "now_timestamp"]
