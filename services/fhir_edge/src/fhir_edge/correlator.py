"""
Transaction response correlation.

Pairs the i-th entry of a submitted transaction bundle with the i-th entry
of the backend's ``transaction-response`` bundle and derives the ownership
index work: which tracked resources were removed and which were written.
Pure functions, no I/O.
"""
from __future__ import annotations
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Tuple

from core_index.keys import is_tracked

from .records import OwnershipRecord, fallback_record, storage_record

TRANSACTION_RESPONSE = "transaction-response"

_REMOVE_METHODS = frozenset({"DELETE"})
_UPDATE_METHODS = frozenset({"POST", "PUT", "PATCH"})


@dataclass(frozen=True)
class OutcomeEntry:
    resource_type: str
    id: str
    data: OwnershipRecord

    def as_dict(self) -> Dict[str, Any]:
        return {"resourceType": self.resource_type, "id": self.id, "data": dict(self.data)}


@dataclass
class TransactionOutcome:
    """Removals and writes in bundle order; later entries win on duplicate ids."""

    remove: List[OutcomeEntry] = field(default_factory=list)
    update: List[OutcomeEntry] = field(default_factory=list)

    def __bool__(self) -> bool:
        return bool(self.remove or self.update)

    def as_dict(self) -> Dict[str, List[Dict[str, Any]]]:
        return {
            "remove": [e.as_dict() for e in self.remove],
            "update": [e.as_dict() for e in self.update],
        }


def _as_dict(value: Any) -> Dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _entries(bundle: Dict[str, Any]) -> List[Any]:
    entries = bundle.get("entry")
    return entries if isinstance(entries, list) else []


def _applied_location(request_entry: Dict[str, Any], response: Dict[str, Any]) -> Optional[str]:
    # 201 → the server chose the id; any other 2xx → the request url names it.
    status = str(response.get("status") or "")
    if status.startswith("201"):
        location = response.get("location")
    elif status.startswith("20"):
        location = _as_dict(request_entry.get("request")).get("url")
    else:
        return None
    return location if isinstance(location, str) else None


def split_location(location: str) -> Optional[Tuple[str, str]]:
    """``"Type/id[/...]"`` → ``(Type, id)``; anything without a "/" after its first character → None."""
    if location.find("/") <= 0:
        return None
    parts = location.split("/", 2)
    if not parts[1]:
        return None
    return parts[0], parts[1]


def correlate(
    request_bundle: Any,
    response_bundle: Any,
    *,
    tracked: Optional[Iterable[str]] = None,
) -> TransactionOutcome:
    """
    Derive the index outcome of a transaction.

    Entries that failed, that have no usable location, whose method has no
    index effect, or whose type is not tracked are skipped. So are request
    entries with no counterpart in a shorter response bundle.
    """
    outcome = TransactionOutcome()
    request_bundle, response_bundle = _as_dict(request_bundle), _as_dict(response_bundle)
    if response_bundle.get("type") != TRANSACTION_RESPONSE:
        return outcome

    responses = _entries(response_bundle)
    for index, raw in enumerate(_entries(request_bundle)):
        if index >= len(responses):
            break
        entry = _as_dict(raw)
        response = _as_dict(_as_dict(responses[index]).get("response"))

        location = _applied_location(entry, response)
        target = split_location(location) if location else None
        if target is None:
            continue

        method = str(_as_dict(entry.get("request")).get("method") or "").upper()
        if method in _REMOVE_METHODS:
            bucket = outcome.remove
        elif method in _UPDATE_METHODS:
            bucket = outcome.update
        else:
            continue

        resource_type, resource_id = target
        if not is_tracked(resource_type, tracked):
            continue

        data = storage_record(entry.get("resource")) or fallback_record()
        if response.get("lastModified"):
            data["updatedAt"] = response["lastModified"]
        bucket.append(OutcomeEntry(resource_type=resource_type, id=resource_id, data=data))
    return outcome


__all__ = ["OutcomeEntry", "TransactionOutcome", "correlate", "split_location", "TRANSACTION_RESPONSE"]
