from __future__ import annotations
from typing import Iterable, Optional

import core_metrics
from core_index.errors import IndexUnavailable
from core_index.keys import is_tracked
from core_index.store import IndexStore
from core_logging import get_logger, log_stage

from .errors import OwnershipDenied, OwnershipLookupFailed, ResourceIdRequired
from .records import RequestScope

logger = get_logger("fhir_edge")


class OwnershipGate:
    """Pre-forward check that the caller owns the resource a mutation targets."""

    def __init__(self, store: IndexStore, *, tracked: Optional[Iterable[str]] = None):
        self._store = store
        self._tracked = frozenset(tracked) if tracked is not None else None

    async def check(self, scope: RequestScope) -> None:
        """
        Return normally when the mutation may be forwarded.

        Raises ResourceIdRequired without an id, OwnershipLookupFailed when
        the index cannot be read, and OwnershipDenied when no record exists.
        Denial never says whether the resource exists under another owner.
        """
        if not scope.resource_id:
            log_stage(logger, "gate", "resource_id_missing", resource_type=scope.resource_type, level="WARNING")
            raise ResourceIdRequired()
        if not is_tracked(scope.resource_type, self._tracked):
            core_metrics.counter("fhir_edge_gate_decisions_total", 1, decision="untracked")
            return
        try:
            record = await self._store.get(scope.id_path())
        except IndexUnavailable as exc:
            core_metrics.counter("fhir_edge_gate_decisions_total", 1, decision="lookup_failed")
            log_stage(logger, "gate", "owner_lookup_failed", resource_type=scope.resource_type,
                      resource_id=scope.resource_id, error=str(exc), level="ERROR")
            raise OwnershipLookupFailed(details=exc.detail) from exc
        if record:
            core_metrics.counter("fhir_edge_gate_decisions_total", 1, decision="granted")
            log_stage(logger, "gate", "owner_granted", resource_type=scope.resource_type, resource_id=scope.resource_id)
            return
        core_metrics.counter("fhir_edge_gate_decisions_total", 1, decision="denied")
        log_stage(logger, "gate", "owner_denied", resource_type=scope.resource_type,
                  resource_id=scope.resource_id, level="WARNING")
        raise OwnershipDenied()


__all__ = ["OwnershipGate"]
