"""
Index synchronizer: applies confirmed backend outcomes to the ownership index.

Single-resource writes touch one hash field and need no coordination. A
transaction outcome is applied with one conditional update of the caller's
endpoint subtree so concurrent readers see all of it or none of it.
"""
from __future__ import annotations
from typing import Any, Iterable, Optional

from core_index.keys import is_tracked
from core_index.store import IndexStore
from core_logging import get_logger, log_stage

from .correlator import TransactionOutcome
from .records import RequestScope, fallback_record, storage_record

logger = get_logger("fhir_edge")


class IndexSynchronizer:
    def __init__(self, store: IndexStore, *, tracked: Optional[Iterable[str]] = None):
        self._store = store
        self._tracked = frozenset(tracked) if tracked is not None else None

    @property
    def tracked(self) -> Optional[frozenset]:
        return self._tracked

    def tracks(self, resource_type: Optional[str]) -> bool:
        return is_tracked(resource_type, self._tracked)

    async def record_upsert(
        self,
        scope: RequestScope,
        resource: Any,
        *,
        resource_id: Optional[str] = None,
    ) -> bool:
        """
        Merge ``{id: record}`` under the scope's type path.

        The id comes from *resource_id*, else the resource body, else the
        scope. Returns False (no index work) for untracked types or when no
        id can be determined.
        """
        if not self.tracks(scope.resource_type):
            return False
        body_id = resource.get("id") if isinstance(resource, dict) else None
        rid = resource_id or (str(body_id) if body_id else None) or scope.resource_id
        if not rid:
            log_stage(logger, "index", "upsert_skipped_no_id", resource_type=scope.resource_type, level="WARNING")
            return False
        record = storage_record(resource) or fallback_record()
        await self._store.put(scope.type_path(), {rid: record})
        log_stage(logger, "index", "owner_recorded", resource_type=scope.resource_type, resource_id=rid)
        return True

    async def record_removal(self, scope: RequestScope) -> bool:
        if not self.tracks(scope.resource_type) or not scope.resource_id:
            return False
        await self._store.delete(scope.id_path())
        log_stage(logger, "index", "owner_removed", resource_type=scope.resource_type, resource_id=scope.resource_id)
        return True

    async def apply_transaction(self, outcome: TransactionOutcome, scope: RequestScope) -> bool:
        """
        Apply *outcome* to the caller's endpoint subtree in one conditional update.

        Removals first (absent ids are fine), then writes in bundle order.
        Conflicts are retried by the store; exhaustion raises IndexUnavailable.
        """
        if not outcome:
            return False

        def _apply(current: dict) -> dict:
            for item in outcome.remove:
                bucket = current.get(item.resource_type)
                if isinstance(bucket, dict):
                    bucket.pop(item.id, None)
            for item in outcome.update:
                bucket = current.get(item.resource_type)
                if not isinstance(bucket, dict):
                    bucket = current[item.resource_type] = {}
                bucket[item.id] = dict(item.data)
            return current

        committed = await self._store.transaction(scope.endpoint_path(), _apply)
        log_stage(
            logger, "index", "transaction_applied",
            removed=len(outcome.remove), updated=len(outcome.update), committed=committed,
        )
        return committed


__all__ = ["IndexSynchronizer"]
