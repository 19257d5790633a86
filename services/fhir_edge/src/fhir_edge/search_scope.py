"""
Search-scope rewriting.

``thisUserOnly`` restricts a search to the ids the caller owns; ``allUsers``
to ids owned by anyone on the same backend. Either way the ids become the
``_id`` filter. An empty owned set becomes a sentinel id no resource carries:
an empty ``_id`` would mean "no filter" to the backend.
"""
from __future__ import annotations
from typing import Any, Iterable, List, Optional, Sequence, Tuple

from core_config.constants import NO_MATCH_RESOURCE_ID, SEARCH_SCOPE_PARAMS
from core_index.errors import IndexUnavailable
from core_index.keys import encode_endpoint, is_tracked
from core_index.store import IndexStore
from core_logging import get_logger, log_stage

from .errors import SearchScopeUnavailable
from .records import RequestScope

logger = get_logger("fhir_edge")

QueryParams = List[Tuple[str, str]]

THIS_USER_ONLY = "thisUserOnly"
ALL_USERS = "allUsers"
ID_PARAM = "_id"


def _flag(params: Sequence[Tuple[str, str]], name: str) -> bool:
    return any(k == name and v for k, v in params)


def strip_scope_params(params: Iterable[Tuple[str, str]]) -> QueryParams:
    """Drop the edge-only query parameters before a request is forwarded."""
    return [(k, v) for k, v in params if k not in SEARCH_SCOPE_PARAMS]


class SearchScopeRewriter:
    def __init__(self, store: IndexStore, *, tracked: Optional[Iterable[str]] = None):
        self._store = store
        self._tracked = frozenset(tracked) if tracked is not None else None

    async def owned_ids(self, scope: RequestScope, *, all_users: bool = False) -> List[str]:
        """Sorted ids owned by the caller (or by any caller with *all_users*)."""
        try:
            if all_users:
                tree = await self._store.get((scope.root,)) or {}
                ids: set[str] = set()
                endpoint_key = encode_endpoint(scope.endpoint)
                for caller_tree in tree.values():
                    if not isinstance(caller_tree, dict):
                        continue
                    owned = (caller_tree.get(endpoint_key) or {}).get(scope.resource_type) or {}
                    ids.update(owned)
                return sorted(ids)
            return sorted(await self._store.get(scope.type_path()) or {})
        except IndexUnavailable as exc:
            log_stage(logger, "search", "owned_ids_failed", resource_type=scope.resource_type,
                      all_users=all_users, error=str(exc), level="ERROR")
            raise SearchScopeUnavailable(details=exc.detail) from exc

    async def rewrite(self, scope: RequestScope, params: Sequence[Tuple[str, Any]]) -> QueryParams:
        """
        Query parameters to forward for a search.

        With ``allUsers`` or ``thisUserOnly`` on a tracked type, any ``_id``
        is replaced by the owned ids. Edge-only parameters are always dropped.
        """
        params = [(str(k), str(v)) for k, v in params]
        all_users = _flag(params, ALL_USERS)
        scoped = all_users or _flag(params, THIS_USER_ONLY)
        forwarded = strip_scope_params(params)
        if not scoped or not is_tracked(scope.resource_type, self._tracked):
            return forwarded

        ids = await self.owned_ids(scope, all_users=all_users)
        value = ",".join(ids) if ids else NO_MATCH_RESOURCE_ID
        log_stage(logger, "search", "scope_rewritten", resource_type=scope.resource_type,
                  all_users=all_users, id_count=len(ids))
        return [(k, v) for k, v in forwarded if k != ID_PARAM] + [(ID_PARAM, value)]


__all__ = ["SearchScopeRewriter", "strip_scope_params", "THIS_USER_ONLY", "ALL_USERS"]
