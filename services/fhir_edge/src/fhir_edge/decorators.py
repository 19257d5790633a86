"""
Backend response decorators.

Each ``on_*`` receives the buffered backend response, performs the matching
index side effect when the backend reported success, and returns the response
unchanged. Index failures are logged and counted; they never alter what the
caller receives. Index writes run shielded: once the backend has answered, a
cancelled inbound request does not cancel the write.
"""
from __future__ import annotations
import asyncio
from typing import Any, Awaitable, Optional, Set
from urllib.parse import urlsplit

import httpx

import core_metrics
from core_index.errors import IndexUnavailable
from core_logging import get_logger, record_error
from core_logging.error_codes import ErrorCode
from core_utils import jsonx

from .correlator import correlate
from .records import RequestScope
from .synchronizer import IndexSynchronizer

logger = get_logger("fhir_edge")


def _succeeded(resp: httpx.Response) -> bool:
    return 200 <= resp.status_code < 300


def _json_body(content: bytes) -> Any:
    if not content:
        return None
    try:
        return jsonx.loads(content)
    except ValueError:
        return None


def id_from_location(location: Optional[str], resource_type: Optional[str]) -> Optional[str]:
    """``.../Type/<id>[/_history/<v>]`` → ``<id>``."""
    if not location or not resource_type:
        return None
    segments = [s for s in urlsplit(location).path.split("/") if s]
    for i in range(len(segments) - 2, -1, -1):
        if segments[i] == resource_type:
            return segments[i + 1]
    return None


class ResponseDecorators:
    def __init__(self, synchronizer: IndexSynchronizer):
        self._sync = synchronizer
        self._inflight: Set[asyncio.Task] = set()

    async def on_create(self, resp: httpx.Response, scope: RequestScope) -> httpx.Response:
        # A conditional create that matched an existing resource answers 200.
        if resp.status_code == 201 and self._sync.tracks(scope.resource_type):
            resource = _json_body(resp.content)
            body_id = resource.get("id") if isinstance(resource, dict) else None
            rid = str(body_id) if body_id else id_from_location(resp.headers.get("location"), scope.resource_type)
            if rid:
                await self._shielded("create", scope, self._sync.record_upsert(scope, resource, resource_id=rid))
            else:
                record_error(
                    ErrorCode.index_write_failed,
                    where="decorators.on_create",
                    message="created resource id not found in response body or Location",
                    logger=logger,
                    context={"resource_type": scope.resource_type, "status": resp.status_code},
                    level="WARNING",
                )
        return resp

    async def on_update(self, resp: httpx.Response, scope: RequestScope) -> httpx.Response:
        if _succeeded(resp) and self._sync.tracks(scope.resource_type):
            resource = _json_body(resp.content)
            await self._shielded(
                "update", scope, self._sync.record_upsert(scope, resource, resource_id=scope.resource_id)
            )
        return resp

    async def on_delete(self, resp: httpx.Response, scope: RequestScope) -> httpx.Response:
        if _succeeded(resp) and self._sync.tracks(scope.resource_type):
            await self._shielded("delete", scope, self._sync.record_removal(scope))
        return resp

    async def on_transaction(self, resp: httpx.Response, request_bundle: Any, scope: RequestScope) -> httpx.Response:
        if _succeeded(resp):
            outcome = correlate(request_bundle, _json_body(resp.content), tracked=self._sync.tracked)
            if outcome:
                await self._shielded("transaction", scope, self._sync.apply_transaction(outcome, scope))
        return resp

    async def _shielded(self, op: str, scope: RequestScope, work: Awaitable[Any]) -> None:
        task = asyncio.ensure_future(self._guarded(op, scope, work))
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)
        await asyncio.shield(task)

    async def _guarded(self, op: str, scope: RequestScope, work: Awaitable[Any]) -> None:
        try:
            await work
        except IndexUnavailable as exc:
            core_metrics.counter("fhir_edge_index_sync_total", 1, op=op, outcome="failed")
            record_error(
                ErrorCode.index_write_failed,
                where=f"decorators.on_{op}",
                message=str(exc),
                logger=logger,
                action="backend change kept; index diverges until the next write",
                context={"resource_type": scope.resource_type, "resource_id": scope.resource_id, "detail": exc.detail},
            )
            return
        core_metrics.counter("fhir_edge_index_sync_total", 1, op=op, outcome="ok")

    async def drain(self) -> None:
        """Wait for index writes still running after their requests ended."""
        if self._inflight:
            await asyncio.gather(*list(self._inflight), return_exceptions=True)


__all__ = ["ResponseDecorators", "id_from_location"]
