"""
Ownership index store over Redis.

Layout
------
* one hash per type-level path: ``field = resource id``, ``value = JSON record``
* one revision counter per endpoint subtree (see ``keys.revision_key``)

Every write bumps the revision of its endpoint subtree inside the same
MULTI/EXEC. ``transaction()`` WATCHes that counter, so a conditional
read-modify-write fails (and is retried from a fresh read) whenever any other
writer touched the subtree in between. Multi-hash reads use the same counter
to return a snapshot that never mixes pre- and post-transaction state.
"""
from __future__ import annotations
import copy
import time
from typing import Any, Callable, Dict, Optional, Protocol

from redis import asyncio as aioredis
from redis.exceptions import RedisError, WatchError

import core_metrics
from core_config.constants import (
    INDEX_RETRY_BASE_MS,
    INDEX_RETRY_CAP_MS,
    INDEX_RETRY_JITTER_MS,
    INDEX_TXN_MAX_ATTEMPTS,
)
from core_logging import get_logger, log_stage
from core_utils import jsonx
from core_utils.backoff import async_backoff_sleep

from .errors import IndexUnavailable
from .keys import (
    ENDPOINT_DEPTH,
    ID_DEPTH,
    ROOT_DEPTH,
    TYPE_DEPTH,
    IndexPath,
    flatten,
    revision_key,
    split,
    subtree_pattern,
)

logger = get_logger("core_index")

Tree = Dict[str, Any]
TransactionFn = Callable[[Tree], Optional[Tree]]


class IndexStore(Protocol):
    """Awaitable contract the edge components depend on."""

    async def get(self, path: IndexPath) -> Any: ...

    async def put(self, path: IndexPath, patch: Dict[str, Any]) -> None: ...

    async def delete(self, path: IndexPath) -> None: ...

    async def transaction(self, path: IndexPath, fn: TransactionFn) -> bool: ...


def _text(v: Any) -> str:
    return v.decode("utf-8") if isinstance(v, (bytes, bytearray)) else str(v)


def _decode_hash(raw: Dict[Any, Any]) -> Dict[str, Any]:
    return {_text(k): jsonx.loads(v) for k, v in (raw or {}).items()}


def _check_depth(path: IndexPath, allowed: range, op: str) -> IndexPath:
    path = tuple(str(p) for p in path)
    if len(path) not in allowed or not all(path):
        raise ValueError(f"{op}: unsupported index path {path!r}")
    return path


class RedisIndexStore:
    """
    ``IndexStore`` backed by ``redis.asyncio``.

    The client is injected; the store never creates or closes it.
    """

    def __init__(
        self,
        client: aioredis.Redis,
        *,
        max_attempts: int = INDEX_TXN_MAX_ATTEMPTS,
        retry_base_ms: int = INDEX_RETRY_BASE_MS,
        retry_jitter_ms: int = INDEX_RETRY_JITTER_MS,
        retry_cap_ms: int = INDEX_RETRY_CAP_MS,
        scan_count: int = 200,
    ):
        if client is None:
            raise ValueError("RedisIndexStore requires a valid redis client")
        self._r = client
        self._max_attempts = max(1, int(max_attempts))
        self._retry_base_ms = retry_base_ms
        self._retry_jitter_ms = retry_jitter_ms
        self._retry_cap_ms = retry_cap_ms
        self._scan_count = scan_count

    # ------------------------------------------------------------------ #
    # Reads                                                              #
    # ------------------------------------------------------------------ #
    async def get(self, path: IndexPath) -> Any:
        """
        Value at *path*, or ``None`` when nothing is stored there.

        id level → record; type level → ``{id: record}``; endpoint level and
        above → the nested map beneath it.
        """
        path = _check_depth(path, range(ROOT_DEPTH, ID_DEPTH + 1), "get")
        try:
            if len(path) == ID_DEPTH:
                raw = await self._r.hget(flatten(path[:-1]), path[-1])
                return None if raw is None else jsonx.loads(raw)
            if len(path) == TYPE_DEPTH:
                return _decode_hash(await self._r.hgetall(flatten(path))) or None
            if len(path) == ENDPOINT_DEPTH:
                return await self._snapshot(path) or None
            return await self._read_wide(path) or None
        except RedisError as exc:
            raise IndexUnavailable("index read failed", detail={"op": "get", "error": str(exc)}) from exc

    async def _scan_tree(self, path: IndexPath) -> Tree:
        """Nested map of every type hash beneath *path* (not atomic on its own)."""
        out: Tree = {}
        async for key in self._r.scan_iter(match=subtree_pattern(path), count=self._scan_count):
            rel = split(_text(key))[len(path):]
            fields = await self._r.hgetall(key)
            if not rel or not fields:
                continue
            node = out
            for seg in rel[:-1]:
                node = node.setdefault(seg, {})
            node[rel[-1]] = _decode_hash(fields)
        return out

    async def _snapshot(self, path: IndexPath) -> Tree:
        """Consistent read of one endpoint subtree: retried while its revision moves."""
        rev = revision_key(path)
        for _ in range(self._max_attempts):
            before = await self._r.get(rev)
            tree = await self._scan_tree(path)
            if await self._r.get(rev) == before:
                return tree
        raise IndexUnavailable("index subtree kept changing during read", detail={"op": "get"})

    async def _read_wide(self, path: IndexPath) -> Tree:
        # Discover endpoint subtrees below a root/caller path, then read each consistently.
        endpoints: set[IndexPath] = set()
        async for key in self._r.scan_iter(match=subtree_pattern(path), count=self._scan_count):
            parts = split(_text(key))
            if len(parts) >= TYPE_DEPTH:
                endpoints.add(parts[:ENDPOINT_DEPTH])
        out: Tree = {}
        for ep in sorted(endpoints):
            tree = await self._snapshot(ep)
            if not tree:
                continue
            node = out
            for seg in ep[len(path):-1]:
                node = node.setdefault(seg, {})
            node[ep[-1]] = tree
        return out

    # ------------------------------------------------------------------ #
    # Writes                                                             #
    # ------------------------------------------------------------------ #
    async def put(self, path: IndexPath, patch: Dict[str, Any]) -> None:
        """
        Merge ``{id: record}`` into the type-level hash at *path*.

        Sibling ids are untouched. A ``None`` record removes that id.
        """
        path = _check_depth(path, range(TYPE_DEPTH, TYPE_DEPTH + 1), "put")
        if not patch:
            return
        key = flatten(path)
        upserts = {str(k): jsonx.dumps(v) for k, v in patch.items() if v is not None}
        removals = [str(k) for k, v in patch.items() if v is None]
        try:
            async with self._r.pipeline(transaction=True) as pipe:
                if upserts:
                    pipe.hset(key, mapping=upserts)
                if removals:
                    pipe.hdel(key, *removals)
                pipe.incr(revision_key(path))
                await pipe.execute()
        except RedisError as exc:
            raise IndexUnavailable("index write failed", detail={"op": "put", "error": str(exc)}) from exc

    async def delete(self, path: IndexPath) -> None:
        """Remove an id, a type hash or a whole endpoint subtree."""
        path = _check_depth(path, range(ENDPOINT_DEPTH, ID_DEPTH + 1), "delete")
        try:
            keys: list[str] = []
            if len(path) == ENDPOINT_DEPTH:
                keys = [_text(k) async for k in self._r.scan_iter(match=subtree_pattern(path), count=self._scan_count)]
            async with self._r.pipeline(transaction=True) as pipe:
                if len(path) == ID_DEPTH:
                    pipe.hdel(flatten(path[:-1]), path[-1])
                elif len(path) == TYPE_DEPTH:
                    pipe.delete(flatten(path))
                elif keys:
                    pipe.delete(*keys)
                pipe.incr(revision_key(path))
                await pipe.execute()
        except RedisError as exc:
            raise IndexUnavailable("index delete failed", detail={"op": "delete", "error": str(exc)}) from exc

    async def transaction(self, path: IndexPath, fn: TransactionFn) -> bool:
        """
        Conditional read-modify-write of an endpoint subtree.

        *fn* receives a private copy of the current ``{type: {id: record}}``
        map (``{}`` when absent) and returns the new map, or ``None`` to
        abort (→ ``False``). The write commits only if no other writer bumped
        the subtree revision since the read; otherwise the read is repeated,
        up to ``max_attempts`` times. Exhaustion raises ``IndexUnavailable``.
        """
        path = _check_depth(path, range(ENDPOINT_DEPTH, ENDPOINT_DEPTH + 1), "transaction")
        rev = revision_key(path)
        t0 = time.perf_counter()
        for attempt in range(1, self._max_attempts + 1):
            try:
                async with self._r.pipeline(transaction=True) as pipe:
                    await pipe.watch(rev)
                    current = await self._scan_tree(path)
                    proposed = fn(copy.deepcopy(current))
                    if proposed is None:
                        log_stage(logger, "index", "txn_aborted", attempt=attempt)
                        return False
                    pipe.multi()
                    self._queue_tree_write(pipe, path, current, proposed)
                    pipe.incr(rev)
                    await pipe.execute()
            except WatchError:
                core_metrics.counter("index_txn_conflicts_total", 1)
                log_stage(logger, "index", "txn_conflict", attempt=attempt, max_attempts=self._max_attempts)
                if attempt < self._max_attempts:
                    await async_backoff_sleep(
                        attempt,
                        base_ms=self._retry_base_ms,
                        jitter_ms=self._retry_jitter_ms,
                        cap_ms=self._retry_cap_ms,
                    )
                continue
            except RedisError as exc:
                raise IndexUnavailable("index transaction failed", detail={"op": "transaction", "error": str(exc)}) from exc
            core_metrics.record_latency_ms("index_txn", t0)
            log_stage(logger, "index", "txn_committed", attempt=attempt)
            return True
        raise IndexUnavailable(
            "index transaction retries exhausted",
            detail={"op": "transaction", "attempts": self._max_attempts},
        )

    @staticmethod
    def _queue_tree_write(pipe: Any, path: IndexPath, current: Tree, proposed: Tree) -> None:
        # Only type hashes whose content changed are rewritten.
        if not isinstance(proposed, dict):
            raise TypeError("transaction function must return a mapping or None")
        for rtype in sorted(set(current) | set(proposed)):
            new = proposed.get(rtype) or {}
            if not isinstance(new, dict):
                raise TypeError(f"transaction value for {rtype!r} must be a mapping")
            new = {str(k): v for k, v in new.items() if v is not None}
            if new == (current.get(rtype) or {}):
                continue
            key = flatten(path + (str(rtype),))
            pipe.delete(key)
            if new:
                pipe.hset(key, mapping={k: jsonx.dumps(v) for k, v in new.items()})

    async def ping(self) -> bool:
        try:
            return bool(await self._r.ping())
        except RedisError:
            return False


__all__ = ["IndexStore", "RedisIndexStore", "TransactionFn"]
