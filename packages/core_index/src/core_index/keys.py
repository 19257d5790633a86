"""
Index key derivation.

An index path is an ordered tuple::

    (root, caller, encode(endpoint), resourceType, resourceId)

The Redis form of a path percent-quotes every segment and joins them with
"/", so two distinct tuples never flatten to the same key. Everything here is
pure; nothing touches Redis.
"""
from __future__ import annotations
import base64
from typing import Iterable, Tuple
from urllib.parse import quote, unquote

from core_config.constants import DEFAULT_INDEX_ROOT, DEFAULT_TRACKED_RESOURCE_TYPES

IndexPath = Tuple[str, ...]

ROOT_DEPTH = 1
ENDPOINT_DEPTH = 3
TYPE_DEPTH = 4
ID_DEPTH = 5

_SEP = "/"
_REV_MARK = "#rev"

def encode_endpoint(endpoint: str) -> str:
    """URL-safe base64 of the endpoint URL; total over any string."""
    return base64.urlsafe_b64encode(str(endpoint).encode("utf-8")).decode("ascii")

def endpoint_path(caller: str, endpoint: str, *, root: str = DEFAULT_INDEX_ROOT) -> IndexPath:
    return (root, str(caller), encode_endpoint(endpoint))

def resource_path(resource_type: str, caller: str, endpoint: str, *, root: str = DEFAULT_INDEX_ROOT) -> IndexPath:
    return endpoint_path(caller, endpoint, root=root) + (str(resource_type),)

def resource_id_path(
    resource_type: str,
    caller: str,
    endpoint: str,
    resource_id: str,
    *,
    root: str = DEFAULT_INDEX_ROOT,
) -> IndexPath:
    return resource_path(resource_type, caller, endpoint, root=root) + (str(resource_id),)

def is_tracked(resource_type: str | None, tracked: Iterable[str] | None = None) -> bool:
    """True when *resource_type* takes part in ownership indexing."""
    if not resource_type:
        return False
    allow = DEFAULT_TRACKED_RESOURCE_TYPES if tracked is None else tracked
    return resource_type in allow

def flatten(path: Iterable[str]) -> str:
    """Redis key for *path*; every segment is quoted so "/" inside a segment cannot split it."""
    return _SEP.join(quote(str(seg), safe="") for seg in path)

def split(key: str) -> IndexPath:
    """Inverse of flatten()."""
    return tuple(unquote(seg) for seg in key.split(_SEP))

def subtree_pattern(path: IndexPath) -> str:
    """SCAN pattern for every key strictly beneath *path*.

    Quoted segments never contain glob metacharacters, so the prefix needs no
    escaping.
    """
    return flatten(path) + _SEP + "*"

def revision_key(path: IndexPath) -> str:
    """
    Revision counter of the endpoint subtree containing *path*.

    Lives beside the data as ``<root>#rev/<caller>/<endpoint>``: "#" is
    always quoted inside a segment, so the key can neither equal a data key
    nor match a ``<root>/*`` scan.
    """
    if len(path) < ENDPOINT_DEPTH:
        raise ValueError(f"revision key needs an endpoint-level path, got depth {len(path)}")
    root, rest = path[0], path[1:ENDPOINT_DEPTH]
    return quote(str(root), safe="") + _REV_MARK + _SEP + flatten(rest)

__all__ = [
    "IndexPath",
    "ROOT_DEPTH",
    "ENDPOINT_DEPTH",
    "TYPE_DEPTH",
    "ID_DEPTH",
    "encode_endpoint",
    "endpoint_path",
    "resource_path",
    "resource_id_path",
    "is_tracked",
    "flatten",
    "split",
    "subtree_pattern",
    "revision_key",
]
