from __future__ import annotations
from typing import Any, Mapping
import orjson as _orjson

__all__ = ["dumps", "loads", "sanitize"]

def sanitize(obj: Any) -> Any:
    """Recursively convert *obj* into something JSON-serialisable.

    - Exceptions → {"error": <Type>, "message": str(e)}
    - bytes → UTF-8 string (replacement on errors)
    - sets/tuples → lists
    - enums → their value
    """
    if obj is None or isinstance(obj, (str, int, float, bool)):
        return obj
    if isinstance(obj, BaseException):
        return {"error": obj.__class__.__name__, "message": str(obj)}
    if isinstance(obj, (bytes, bytearray, memoryview)):
        return bytes(obj).decode("utf-8", "replace")
    if isinstance(obj, Mapping):
        return {str(k): sanitize(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple, set, frozenset)):
        return [sanitize(v) for v in obj]
    value = getattr(obj, "value", None)
    if isinstance(value, (str, int)):
        return value
    if hasattr(obj, "isoformat"):
        return obj.isoformat()
    return str(obj)

def dumps(obj: Any) -> str:
    """
    JSON dump that returns a *str* with sorted keys, so equal records
    serialise identically in the index.
    """
    return _orjson.dumps(obj, option=_orjson.OPT_SORT_KEYS, default=sanitize).decode("utf-8")

def loads(data: str | bytes | bytearray | memoryview) -> Any:
    """JSON load from str/bytes; strips a UTF-8 BOM once if present."""
    b = data.encode("utf-8") if isinstance(data, str) else bytes(data)
    if b[:3] == b"\xef\xbb\xbf":
        b = b[3:]
    return _orjson.loads(b)
