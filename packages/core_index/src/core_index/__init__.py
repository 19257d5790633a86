from .errors import IndexUnavailable
from .keys import (
    IndexPath,
    encode_endpoint,
    endpoint_path,
    resource_path,
    resource_id_path,
    is_tracked,
)
from .store import IndexStore, RedisIndexStore
from .redis_client import create_redis_client

__all__ = [
    "IndexUnavailable",
    "IndexPath",
    "encode_endpoint",
    "endpoint_path",
    "resource_path",
    "resource_id_path",
    "is_tracked",
    "IndexStore",
    "RedisIndexStore",
    "create_redis_client",
]
