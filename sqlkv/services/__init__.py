"""
Service Layer Module Initialization
"""

from sqlkv.services.ttl_policy import TTLPolicy
from sqlkv.services.typed_store import SerializationError, TypedKVStore

__all__ = [
    "TTLPolicy",
    "SerializationError",
    "TypedKVStore",
]
