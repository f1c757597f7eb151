"""
Data Access Layer Module Initialization
"""

from sqlkv.repositories.kv_store_repo import KVStoreRepository

__all__ = [
    "KVStoreRepository",
]
