"""
sqlkv

Redis-style key-value operations (TTL, compare-and-swap, counters, batches,
prefix scans, transactions) on top of a transactional SQL database.
"""

from sqlkv.common.errors import (
    ConfigurationError,
    ConnectionFailureError,
    InvalidKeyError,
    InvalidTtlError,
    InvalidValueError,
    KVStoreError,
    NestedTransactionError,
    NotFoundError,
    StatementFailureError,
    TableNotFoundError,
    TransactionError,
    ValueTooLargeError,
    classify_error,
)
from sqlkv.config import Settings, get_settings
from sqlkv.domain.kv_store import (
    CasResult,
    CasStatus,
    Entry,
    KeyValue,
    ScanOptions,
    Stats,
    TableType,
    TtlCleanupStrategy,
)
from sqlkv.services.typed_store import SerializationError, TypedKVStore
from sqlkv.store import KVStore, KVTransaction

__version__ = "0.1.0"

__all__ = [
    "KVStore",
    "KVTransaction",
    "TypedKVStore",
    "Settings",
    "get_settings",
    "CasResult",
    "CasStatus",
    "Entry",
    "KeyValue",
    "ScanOptions",
    "Stats",
    "TableType",
    "TtlCleanupStrategy",
    "KVStoreError",
    "ConfigurationError",
    "ConnectionFailureError",
    "InvalidKeyError",
    "InvalidTtlError",
    "InvalidValueError",
    "NestedTransactionError",
    "NotFoundError",
    "SerializationError",
    "StatementFailureError",
    "TableNotFoundError",
    "TransactionError",
    "ValueTooLargeError",
    "classify_error",
]
