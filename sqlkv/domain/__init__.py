"""
Domain Model Module Initialization
"""

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

__all__ = [
    "CasResult",
    "CasStatus",
    "Entry",
    "KeyValue",
    "ScanOptions",
    "Stats",
    "TableType",
    "TtlCleanupStrategy",
]
