"""
Database Module Initialization
"""

from sqlkv.db.models import REQUIRED_COLUMNS, build_kv_table, expires_index_name
from sqlkv.db.session import (
    create_kv_engine,
    drop_schema,
    ensure_schema,
    table_exists,
    verify_schema,
)

__all__ = [
    "REQUIRED_COLUMNS",
    "build_kv_table",
    "expires_index_name",
    "create_kv_engine",
    "drop_schema",
    "ensure_schema",
    "table_exists",
    "verify_schema",
]
