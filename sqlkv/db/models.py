"""
SQLAlchemy Table Definitions

Defines the key-value table layout shared by every implementation:

    table(key TEXT PRIMARY KEY, value BYTES NOT NULL, expires_at TIMESTAMP NULL,
          created_at TIMESTAMP NOT NULL, updated_at TIMESTAMP NOT NULL)
    INDEX <table>_expires_idx ON (expires_at) WHERE expires_at IS NOT NULL

The table name, schema and durability mode are configurable, so the table is
built per store instead of being declared once on a declarative base.
"""

from typing import Optional

from sqlalchemy import (
    Column,
    DateTime,
    Index,
    LargeBinary,
    MetaData,
    Table,
    Text,
)

from sqlkv.config import Settings
from sqlkv.domain.kv_store import TableType

# Columns every existing table must carry to be usable
REQUIRED_COLUMNS = ("key", "value", "expires_at", "created_at", "updated_at")


def expires_index_name(table_name: str) -> str:
    """Name of the partial index on expires_at"""
    return f"{table_name}_expires_idx"


def build_kv_table(settings: Settings, dialect_name: str, metadata: Optional[MetaData] = None) -> Table:
    """
    Build the key-value table for the configured name, schema and durability

    Args:
        settings: Store configuration
        dialect_name: SQLAlchemy dialect name of the target engine
        metadata: MetaData to attach the table to (a fresh one by default)

    Returns:
        Table: Core table with its partial expiry index attached
    """
    metadata = metadata if metadata is not None else MetaData()

    prefixes = []
    # UNLOGGED only exists on PostgreSQL; other backends get a regular table
    if dialect_name == "postgresql" and settings.KV_TABLE_TYPE is TableType.UNLOGGED:
        prefixes.append("UNLOGGED")

    table = Table(
        settings.KV_TABLE_NAME,
        metadata,
        # Key, unique by primary key constraint
        Column("key", Text, primary_key=True),
        # Raw value bytes (BYTEA / BLOB)
        Column("value", LargeBinary, nullable=False),
        # Expiration Time (naive UTC), NULL means never expires
        Column("expires_at", DateTime, nullable=True),
        # Creation Time (naive UTC)
        Column("created_at", DateTime, nullable=False),
        # Update Time (naive UTC)
        Column("updated_at", DateTime, nullable=False),
        schema=settings.KV_SCHEMA,
        prefixes=prefixes,
    )

    Index(
        expires_index_name(settings.KV_TABLE_NAME),
        table.c.expires_at,
        postgresql_where=table.c.expires_at.isnot(None),
        sqlite_where=table.c.expires_at.isnot(None),
    )

    return table
