"""
SQLAlchemy Repository Implementation Module Initialization
"""

from sqlkv.repositories.sqlalchemy.kv_store_repo import SQLAlchemyKVStoreRepository

__all__ = [
    "SQLAlchemyKVStoreRepository",
]
