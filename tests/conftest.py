"""
Test Configuration Module
"""

from datetime import timedelta
from typing import Callable

import pytest
from sqlalchemy import select, update

from sqlkv.common.time import utc_now_naive
from sqlkv.config import Settings
from sqlkv.domain.kv_store import TtlCleanupStrategy
from sqlkv.store import KVStore


@pytest.fixture
def database_url(tmp_path) -> str:
    """File-backed SQLite database, fresh for every test"""
    return f"sqlite:///{tmp_path / 'kv_test.db'}"


@pytest.fixture
def make_settings(database_url) -> Callable[..., Settings]:
    """Build settings for the test database, ignoring any .env file"""

    def _make(**overrides) -> Settings:
        values = {"DATABASE_URL": database_url}
        values.update(overrides)
        return Settings(_env_file=None, **values)

    return _make


@pytest.fixture
def make_store(make_settings):
    """Create stores for the test database; all are closed on teardown"""
    stores = []

    def _make(strategy: TtlCleanupStrategy = TtlCleanupStrategy.ON_READ, **overrides) -> KVStore:
        store = KVStore(make_settings(KV_TTL_CLEANUP_STRATEGY=strategy, **overrides))
        stores.append(store)
        return store

    yield _make

    for store in stores:
        store.close()


@pytest.fixture
def store(make_store) -> KVStore:
    """Store with the default on_read TTL strategy"""
    return make_store()


@pytest.fixture
def manual_store(make_store) -> KVStore:
    return make_store(TtlCleanupStrategy.MANUAL)


@pytest.fixture
def disabled_store(make_store) -> KVStore:
    return make_store(TtlCleanupStrategy.DISABLED)


@pytest.fixture
def backdate():
    """
    Move the expiry of keys into the past

    Writes through a separate connection, the way another client would.
    """

    def _backdate(store: KVStore, *keys: str, seconds: int = 5) -> None:
        table = store.table
        past = utc_now_naive() - timedelta(seconds=seconds)
        with store._engine.begin() as conn:
            conn.execute(update(table).where(table.c.key.in_(keys)).values(expires_at=past))

    return _backdate


@pytest.fixture
def raw_keys():
    """Every key physically present in the table, expired ones included"""

    def _raw_keys(store: KVStore) -> list[str]:
        table = store.table
        with store._engine.connect() as conn:
            return list(conn.execute(select(table.c.key).order_by(table.c.key)).scalars())

    return _raw_keys