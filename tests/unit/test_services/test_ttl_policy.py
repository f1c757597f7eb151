"""
TTL Policy Unit Tests
"""

from datetime import datetime, timedelta

import pytest
from sqlalchemy import Column, DateTime, MetaData, Table
from sqlalchemy.dialects import sqlite

from sqlkv.domain.kv_store import TtlCleanupStrategy
from sqlkv.services.ttl_policy import TTLPolicy

NOW = datetime(2024, 6, 1, 12, 0, 0)
PAST = NOW - timedelta(seconds=1)
FUTURE = NOW + timedelta(seconds=30)

_table = Table("kv", MetaData(), Column("expires_at", DateTime))


def render(clause) -> str:
    return str(clause.compile(dialect=sqlite.dialect()))


class TestStrategyFlags:
    """Strategy behaviour flags"""

    def test_on_read(self):
        policy = TTLPolicy(TtlCleanupStrategy.ON_READ)
        assert policy.hides_expired
        assert policy.purges_on_read
        assert policy.allows_cleanup

    def test_manual(self):
        policy = TTLPolicy(TtlCleanupStrategy.MANUAL)
        assert not policy.hides_expired
        assert not policy.purges_on_read
        assert policy.allows_cleanup

    def test_disabled(self):
        policy = TTLPolicy(TtlCleanupStrategy.DISABLED)
        assert not policy.hides_expired
        assert not policy.allows_cleanup


class TestVisibility:
    """Row visibility tests"""

    @pytest.mark.parametrize(
        "strategy,expires_at,visible",
        [
            (TtlCleanupStrategy.ON_READ, None, True),
            (TtlCleanupStrategy.ON_READ, FUTURE, True),
            (TtlCleanupStrategy.ON_READ, PAST, False),
            (TtlCleanupStrategy.ON_READ, NOW, False),
            (TtlCleanupStrategy.MANUAL, PAST, True),
            (TtlCleanupStrategy.DISABLED, PAST, True),
        ],
    )
    def test_is_visible(self, strategy, expires_at, visible):
        assert TTLPolicy(strategy).is_visible(expires_at, NOW) is visible

    def test_visible_clause_on_read(self):
        """Test on_read reads filter out expired rows"""
        clause = TTLPolicy(TtlCleanupStrategy.ON_READ).visible_clause(_table.c.expires_at, NOW)
        sql = render(clause)
        assert "expires_at IS NULL" in sql
        assert "expires_at >" in sql

    def test_visible_clause_include_expired(self):
        clause = TTLPolicy(TtlCleanupStrategy.ON_READ).visible_clause(
            _table.c.expires_at, NOW, include_expired=True
        )
        assert "expires_at" not in render(clause)

    def test_visible_clause_manual(self):
        clause = TTLPolicy(TtlCleanupStrategy.MANUAL).visible_clause(_table.c.expires_at, NOW)
        assert "expires_at" not in render(clause)

    def test_expired_clause(self):
        sql = render(TTLPolicy.expired_clause(_table.c.expires_at, NOW))
        assert "expires_at IS NOT NULL" in sql
        assert "expires_at <=" in sql


class TestRemaining:
    """Remaining time tests"""

    def test_persistent(self):
        assert TTLPolicy.remaining(None, NOW) is None

    def test_future(self):
        assert TTLPolicy.remaining(FUTURE, NOW) == timedelta(seconds=30)

    def test_expired(self):
        assert TTLPolicy.remaining(PAST, NOW) is None
        assert TTLPolicy.remaining(NOW, NOW) is None
