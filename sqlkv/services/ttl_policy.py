"""
TTL Policy Module

Decides, per configured strategy, whether an expired row is visible to reads and
whether reads purge it. The repository asks the policy for the predicates it
attaches to statements; the policy never talks to the database itself.
"""

from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import and_, or_, true
from sqlalchemy.sql.elements import ColumnElement

from sqlkv.domain.kv_store import TtlCleanupStrategy


class TTLPolicy:
    """
    TTL Policy

    - on_read: expired rows are invisible and the read that meets them deletes them
    - manual: reads ignore expiry; cleanup_expired() purges
    - disabled: expiry is informational only; cleanup is a no-op
    """

    def __init__(self, strategy: TtlCleanupStrategy):
        self.strategy = strategy

    @property
    def hides_expired(self) -> bool:
        """Whether reads treat expired rows as absent"""
        return self.strategy is TtlCleanupStrategy.ON_READ

    @property
    def purges_on_read(self) -> bool:
        """Whether reads delete the expired rows they encounter"""
        return self.strategy is TtlCleanupStrategy.ON_READ

    @property
    def allows_cleanup(self) -> bool:
        """Whether cleanup_expired() deletes anything"""
        return self.strategy is not TtlCleanupStrategy.DISABLED

    @staticmethod
    def expired_clause(expires_at: ColumnElement, now: datetime) -> ColumnElement:
        """Rows whose expiry has passed"""
        return and_(expires_at.isnot(None), expires_at <= now)

    @staticmethod
    def alive_clause(expires_at: ColumnElement, now: datetime) -> ColumnElement:
        """Rows that are persistent or not yet expired"""
        return or_(expires_at.is_(None), expires_at > now)

    def visible_clause(
        self,
        expires_at: ColumnElement,
        now: datetime,
        include_expired: bool = False,
    ) -> ColumnElement:
        """
        Predicate a read attaches to select only visible rows

        Always true unless the strategy hides expired rows.
        """
        if not self.hides_expired or include_expired:
            return true()
        return self.alive_clause(expires_at, now)

    @staticmethod
    def is_expired(expires_at: Optional[datetime], now: datetime) -> bool:
        return expires_at is not None and expires_at <= now

    def is_visible(self, expires_at: Optional[datetime], now: datetime) -> bool:
        """Whether a row with this expiry is visible to reads"""
        if not self.hides_expired:
            return True
        return not self.is_expired(expires_at, now)

    @staticmethod
    def remaining(expires_at: Optional[datetime], now: datetime) -> Optional[timedelta]:
        """Time left before expiry; None if persistent or already expired"""
        if expires_at is None:
            return None
        left = expires_at - now
        return left if left > timedelta(0) else None
