"""
Key-Value Store Repository SQLAlchemy Implementation

Expresses every KV operation as SQLAlchemy Core statements against the
key-value table. Atomic contracts rely on the backing store alone: single
upsert/update/delete statements with RETURNING, row locks taken with
SELECT ... FOR UPDATE, and the surrounding transaction opened by the caller.
"""

import logging
from datetime import datetime, timedelta
from typing import Iterator, Optional, Sequence

from sqlalchemy import (
    BigInteger,
    LargeBinary,
    Numeric,
    Table,
    Text,
    and_,
    case,
    cast,
    delete,
    false,
    func,
    not_,
    or_,
    select,
    text,
    update,
)
from sqlalchemy.dialects.postgresql import REGCLASS
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.engine import Connection, Row
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.sql.elements import ColumnElement

from sqlkv.common.errors import ConfigurationError, InvalidValueError
from sqlkv.common.time import ensure_utc, utc_now_naive
from sqlkv.domain.kv_store import CasResult, Entry, KeyValue, ScanOptions, Stats
from sqlkv.repositories.kv_store_repo import KVStoreRepository
from sqlkv.services.ttl_policy import TTLPolicy

logger = logging.getLogger(__name__)

# Keeps IN (...) lists under SQLite's bound parameter limit
BATCH_CHUNK_SIZE = 500

# Counters are signed 64-bit integers in canonical decimal form
INT64_MIN = -(2**63)
INT64_MAX = 2**63 - 1
CANONICAL_INTEGER_PATTERN = r"^(0|-?[1-9][0-9]*)$"


def _chunks(items: Sequence[str], size: int = BATCH_CHUNK_SIZE) -> Iterator[Sequence[str]]:
    for start in range(0, len(items), size):
        yield items[start:start + size]


class SQLAlchemyKVStoreRepository(KVStoreRepository):
    """
    Key-Value Store Repository SQLAlchemy Implementation

    Works on a single Connection. Every method expects to run inside a
    transaction opened by the caller, so multi-statement operations are atomic.
    """

    def __init__(self, conn: Connection, table: Table, policy: TTLPolicy):
        """
        Initialize Repository

        Args:
            conn: Database connection owned by the store
            table: Key-value table
            policy: TTL policy deciding visibility and purges
        """
        self.conn = conn
        self.table = table
        self.policy = policy
        self.dialect_name = conn.dialect.name
        if self.dialect_name == "postgresql":
            self._insert = pg_insert
        elif self.dialect_name == "sqlite":
            self._insert = sqlite_insert
        else:
            raise ConfigurationError(f"unsupported backend '{self.dialect_name}'")

    # ==================== Statement Helpers ====================

    def _now(self) -> datetime:
        return utc_now_naive()

    def _upsert_statement(self, now: datetime):
        """INSERT ... ON CONFLICT DO UPDATE replacing value and expiry"""
        t = self.table
        stmt = self._insert(t)
        set_ = {
            "value": stmt.excluded.value,
            "expires_at": stmt.excluded.expires_at,
            "updated_at": stmt.excluded.updated_at,
        }
        if self.policy.hides_expired:
            # Overwriting a logically expired row starts a new record
            set_["created_at"] = case(
                (self.policy.alive_clause(t.c.expires_at, now), t.c.created_at),
                else_=stmt.excluded.created_at,
            )
        return stmt.on_conflict_do_update(index_elements=[t.c.key], set_=set_)

    def _row_params(self, key: str, value: bytes, expires_at: Optional[datetime], now: datetime) -> dict:
        return {
            "key": key,
            "value": value,
            "expires_at": expires_at,
            "created_at": now,
            "updated_at": now,
        }

    def _upsert(self, key: str, value: bytes, expires_at: Optional[datetime], now: datetime) -> None:
        self.conn.execute(self._upsert_statement(now), self._row_params(key, value, expires_at, now))

    def _insert_if_absent(
        self, key: str, value: bytes, expires_at: Optional[datetime], now: datetime
    ) -> bool:
        """Conditional insert; under on_read an expired row counts as absent"""
        t = self.table
        stmt = self._insert(t).values(**self._row_params(key, value, expires_at, now))
        if self.policy.hides_expired:
            stmt = stmt.on_conflict_do_update(
                index_elements=[t.c.key],
                set_={
                    "value": stmt.excluded.value,
                    "expires_at": stmt.excluded.expires_at,
                    "created_at": stmt.excluded.created_at,
                    "updated_at": stmt.excluded.updated_at,
                },
                where=self.policy.expired_clause(t.c.expires_at, now),
            )
        else:
            stmt = stmt.on_conflict_do_nothing(index_elements=[t.c.key])
        return self.conn.execute(stmt.returning(t.c.key)).first() is not None

    def _select(self, key: str, *columns: ColumnElement, for_update: bool = False) -> Optional[Row]:
        t = self.table
        stmt = select(*columns, t.c.expires_at).where(t.c.key == key)
        if for_update:
            stmt = stmt.with_for_update()
        return self.conn.execute(stmt).first()

    def _read(
        self,
        key: str,
        *columns: ColumnElement,
        now: datetime,
        for_update: bool = False,
    ) -> Optional[Row]:
        """
        Read a row through the TTL policy

        Expired rows are reported as absent and, under on_read, purged.
        """
        row = self._select(key, *columns, for_update=for_update)
        if row is None:
            return None
        if not self.policy.is_visible(row.expires_at, now):
            if self.policy.purges_on_read:
                self._purge_key(key, row.expires_at)
            return None
        return row

    def _purge_key(self, key: str, observed_expires_at: datetime) -> None:
        """
        Delete an expired key if it still carries the expiry that was observed

        A concurrent fresh write changes expires_at, so it survives. Failures are
        logged and leave the row for a later cleanup.
        """
        t = self.table
        try:
            with self.conn.begin_nested():
                self.conn.execute(
                    delete(t).where(t.c.key == key, t.c.expires_at == observed_expires_at)
                )
        except SQLAlchemyError as e:
            logger.warning(f"Failed to purge expired key on read: key={key}, error={e}")

    def _purge_expired_where(self, now: datetime, *criteria: ColumnElement) -> int:
        """Delete rows that are still expired and match criteria, best effort"""
        t = self.table
        try:
            with self.conn.begin_nested():
                result = self.conn.execute(
                    delete(t).where(self.policy.expired_clause(t.c.expires_at, now), *criteria)
                )
        except SQLAlchemyError as e:
            logger.warning(f"Failed to purge expired keys on read: error={e}")
            return 0
        return result.rowcount

    # ==================== Counter Expressions ====================

    def _value_as_text(self, column: ColumnElement) -> ColumnElement:
        if self.dialect_name == "postgresql":
            # 'escape' encoding never fails on non-UTF-8 bytes
            return func.encode(column, "escape")
        return cast(column, Text)

    def _counter_value(self, column: ColumnElement) -> ColumnElement:
        return cast(self._value_as_text(column), BigInteger)

    def _counter_bytes(self, expr: ColumnElement) -> ColumnElement:
        text_expr = cast(expr, Text)
        if self.dialect_name == "postgresql":
            return func.convert_to(text_expr, "UTF8")
        return cast(text_expr, LargeBinary)

    def _counter_guard(self, column: ColumnElement, delta: int) -> ColumnElement:
        """
        Whether the stored value is a counter that can take delta

        A counter is a canonical decimal int64: no sign on zero, no leading
        zeros, no whitespace. The sum must stay within int64 as well.
        """
        text_expr = self._value_as_text(column)
        if self.dialect_name == "postgresql":
            # CASE keeps the numeric cast away from non-numeric text
            return case(
                (
                    text_expr.regexp_match(CANONICAL_INTEGER_PATTERN),
                    (cast(text_expr, Numeric) + delta).between(INT64_MIN, INT64_MAX),
                ),
                else_=false(),
            )
        # SQLite casts garbage to 0 and clamps big numbers, so require an exact
        # round trip; an overflowing sum turns into a REAL
        return and_(
            cast(cast(text_expr, BigInteger), Text) == text_expr,
            func.typeof(self._counter_value(column) + delta) == "integer",
        )

    # ==================== Single Records ====================

    def get(self, key: str) -> Optional[bytes]:
        """Get value by key, returns None if not found or expired"""
        row = self._read(key, self.table.c.value, now=self._now())
        return row.value if row is not None else None

    def get_entry(self, key: str) -> Optional[Entry]:
        t = self.table
        row = self._read(key, t.c.key, t.c.value, t.c.created_at, t.c.updated_at, now=self._now())
        if row is None:
            return None
        return Entry(
            key=row.key,
            value=row.value,
            expires_at=ensure_utc(row.expires_at),
            created_at=ensure_utc(row.created_at),
            updated_at=ensure_utc(row.updated_at),
        )

    def set(self, key: str, value: bytes, expires_at: Optional[datetime] = None) -> None:
        """Set a key-value pair with optional expiry"""
        self._upsert(key, value, expires_at, self._now())

    def set_if_absent(self, key: str, value: bytes, expires_at: Optional[datetime] = None) -> bool:
        return self._insert_if_absent(key, value, expires_at, self._now())

    def delete(self, key: str) -> bool:
        """Delete a key"""
        t = self.table
        result = self.conn.execute(delete(t).where(t.c.key == key))
        return result.rowcount > 0

    def exists(self, key: str) -> bool:
        return self._read(key, now=self._now()) is not None

    # ==================== Atomic Operations ====================

    def increment(self, key: str, delta: int) -> int:
        """
        Add delta to a counter with a single upsert

        The arithmetic happens inside the statement, so concurrent increments
        serialize on the row and none is lost.
        """
        t = self.table
        now = self._now()
        stmt = self._insert(t).values(
            **self._row_params(key, str(delta).encode("ascii"), None, now)
        )
        incremented = self._counter_bytes(self._counter_value(t.c.value) + delta)

        if self.policy.hides_expired:
            alive = self.policy.alive_clause(t.c.expires_at, now)
            # An expired counter restarts from delta as a new persistent record
            set_ = {
                "value": case((alive, incremented), else_=stmt.excluded.value),
                "expires_at": case((alive, t.c.expires_at), else_=None),
                "created_at": case((alive, t.c.created_at), else_=stmt.excluded.created_at),
                "updated_at": stmt.excluded.updated_at,
            }
            guard = or_(not_(alive), self._counter_guard(t.c.value, delta))
        else:
            set_ = {"value": incremented, "updated_at": stmt.excluded.updated_at}
            guard = self._counter_guard(t.c.value, delta)

        stmt = stmt.on_conflict_do_update(
            index_elements=[t.c.key], set_=set_, where=guard
        ).returning(t.c.value)
        row = self.conn.execute(stmt).first()
        if row is None:
            # The guard rejected the update and the row is unchanged
            raise InvalidValueError(
                "value is not an integer or the result is out of the 64-bit range",
                details={"key": key, "delta": delta},
            )
        return int(row.value)

    def compare_and_swap(self, key: str, expected: Optional[bytes], new_value: bytes) -> CasResult:
        t = self.table
        now = self._now()

        if expected is None:
            if self._insert_if_absent(key, new_value, None, now):
                return CasResult.success()
            row = self._read(key, t.c.value, now=now, for_update=True)
            return CasResult.mismatch(row.value if row is not None else None)

        result = self.conn.execute(
            update(t)
            .where(
                t.c.key == key,
                t.c.value == expected,
                self.policy.visible_clause(t.c.expires_at, now),
            )
            .values(value=new_value, updated_at=now)
        )
        if result.rowcount > 0:
            return CasResult.success()

        # Lock the row so the reported value is the authoritative one
        row = self._read(key, t.c.value, now=now, for_update=True)
        if row is None:
            return CasResult.not_found()
        if row.value == expected:
            # Changed back between the two statements; the row is locked now
            self.conn.execute(
                update(t).where(t.c.key == key).values(value=new_value, updated_at=now)
            )
            return CasResult.success()
        return CasResult.mismatch(row.value)

    def get_and_set(self, key: str, value: bytes) -> Optional[bytes]:
        now = self._now()
        row = self._select(key, self.table.c.value, for_update=True)
        previous = None
        if row is not None and self.policy.is_visible(row.expires_at, now):
            previous = row.value
        self._upsert(key, value, None, now)
        return previous

    def get_and_delete(self, key: str) -> Optional[bytes]:
        t = self.table
        now = self._now()
        row = self.conn.execute(
            delete(t).where(t.c.key == key).returning(t.c.value, t.c.expires_at)
        ).first()
        if row is None or not self.policy.is_visible(row.expires_at, now):
            return None
        return row.value

    # ==================== TTL Operations ====================

    def expire(self, key: str, expires_at: datetime) -> bool:
        t = self.table
        now = self._now()
        result = self.conn.execute(
            update(t)
            .where(t.c.key == key, self.policy.visible_clause(t.c.expires_at, now))
            .values(expires_at=expires_at, updated_at=now)
        )
        return result.rowcount > 0

    def persist(self, key: str) -> bool:
        t = self.table
        now = self._now()
        result = self.conn.execute(
            update(t)
            .where(
                t.c.key == key,
                t.c.expires_at.isnot(None),
                self.policy.visible_clause(t.c.expires_at, now),
            )
            .values(expires_at=None, updated_at=now)
        )
        return result.rowcount > 0

    def ttl(self, key: str) -> Optional[timedelta]:
        now = self._now()
        row = self._read(key, now=now)
        if row is None:
            return None
        return self.policy.remaining(row.expires_at, now)

    def cleanup_expired(self) -> int:
        """Delete all expired keys"""
        if not self.policy.allows_cleanup:
            return 0
        t = self.table
        result = self.conn.execute(
            delete(t).where(self.policy.expired_clause(t.c.expires_at, self._now()))
        )
        return result.rowcount

    # ==================== Batch Operations ====================

    def get_many(self, keys: Sequence[str]) -> list[KeyValue]:
        t = self.table
        now = self._now()
        unique_keys = list(dict.fromkeys(keys))

        found: dict[str, bytes] = {}
        expired: list[str] = []
        for chunk in _chunks(unique_keys):
            rows = self.conn.execute(
                select(t.c.key, t.c.value, t.c.expires_at).where(t.c.key.in_(chunk))
            )
            for row in rows:
                if self.policy.is_visible(row.expires_at, now):
                    found[row.key] = row.value
                else:
                    expired.append(row.key)

        if expired and self.policy.purges_on_read:
            for chunk in _chunks(expired):
                self._purge_expired_where(now, t.c.key.in_(chunk))

        return [KeyValue(key=key, value=found[key]) for key in unique_keys if key in found]

    def set_many(self, items: Sequence[tuple[str, bytes]], expires_at: Optional[datetime] = None) -> None:
        if not items:
            return
        now = self._now()
        # Last value wins for repeated keys; one statement cannot touch a row twice
        latest = dict(items)
        self.conn.execute(
            self._upsert_statement(now),
            [self._row_params(key, value, expires_at, now) for key, value in latest.items()],
        )

    def delete_many(self, keys: Sequence[str]) -> int:
        t = self.table
        deleted = 0
        for chunk in _chunks(list(dict.fromkeys(keys))):
            result = self.conn.execute(delete(t).where(t.c.key.in_(chunk)))
            deleted += result.rowcount
        return deleted

    # ==================== Scanning ====================

    def _prefix_criteria(self, prefix: Optional[str]) -> list[ColumnElement]:
        if not prefix:
            return []
        return [self.table.c.key.startswith(prefix, autoescape=True)]

    def _scan_criteria(self, options: ScanOptions, now: datetime) -> list[ColumnElement]:
        if self.policy.purges_on_read and not options.include_expired:
            self._purge_expired_where(now, *self._prefix_criteria(options.prefix))
        return [
            self.policy.visible_clause(self.table.c.expires_at, now, options.include_expired),
            *self._prefix_criteria(options.prefix),
        ]

    def _paginate(self, stmt, options: ScanOptions):
        stmt = stmt.order_by(self.table.c.key)
        if options.limit is not None:
            stmt = stmt.limit(options.limit)
        if options.offset is not None:
            stmt = stmt.offset(options.offset)
        return stmt

    def keys(self, options: ScanOptions) -> list[str]:
        t = self.table
        criteria = self._scan_criteria(options, self._now())
        stmt = self._paginate(select(t.c.key).where(*criteria), options)
        return list(self.conn.execute(stmt).scalars())

    def scan(self, options: ScanOptions) -> list[KeyValue]:
        t = self.table
        criteria = self._scan_criteria(options, self._now())
        stmt = self._paginate(select(t.c.key, t.c.value).where(*criteria), options)
        return [KeyValue(key=row.key, value=row.value) for row in self.conn.execute(stmt)]

    def count(self, options: ScanOptions) -> int:
        t = self.table
        criteria = self._scan_criteria(options, self._now())
        stmt = select(func.count()).select_from(t).where(*criteria)
        return self.conn.execute(stmt).scalar_one()

    def delete_prefix(self, prefix: str) -> int:
        t = self.table
        result = self.conn.execute(delete(t).where(*self._prefix_criteria(prefix)))
        return result.rowcount

    # ==================== Maintenance ====================

    def clear(self) -> int:
        result = self.conn.execute(delete(self.table))
        return result.rowcount

    def truncate(self) -> None:
        """Remove every row, using TRUNCATE where the backend has it"""
        if self.dialect_name == "postgresql":
            preparer = self.conn.dialect.identifier_preparer
            self.conn.execute(text(f"TRUNCATE TABLE {preparer.format_table(self.table)}"))
        else:
            self.conn.execute(delete(self.table))

    def _relation_sizes(self) -> tuple[Optional[int], Optional[int]]:
        """Table (with indexes and TOAST) and index sizes; PostgreSQL only"""
        if self.dialect_name != "postgresql":
            return None, None
        relation = cast(self.conn.dialect.identifier_preparer.format_table(self.table), REGCLASS)
        row = self.conn.execute(
            select(
                func.pg_total_relation_size(relation).label("table_size"),
                func.pg_indexes_size(relation).label("index_size"),
            )
        ).one()
        return int(row.table_size), int(row.index_size)

    def stats(self) -> Stats:
        t = self.table
        size = func.length(t.c.value)
        expired = self.policy.expired_clause(t.c.expires_at, self._now())
        row = self.conn.execute(
            select(
                func.count().label("total_keys"),
                func.coalesce(func.sum(case((expired, 1), else_=0)), 0).label("expired_keys"),
                func.coalesce(func.sum(size), 0).label("total_value_bytes"),
                func.coalesce(func.avg(size), 0).label("avg_value_bytes"),
                func.coalesce(func.max(size), 0).label("max_value_bytes"),
            ).select_from(t)
        ).one()
        table_size, index_size = self._relation_sizes()
        return Stats(
            total_keys=int(row.total_keys),
            expired_keys=int(row.expired_keys),
            total_value_bytes=int(row.total_value_bytes),
            avg_value_bytes=float(row.avg_value_bytes),
            max_value_bytes=int(row.max_value_bytes),
            table_size_bytes=table_size,
            index_size_bytes=index_size,
        )
