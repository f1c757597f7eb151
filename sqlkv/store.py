"""
Key-Value Store Module

`KVStore` is the public entry point. It owns exactly one database connection,
validates inputs, runs every operation as one unit of work and classifies
backing-store failures. `KVTransaction` exposes the same operation surface
bound to a transaction opened by `KVStore.transaction` / `KVStore.atomic`.

A store is not safe to share between threads. Use one store per thread, or
guard a shared store with a lock held for the whole call.
"""

import logging
from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import (
    Any,
    Callable,
    ContextManager,
    Iterable,
    Iterator,
    Mapping,
    Optional,
    TypeVar,
    Union,
)

from sqlalchemy import Table
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import SQLAlchemyError

from sqlkv.common.errors import (
    ConfigurationError,
    ConnectionFailureError,
    InvalidValueError,
    KVStoreError,
    NestedTransactionError,
    NotFoundError,
    TableNotFoundError,
    TransactionError,
    classify_error,
)
from sqlkv.common.time import TtlLike, to_utc_naive, utc_now_naive
from sqlkv.common.utils import ValueLike, to_bytes, validate_key, validate_ttl, validate_value
from sqlkv.config import Settings, get_settings
from sqlkv.db.models import build_kv_table
from sqlkv.db.session import (
    SUPPORTED_DIALECTS,
    analyze_table,
    create_kv_engine,
    drop_schema,
    ensure_schema,
    maintenance_connection,
    table_exists,
    vacuum_table,
    verify_schema,
)
from sqlkv.domain.kv_store import CasResult, Entry, KeyValue, ScanOptions, Stats
from sqlkv.repositories.sqlalchemy.kv_store_repo import (
    INT64_MAX,
    INT64_MIN,
    SQLAlchemyKVStoreRepository,
)
from sqlkv.services.ttl_policy import TTLPolicy
from sqlkv.services.typed_store import TypedKVStore

logger = logging.getLogger(__name__)

T = TypeVar("T")

Items = Union[Mapping[str, ValueLike], Iterable[tuple[str, ValueLike]]]


class _KVOperations(ABC):
    """
    Operation surface shared by the store and its transaction handles

    Subclasses provide `_unit()`, which either opens a transaction for the
    operation or joins the one already running.
    """

    settings: Settings
    _repo: SQLAlchemyKVStoreRepository

    @abstractmethod
    def _unit(self) -> ContextManager[None]:
        """Open or join the transaction an operation runs in"""

    @contextmanager
    def _translate(self, operation: str) -> Iterator[None]:
        """Re-raise backing-store failures as classified KV errors"""
        try:
            yield
        except KVStoreError:
            raise
        except SQLAlchemyError as e:
            error = classify_error(e)
            logger.warning(
                "KV operation failed: operation=%s, error_type=%s, retryable=%s, error=%s",
                operation,
                error.error_type,
                error.is_retryable,
                error.message,
            )
            raise error from e

    @contextmanager
    def _operation(self, operation: str) -> Iterator[SQLAlchemyKVStoreRepository]:
        logger.debug(f"KV operation: {operation}")
        with self._translate(operation), self._unit():
            yield self._repo

    # ==================== Validation ====================

    def _check_key(self, key: str) -> None:
        validate_key(key, self.settings.KV_MAX_KEY_LENGTH)

    def _check_value(self, value: ValueLike) -> bytes:
        data = to_bytes(value)
        validate_value(data, self.settings.KV_MAX_VALUE_SIZE)
        return data

    def _expiry_from_ttl(self, ttl: TtlLike) -> datetime:
        return utc_now_naive() + validate_ttl(ttl)

    # ==================== Basic Operations ====================

    def get(self, key: str) -> Optional[bytes]:
        """
        Get the value stored under a key

        Returns:
            The value, or None if the key is absent or expired (per TTL strategy)

        Raises:
            InvalidKeyError: If the key is empty or too long
        """
        self._check_key(key)
        with self._operation("get") as repo:
            return repo.get(key)

    def get_or_raise(self, key: str) -> bytes:
        """
        Get the value stored under a key, failing when it is absent

        Raises:
            NotFoundError: If the key is absent or expired
        """
        value = self.get(key)
        if value is None:
            raise NotFoundError(key)
        return value

    def get_string(self, key: str) -> Optional[str]:
        """
        Get the value decoded as UTF-8 text

        Raises:
            InvalidValueError: If the stored bytes are not valid UTF-8
        """
        value = self.get(key)
        if value is None:
            return None
        try:
            return value.decode("utf-8")
        except UnicodeDecodeError as e:
            raise InvalidValueError("value is not valid UTF-8", details={"key": key}) from e

    def get_entry(self, key: str) -> Optional[Entry]:
        """Get the value with its expiry and timestamps"""
        self._check_key(key)
        with self._operation("get_entry") as repo:
            return repo.get_entry(key)

    def set(self, key: str, value: ValueLike) -> None:
        """
        Store a value, replacing any previous one

        A plain set always makes the key persistent.

        Raises:
            InvalidKeyError: If the key is empty or too long
            ValueTooLargeError: If the value exceeds the configured size
        """
        self._check_key(key)
        data = self._check_value(value)
        with self._operation("set") as repo:
            repo.set(key, data, None)

    def set_ex(self, key: str, value: ValueLike, ttl: TtlLike) -> None:
        """
        Store a value that expires after ttl (timedelta or seconds)

        Raises:
            InvalidTtlError: If ttl is not positive
        """
        self._check_key(key)
        data = self._check_value(value)
        expires_at = self._expiry_from_ttl(ttl)
        with self._operation("set_ex") as repo:
            repo.set(key, data, expires_at)

    def set_at(self, key: str, value: ValueLike, expires_at: datetime) -> None:
        """Store a value that expires at an absolute time (naive values are UTC)"""
        self._check_key(key)
        data = self._check_value(value)
        with self._operation("set_at") as repo:
            repo.set(key, data, to_utc_naive(expires_at))

    def set_nx(self, key: str, value: ValueLike) -> bool:
        """
        Store a value only if the key has no visible value

        Returns:
            True if the value was stored
        """
        self._check_key(key)
        data = self._check_value(value)
        with self._operation("set_nx") as repo:
            return repo.set_if_absent(key, data, None)

    def set_nx_ex(self, key: str, value: ValueLike, ttl: TtlLike) -> bool:
        """Like set_nx, with an expiry"""
        self._check_key(key)
        data = self._check_value(value)
        expires_at = self._expiry_from_ttl(ttl)
        with self._operation("set_nx_ex") as repo:
            return repo.set_if_absent(key, data, expires_at)

    def delete(self, key: str) -> bool:
        """
        Delete a key, whatever its expiry state

        Returns:
            True if a row was removed
        """
        self._check_key(key)
        with self._operation("delete") as repo:
            return repo.delete(key)

    def exists(self, key: str) -> bool:
        """Whether the key has a visible value"""
        self._check_key(key)
        with self._operation("exists") as repo:
            return repo.exists(key)

    # ==================== Atomic Operations ====================

    def increment(self, key: str, by: int = 1) -> int:
        """
        Atomically add `by` to an integer counter

        An absent key is created with value `by`. Values are stored as decimal text.

        Returns:
            The new counter value

        Raises:
            InvalidValueError: If the stored value is not a canonical 64-bit integer,
                or the amount or the result falls outside the 64-bit range
        """
        self._check_key(key)
        if isinstance(by, bool) or not isinstance(by, int):
            raise TypeError(f"increment amount must be an int, got {type(by).__name__}")
        if not INT64_MIN <= by <= INT64_MAX:
            raise InvalidValueError(
                "increment amount is out of the 64-bit range", details={"key": key, "delta": by}
            )
        with self._operation("increment") as repo:
            return repo.increment(key, by)

    def decrement(self, key: str, by: int = 1) -> int:
        """Atomically subtract `by` from an integer counter"""
        if isinstance(by, bool) or not isinstance(by, int):
            raise TypeError(f"decrement amount must be an int, got {type(by).__name__}")
        return self.increment(key, -by)

    def compare_and_swap(
        self, key: str, expected: Optional[ValueLike], new_value: ValueLike
    ) -> CasResult:
        """
        Replace the value only if it currently equals `expected`

        `expected=None` requires the key to be absent. On mismatch the result
        carries the current stored value.
        """
        self._check_key(key)
        data = self._check_value(new_value)
        expected_data = to_bytes(expected) if expected is not None else None
        with self._operation("compare_and_swap") as repo:
            return repo.compare_and_swap(key, expected_data, data)

    def get_and_set(self, key: str, value: ValueLike) -> Optional[bytes]:
        """Atomically install a new (persistent) value and return the previous one"""
        self._check_key(key)
        data = self._check_value(value)
        with self._operation("get_and_set") as repo:
            return repo.get_and_set(key, data)

    def get_and_delete(self, key: str) -> Optional[bytes]:
        """Atomically remove a key and return its value"""
        self._check_key(key)
        with self._operation("get_and_delete") as repo:
            return repo.get_and_delete(key)

    # ==================== TTL Operations ====================

    def expire(self, key: str, ttl: TtlLike) -> bool:
        """
        Set or refresh the expiry of an existing key

        Returns:
            False if the key does not exist
        """
        self._check_key(key)
        expires_at = self._expiry_from_ttl(ttl)
        with self._operation("expire") as repo:
            return repo.expire(key, expires_at)

    def persist(self, key: str) -> bool:
        """Remove the expiry of a key, True if it had one"""
        self._check_key(key)
        with self._operation("persist") as repo:
            return repo.persist(key)

    def ttl(self, key: str) -> Optional[timedelta]:
        """Remaining time to live; None for persistent, absent or expired keys"""
        self._check_key(key)
        with self._operation("ttl") as repo:
            return repo.ttl(key)

    def cleanup_expired(self) -> int:
        """
        Delete every expired key

        A no-op returning 0 when the TTL strategy is disabled.

        Returns:
            Number of deleted keys
        """
        with self._operation("cleanup_expired") as repo:
            deleted = repo.cleanup_expired()
        logger.info(f"Expired key cleanup removed {deleted} keys")
        return deleted

    # ==================== Batch Operations ====================

    def get_many(self, keys: Iterable[str]) -> list[KeyValue]:
        """Visible pairs for the given keys in input order; missing keys are omitted"""
        keys = list(keys)
        for key in keys:
            self._check_key(key)
        if not keys:
            return []
        with self._operation("get_many") as repo:
            return repo.get_many(keys)

    def set_many(self, items: Items, ttl: Optional[TtlLike] = None) -> None:
        """
        Store several pairs atomically: all of them or none

        Every pair is validated before anything is written.
        """
        pairs = list(items.items()) if isinstance(items, Mapping) else list(items)
        checked: list[tuple[str, bytes]] = []
        for key, value in pairs:
            self._check_key(key)
            checked.append((key, self._check_value(value)))
        if not checked:
            return
        expires_at = self._expiry_from_ttl(ttl) if ttl is not None else None
        with self._operation("set_many") as repo:
            repo.set_many(checked, expires_at)

    def delete_many(self, keys: Iterable[str]) -> int:
        """Delete several keys, returning how many rows were removed"""
        keys = list(keys)
        for key in keys:
            self._check_key(key)
        if not keys:
            return 0
        with self._operation("delete_many") as repo:
            return repo.delete_many(keys)

    # ==================== Scanning ====================

    def keys(self, options: Optional[ScanOptions] = None) -> list[str]:
        """Keys matching the prefix, ordered by key, paginated by limit/offset"""
        with self._operation("keys") as repo:
            return repo.keys(options or ScanOptions())

    def scan(self, options: Optional[ScanOptions] = None) -> list[KeyValue]:
        """Pairs matching the prefix, ordered by key, paginated by limit/offset"""
        with self._operation("scan") as repo:
            return repo.scan(options or ScanOptions())

    def count(self, options: Optional[ScanOptions] = None) -> int:
        """Number of visible keys matching the prefix (limit/offset ignored)"""
        with self._operation("count") as repo:
            return repo.count(options or ScanOptions())

    def delete_prefix(self, prefix: str) -> int:
        """Delete every key starting with prefix; an empty prefix deletes everything"""
        with self._operation("delete_prefix") as repo:
            return repo.delete_prefix(prefix)

    # ==================== Maintenance ====================

    def clear(self) -> int:
        """Delete every key"""
        with self._operation("clear") as repo:
            return repo.clear()

    def truncate(self) -> None:
        """Remove every row (TRUNCATE on PostgreSQL), without counting them"""
        with self._operation("truncate") as repo:
            repo.truncate()

    def stats(self) -> Stats:
        with self._operation("stats") as repo:
            return repo.stats()

    def typed(self, value_type: Any) -> TypedKVStore:
        """Wrap this surface in a JSON-serializing adapter for value_type"""
        return TypedKVStore(self, value_type)


class KVStore(_KVOperations):
    """
    Key-Value Store

    Owns one connection for its whole life. Each call runs in its own
    transaction unless a transaction opened with `transaction()` or `atomic()`
    is active, in which case it joins that one.

    Example:
        with KVStore(Settings(DATABASE_URL="sqlite:///./kv.db")) as store:
            store.set_ex("session:1", b"data", 60)
            store.get("session:1")
    """

    def __init__(self, settings: Optional[Settings] = None, engine: Optional[Engine] = None):
        """
        Connect and prepare the table

        Args:
            settings: Store configuration (environment settings by default)
            engine: Existing engine to connect through; the store disposes
                the engine on close only if it created it

        Raises:
            ConfigurationError: Unsupported backend or incompatible table
            ConnectionFailureError: The database is unreachable
            TableNotFoundError: Table missing while auto-creation is disabled
        """
        self.settings = settings or get_settings()
        self._owns_engine = engine is None
        self._engine = engine if engine is not None else create_kv_engine(self.settings)
        self._closed = True
        self._transaction: Optional[KVTransaction] = None

        dialect_name = self._engine.dialect.name
        if dialect_name not in SUPPORTED_DIALECTS:
            raise ConfigurationError(f"unsupported backend '{dialect_name}'")

        self._policy = TTLPolicy(self.settings.KV_TTL_CLEANUP_STRATEGY)
        self._table = build_kv_table(self.settings, dialect_name)

        try:
            self._conn = self._engine.connect()
        except SQLAlchemyError as e:
            raise ConnectionFailureError(
                str(e).splitlines()[0], details={"exception": e.__class__.__name__}
            ) from e
        self._closed = False

        try:
            self._prepare_schema()
            self._repo = SQLAlchemyKVStoreRepository(self._conn, self._table, self._policy)
        except BaseException:
            self.close()
            raise

        logger.debug(
            "KV store ready: table=%s, ttl_strategy=%s",
            self.settings.qualified_table_name,
            self.settings.KV_TTL_CLEANUP_STRATEGY.value,
        )

    def _prepare_schema(self) -> None:
        with self._translate("prepare_schema"), self._conn.begin():
            if table_exists(self._conn, self._table):
                verify_schema(self._conn, self._table)
            elif not self.settings.KV_AUTO_CREATE_TABLE:
                raise TableNotFoundError(self.settings.qualified_table_name)
            if self.settings.KV_AUTO_CREATE_TABLE:
                ensure_schema(self._conn, self._table)

    @property
    def table(self) -> Table:
        """The key-value table"""
        return self._table

    @property
    def in_transaction(self) -> bool:
        return self._transaction is not None

    def _ensure_open(self) -> None:
        if self._closed:
            raise KVStoreError("store is closed", code="store_closed")

    @contextmanager
    def _unit(self) -> Iterator[None]:
        self._ensure_open()
        if self._transaction is not None:
            # Joins the transaction opened by transaction()/atomic()
            yield
            return
        with self._conn.begin():
            yield

    # ==================== Transaction Support ====================

    @contextmanager
    def atomic(self) -> Iterator["KVTransaction"]:
        """
        Run several operations as one transaction

        Commits when the block exits normally; rolls back every statement and
        re-raises when it raises.

        Raises:
            NestedTransactionError: If a transaction is already active
        """
        self._ensure_open()
        if self._transaction is not None:
            raise NestedTransactionError()

        tx = KVTransaction(self)
        self._transaction = tx
        try:
            with self._translate("transaction"), self._conn.begin():
                yield tx
        except BaseException as e:
            logger.debug(f"Transaction rolled back: {e.__class__.__name__}")
            raise
        finally:
            tx._active = False
            self._transaction = None

    def transaction(self, body: Callable[["KVTransaction"], T]) -> T:
        """
        Call body with a transaction handle and commit its work atomically

        Args:
            body: Callable receiving a KVTransaction; its return value is passed through

        Returns:
            Whatever body returns
        """
        with self.atomic() as tx:
            return body(tx)

    # ==================== Lifecycle ====================

    def _maintenance(self, operation: str, statement: Callable[[Connection, Table], None]) -> None:
        self._ensure_open()
        if self._transaction is not None:
            raise TransactionError(f"{operation} cannot run inside a transaction")
        with self._translate(operation), maintenance_connection(self._engine) as conn:
            statement(conn, self._table)
            conn.commit()

    def vacuum(self) -> None:
        """
        Reclaim space left by deleted rows

        Runs on a separate autocommit connection. On SQLite this rewrites the
        whole database file.

        Raises:
            TransactionError: If called inside a transaction
        """
        self._maintenance("vacuum", vacuum_table)

    def analyze(self) -> None:
        """Refresh the query planner statistics of the table"""
        self._maintenance("analyze", analyze_table)

    def recreate_table(self) -> None:
        """Drop and recreate the table and its index, discarding all data"""
        with self._operation("recreate_table"):
            drop_schema(self._conn, self._table)
            ensure_schema(self._conn, self._table)

    def close(self) -> None:
        """Close the connection (and the engine, if the store created it)"""
        if self._closed:
            return
        self._closed = True
        self._conn.close()
        if self._owns_engine:
            self._engine.dispose()

    def __enter__(self) -> "KVStore":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


class KVTransaction(_KVOperations):
    """
    Transaction Handle

    Same operation surface as KVStore, bound to the transaction that created
    it. Valid only until that transaction ends.
    """

    def __init__(self, store: KVStore):
        self.settings = store.settings
        self._store = store
        self._repo = store._repo
        self._active = True

    @contextmanager
    def _unit(self) -> Iterator[None]:
        if not self._active:
            raise TransactionError(
                "transaction handle used after its transaction ended",
                code="transaction_closed",
            )
        yield

    @property
    def active(self) -> bool:
        return self._active

    def atomic(self):
        raise NestedTransactionError()

    def transaction(self, body: Callable[["KVTransaction"], T]) -> T:
        raise NestedTransactionError()
