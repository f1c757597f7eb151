"""
Error Definitions

Defines the KV store error taxonomy and the classifier that maps backing-store
failures into it. Callers are expected to branch on the `is_not_found` and
`is_retryable` predicates rather than on concrete classes.
"""

from typing import Any, Optional

from sqlalchemy import exc as sa_exc

# SQLSTATE codes that signal a transient conflict; re-running the operation may succeed
TRANSIENT_SQLSTATES = frozenset(
    {
        "40001",  # serialization_failure
        "40P01",  # deadlock_detected
        "55P03",  # lock_not_available
        "57014",  # query_canceled (statement timeout)
    }
)

# SQLite reports lock contention through OperationalError messages only
_SQLITE_TRANSIENT_MARKERS = (
    "database is locked",
    "database table is locked",
    "database is busy",
)

_CONNECTION_MARKERS = (
    "could not connect",
    "connection refused",
    "server closed the connection",
    "connection is closed",
    "terminating connection",
    "unable to open database file",
    "connection already closed",
)


class KVStoreError(Exception):
    """
    KV Store Base Exception

    Base class for all store errors, containing error message, type and code.
    """

    error_type = "kv_store_error"
    retryable = False

    def __init__(
        self,
        message: str,
        code: str = "internal_error",
        details: Optional[dict[str, Any]] = None,
    ):
        """
        Initialize exception

        Args:
            message: Error message
            code: Error code
            details: Extra error details
        """
        super().__init__(message)
        self.message = message
        self.code = code
        self.details = details or {}

    @property
    def is_not_found(self) -> bool:
        """Whether this error reports an absent key"""
        return False

    @property
    def is_retryable(self) -> bool:
        """Whether re-running the same operation may succeed"""
        return self.retryable

    def to_dict(self) -> dict[str, Any]:
        """
        Convert to dictionary format (for structured logs)

        Returns:
            dict: Error information dictionary
        """
        result = {
            "error": {
                "message": self.message,
                "type": self.error_type,
                "code": self.code,
                "retryable": self.is_retryable,
            }
        }
        if self.details:
            result["error"]["details"] = self.details
        return result


class ConnectionFailureError(KVStoreError):
    """
    Connection Failure

    Raised when the backing store cannot be reached or the connection dropped.
    """

    error_type = "connection_error"
    retryable = True

    def __init__(
        self,
        message: str = "Connection to backing store failed",
        code: str = "connection_failure",
        details: Optional[dict[str, Any]] = None,
    ):
        super().__init__(message=message, code=code, details=details)


class StatementFailureError(KVStoreError):
    """
    Statement Failure

    Raised when a statement is rejected (constraint, syntax, data or conflict error).
    Only transient conflicts are retryable.
    """

    error_type = "statement_error"

    def __init__(
        self,
        message: str = "Statement failed",
        code: str = "statement_failure",
        details: Optional[dict[str, Any]] = None,
        transient: bool = False,
    ):
        super().__init__(message=message, code=code, details=details)
        self.transient = transient

    @property
    def is_retryable(self) -> bool:
        return self.transient


class InvalidKeyError(KVStoreError):
    """Raised when a key is empty or exceeds the configured maximum length."""

    error_type = "invalid_key"

    def __init__(self, reason: str, details: Optional[dict[str, Any]] = None):
        super().__init__(message=f"invalid key: {reason}", code="invalid_key", details=details)
        self.reason = reason


class InvalidValueError(KVStoreError):
    """Raised when a value cannot be stored or interpreted as requested."""

    error_type = "invalid_value"

    def __init__(
        self,
        reason: str,
        code: str = "invalid_value",
        details: Optional[dict[str, Any]] = None,
    ):
        super().__init__(message=f"invalid value: {reason}", code=code, details=details)
        self.reason = reason


class ValueTooLargeError(InvalidValueError):
    """Raised when a value exceeds the configured maximum size."""

    error_type = "value_too_large"

    def __init__(self, size: int, max_size: int):
        super().__init__(
            reason=f"value size {size} exceeds maximum {max_size}",
            code="value_too_large",
            details={"size": size, "max_size": max_size},
        )


class InvalidTtlError(KVStoreError):
    """Raised when a TTL is not a positive duration."""

    error_type = "invalid_ttl"

    def __init__(self, reason: str = "ttl must be positive", details: Optional[dict[str, Any]] = None):
        super().__init__(message=f"invalid ttl: {reason}", code="invalid_ttl", details=details)


class NotFoundError(KVStoreError):
    """
    Key Not Found

    Only raised by operations that explicitly contract to fail on absence.
    """

    error_type = "not_found"

    def __init__(self, key: str):
        super().__init__(message=f"key not found: {key}", code="not_found", details={"key": key})
        self.key = key

    @property
    def is_not_found(self) -> bool:
        return True


class TransactionError(KVStoreError):
    """Raised when a transaction handle is misused."""

    error_type = "transaction_error"

    def __init__(
        self,
        message: str = "transaction error",
        code: str = "transaction_error",
        details: Optional[dict[str, Any]] = None,
    ):
        super().__init__(message=message, code=code, details=details)


class NestedTransactionError(TransactionError):
    """Raised when a transaction is started from inside a transaction body."""

    def __init__(self):
        super().__init__(
            message="nested transactions are not supported",
            code="nested_transaction",
        )


class TableNotFoundError(KVStoreError):
    """Raised when the table is missing and auto-creation is disabled."""

    error_type = "table_not_found"

    def __init__(self, table: str):
        super().__init__(message=f"table not found: {table}", code="table_not_found", details={"table": table})
        self.table = table


class ConfigurationError(KVStoreError):
    """Raised when the store cannot operate with the given configuration or backend."""

    error_type = "configuration_error"

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        super().__init__(message=f"configuration error: {message}", code="configuration_error", details=details)


def _sqlstate(error: sa_exc.DBAPIError) -> Optional[str]:
    orig = error.orig
    # psycopg 3 exposes `sqlstate`, psycopg2 exposes `pgcode`
    return getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)


def classify_error(error: BaseException) -> KVStoreError:
    """
    Map a backing-store failure into the KV store taxonomy.

    Already classified errors are returned unchanged.

    Args:
        error: Exception raised by SQLAlchemy or the DBAPI driver

    Returns:
        KVStoreError: The classified error (not raised)
    """
    if isinstance(error, KVStoreError):
        return error

    message = str(error).splitlines()[0] if str(error) else error.__class__.__name__
    details: dict[str, Any] = {"exception": error.__class__.__name__}

    if isinstance(error, (sa_exc.DisconnectionError, sa_exc.TimeoutError)):
        return ConnectionFailureError(message, details=details)

    if isinstance(error, sa_exc.DBAPIError):
        sqlstate = _sqlstate(error)
        if sqlstate:
            details["sqlstate"] = sqlstate
        if error.connection_invalidated:
            return ConnectionFailureError(message, details=details)
        if sqlstate:
            if sqlstate.startswith("08"):
                return ConnectionFailureError(message, details=details)
            return StatementFailureError(
                message,
                details=details,
                transient=sqlstate in TRANSIENT_SQLSTATES,
            )
        lowered = message.lower()
        if any(marker in lowered for marker in _SQLITE_TRANSIENT_MARKERS):
            return StatementFailureError(message, details=details, transient=True)
        if isinstance(error, (sa_exc.OperationalError, sa_exc.InterfaceError)) and any(
            marker in lowered for marker in _CONNECTION_MARKERS
        ):
            return ConnectionFailureError(message, details=details)
        return StatementFailureError(message, details=details)

    return StatementFailureError(message, details=details)
