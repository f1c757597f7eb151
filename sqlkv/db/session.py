"""
Database Engine and Schema Management Module

Provides engine creation for SQLite and PostgreSQL and the schema manager that
creates, verifies and drops the key-value table.
"""

import logging
from typing import Any

from sqlalchemy import Table, create_engine, event, inspect
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.engine.url import make_url

from sqlkv.common.errors import ConfigurationError
from sqlkv.config import Settings
from sqlkv.db.models import REQUIRED_COLUMNS

logger = logging.getLogger(__name__)

SUPPORTED_DIALECTS = ("sqlite", "postgresql")

# Execution option marking SQLite connections that must not open a transaction
AUTOCOMMIT_OPTION = "sqlkv_autocommit"


def _connect_args(settings: Settings, dialect_name: str) -> dict[str, Any]:
    if dialect_name == "sqlite":
        # Busy timeout; cross-thread use is governed by the store's ownership rule
        return {"check_same_thread": False, "timeout": settings.CONNECT_TIMEOUT}
    if dialect_name == "postgresql":
        args: dict[str, Any] = {"connect_timeout": settings.CONNECT_TIMEOUT}
        if settings.APPLICATION_NAME:
            args["application_name"] = settings.APPLICATION_NAME
        return args
    return {}


def _install_sqlite_listeners(engine: Engine) -> None:
    """
    Hand transaction control from pysqlite to SQLAlchemy

    pysqlite defers BEGIN until the first DML statement, which leaves the read of a
    read-modify-write outside the transaction and breaks SAVEPOINT. BEGIN IMMEDIATE
    takes the write lock up front, so concurrent stores serialize on it.
    """

    @event.listens_for(engine, "connect")
    def _set_sqlite_pragma(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        # LIKE is case-insensitive for ASCII by default; prefix scans must not be
        cursor.execute("PRAGMA case_sensitive_like=ON")
        cursor.close()

    @event.listens_for(engine, "begin")
    def _begin_immediate(conn):
        if conn.get_execution_options().get(AUTOCOMMIT_OPTION):
            return
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def create_kv_engine(settings: Settings) -> Engine:
    """
    Create the database engine for a store

    Args:
        settings: Store configuration

    Returns:
        Engine: Synchronous SQLAlchemy engine

    Raises:
        ConfigurationError: If the URL targets an unsupported backend
    """
    url = make_url(settings.DATABASE_URL)
    dialect_name = url.get_backend_name()
    if dialect_name not in SUPPORTED_DIALECTS:
        raise ConfigurationError(
            f"unsupported backend '{dialect_name}'",
            details={"supported": list(SUPPORTED_DIALECTS)},
        )

    # echo=True prints SQL statements in DEBUG mode
    engine = create_engine(
        url,
        echo=settings.DEBUG,
        connect_args=_connect_args(settings, dialect_name),
    )

    if dialect_name == "sqlite":
        _install_sqlite_listeners(engine)

    return engine


def table_exists(conn: Connection, table: Table) -> bool:
    """Check whether the table exists in its schema"""
    return inspect(conn).has_table(table.name, schema=table.schema)


def ensure_schema(conn: Connection, table: Table) -> None:
    """
    Create the table and its expiry index if missing

    Index creation is checked separately so that a table created by another
    implementation without the index gets it added.
    """
    created = not table_exists(conn, table)
    table.create(conn, checkfirst=True)
    for index in table.indexes:
        index.create(conn, checkfirst=True)
    if created:
        logger.info(f"Created KV table {table.fullname}")


def verify_schema(conn: Connection, table: Table) -> None:
    """
    Check that an existing table carries the columns of the layout contract

    Raises:
        ConfigurationError: If contract columns are missing
    """
    existing = {c["name"] for c in inspect(conn).get_columns(table.name, schema=table.schema)}
    missing = [name for name in REQUIRED_COLUMNS if name not in existing]
    if missing:
        raise ConfigurationError(
            f"table {table.fullname} does not match the key-value layout",
            details={"missing_columns": missing},
        )


def drop_schema(conn: Connection, table: Table) -> None:
    """Drop the table (its indexes go with it)"""
    table.drop(conn, checkfirst=True)
    logger.info(f"Dropped KV table {table.fullname}")


def maintenance_connection(engine: Engine) -> Connection:
    """
    Open a connection whose statements run outside any transaction

    VACUUM refuses to run inside a transaction block on both backends.
    """
    conn = engine.connect()
    if engine.dialect.name == "sqlite":
        # pysqlite already runs in autocommit mode; only the BEGIN listener is skipped
        return conn.execution_options(**{AUTOCOMMIT_OPTION: True})
    return conn.execution_options(isolation_level="AUTOCOMMIT")


def vacuum_table(conn: Connection, table: Table) -> None:
    """Reclaim space left by deleted rows (SQLite vacuums the whole database file)"""
    if conn.dialect.name == "sqlite":
        statement = f"VACUUM {table.schema}" if table.schema else "VACUUM"
    else:
        statement = f"VACUUM {conn.dialect.identifier_preparer.format_table(table)}"
    conn.exec_driver_sql(statement)
    logger.info(f"Vacuumed KV table {table.fullname}")


def analyze_table(conn: Connection, table: Table) -> None:
    """Refresh planner statistics for the table"""
    conn.exec_driver_sql(f"ANALYZE {conn.dialect.identifier_preparer.format_table(table)}")
    logger.info(f"Analyzed KV table {table.fullname}")
