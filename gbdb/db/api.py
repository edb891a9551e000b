# gbdb/db/api.py
"""
Connection handling, schema initialisation and transaction scoping.

Every public operation in gbdb takes an open sqlite3.Connection. Callers that
want one connection per top-level operation use ``session``.
"""

import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterable, Iterator, List, Union

from gbdb.db.schema import ALL_TABLES, ALL_INDEXES
from gbdb.utils.config import DatabaseConfig
from gbdb.utils.logging import get_logger

log = get_logger(__name__)

_JOURNAL_MODES = {"DELETE", "TRUNCATE", "PERSIST", "MEMORY", "WAL", "OFF"}


def _iter_chunks(items: Iterable[Any], size: int) -> Iterable[List[Any]]:
    """Yield successive chunks from an iterable."""
    chunk: List[Any] = []
    for item in items:
        chunk.append(item)
        if len(chunk) >= size:
            yield chunk
            chunk = []
    if chunk:
        yield chunk


def connect(config: Union[DatabaseConfig, Path, str]) -> sqlite3.Connection:
    """
    Establishes a connection to the SQLite database.

    Args:
        config: A DatabaseConfig, or a bare path to the database file.

    Returns:
        A sqlite3.Connection object.
    """
    if not isinstance(config, DatabaseConfig):
        config = DatabaseConfig(path=Path(config))
    journal_mode = config.journal_mode.upper()
    if journal_mode not in _JOURNAL_MODES:
        raise ValueError(f"Unsupported journal_mode '{config.journal_mode}'.")
    try:
        db_path = Path(config.path)
        db_path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(db_path)
        conn.row_factory = sqlite3.Row
        if config.foreign_keys:
            conn.execute("PRAGMA foreign_keys = ON")
        conn.execute(f"PRAGMA journal_mode = {journal_mode}")
        conn.execute(f"PRAGMA busy_timeout = {int(config.busy_timeout_ms)}")
        log.debug("Database connection established to %s", db_path)
        return conn
    except sqlite3.Error as e:
        log.exception("Database connection failed: %s", e)
        raise


def init_schema(conn: sqlite3.Connection):
    """
    Initializes the database schema by creating all tables and indexes.

    Args:
        conn: An active sqlite3.Connection object.
    """
    try:
        with transaction(conn, "gbdb_init_schema"):
            for table_sql in ALL_TABLES:
                conn.execute(table_sql)
            for index_sql in ALL_INDEXES:
                conn.execute(index_sql)
        log.info("Database schema initialized successfully.")
    except sqlite3.Error as e:
        log.exception("Schema initialization failed: %s", e)
        raise


@contextmanager
def session(config: Union[DatabaseConfig, Path, str]) -> Iterator[sqlite3.Connection]:
    """Open a connection for the duration of one operation and always close it."""
    conn = connect(config)
    try:
        yield conn
    finally:
        conn.close()
        log.debug("Database connection closed.")


@contextmanager
def transaction(conn: sqlite3.Connection, name: str = "gbdb_tx") -> Iterator[sqlite3.Connection]:
    """
    Run the enclosed statements atomically.

    Implemented with a savepoint so it nests inside a caller's transaction;
    the outermost savepoint commits on release. On any exception the work is
    rolled back to the savepoint and the exception propagates unchanged.
    If SQLite already aborted the whole transaction, e.g. from a trigger doing
    RAISE(ROLLBACK), there is no savepoint left and the original exception is
    re-raised as is.
    """
    conn.execute(f"SAVEPOINT {name}")
    try:
        yield conn
    except BaseException:
        if not conn.in_transaction:
            log.debug("Transaction already rolled back by SQLite; savepoint %s is gone", name)
            raise
        try:
            conn.execute(f"ROLLBACK TO SAVEPOINT {name}")
            conn.execute(f"RELEASE SAVEPOINT {name}")
        except sqlite3.Error as rollback_error:
            log.warning("Could not roll back savepoint %s: %s", name, rollback_error)
        else:
            log.debug("Rolled back savepoint %s", name)
        raise
    else:
        conn.execute(f"RELEASE SAVEPOINT {name}")
