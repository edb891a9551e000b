# gbdb/db/update.py

import sqlite3
from typing import Any, Mapping, Optional

from gbdb.db.api import transaction
from gbdb.db.errors import InvalidIdentifier, SchemaMismatch
from gbdb.db.introspect import require_column, require_table
from gbdb.db.schema import DESCRIBED_TABLES, NATURAL_KEYS
from gbdb.db.sanitize import qualify, validate_identifier, validate_value
from gbdb.utils.logging import get_logger

log = get_logger(__name__)


def update_description(
    conn: sqlite3.Connection,
    table: str,
    identifiers: Mapping[str, Optional[Any]],
    description: str,
) -> int:
    """
    Set the description of the row(s) in ``table`` matching a full natural key.

    Args:
        conn: Open connection.
        table: One of entries, traits, trials, analyses.
        identifiers: Natural-key column -> value. None matches a NULL column.
        description: New description text.

    Returns:
        int: Number of rows updated (0 when nothing matches).

    Example:
        update_description(
            conn, "entries",
            {"name": "entry_02", "species": "unspecified", "population": "pop_1", "classification": None},
            "Entry number 2 from population 1",
        )
    """
    validate_identifier(table, "table")
    for key, value in identifiers.items():
        validate_identifier(key, "column")
        validate_value(value, "identifier value")

    require_table(conn, table)
    if table not in DESCRIBED_TABLES:
        raise InvalidIdentifier(f"The table {table} does not have a `description` field.")

    required = NATURAL_KEYS[table]
    if sorted(identifiers) != sorted(required):
        raise SchemaMismatch(
            f"The identifiers for the table {table} are not correct. You need to specify:\n\t‣ "
            + "\n\t‣ ".join(required)
        )
    for key in identifiers:
        require_column(conn, table, key)

    conditions = []
    params = [description]
    for key in required:
        value = identifiers[key]
        if value is None:
            conditions.append(f"({qualify(table, key)} IS NULL)")
        else:
            params.append(value)
            conditions.append(f"({qualify(table, key)} = ?{len(params)})")
    sql = f"UPDATE {table} SET description = ?1 WHERE " + " AND ".join(conditions)

    log.debug("Executing: %s params=%s", sql, params)
    with transaction(conn, "gbdb_update_description"):
        updated = conn.execute(sql, params).rowcount
    if updated == 0:
        log.warning("No row in %s matches %s; description unchanged.", table, dict(identifiers))
    return updated
