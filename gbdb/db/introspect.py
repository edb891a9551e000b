# gbdb/db/introspect.py
"""
Catalog lookups against sqlite_master and pragma_table_info.

Table and column names are always passed to the catalog as bound parameters,
and are also run through the sanitizer before anything is spliced into SQL.
"""

import sqlite3
from dataclasses import dataclass
from typing import List

from gbdb.db.errors import NotFound
from gbdb.db.sanitize import qualify, validate_identifier
from gbdb.utils.logging import get_logger

log = get_logger(__name__)

# Entry identity, then trial identity, then layout position
COLUMN_PRIORITY = (
    "species",
    "classification",
    "name",
    "population",
    "year",
    "season",
    "harvest",
    "site",
    "replication",
    "block",
    "row",
    "col",
)
_COLUMN_RANK = {name: rank for rank, name in enumerate(COLUMN_PRIORITY)}
_COLUMN_RANK["column"] = _COLUMN_RANK["col"]

LAST_TABLES = ("layouts",)

_DIMENSION_COLUMNS_SQL = """
    SELECT m.name AS table_name, p.name AS column_name
    FROM sqlite_master AS m, pragma_table_info(m.name) AS p
    WHERE m.type = 'table'
      AND m.name NOT LIKE 'sqlite\\_%' ESCAPE '\\'
      AND p.name NOT LIKE '%id'
      AND p.name NOT IN ('description')
      AND m.name NOT IN ('traits', 'phenotype_data')
      AND m.name NOT LIKE 'analys%s%'
"""


@dataclass(frozen=True)
class DimensionColumn:
    table: str
    column: str

    @property
    def qualified(self) -> str:
        return qualify(self.table, self.column)


def table_exists(conn: sqlite3.Connection, name: str) -> bool:
    row = conn.execute(
        "SELECT 1 FROM sqlite_master WHERE type IN ('table', 'view') AND name = ?",
        (name,),
    ).fetchone()
    return row is not None


def column_exists(conn: sqlite3.Connection, table: str, column: str) -> bool:
    row = conn.execute(
        "SELECT 1 FROM pragma_table_info(?) WHERE name = ?",
        (table, column),
    ).fetchone()
    return row is not None


def require_table(conn: sqlite3.Connection, name: str) -> str:
    """Sanitize a table name and confirm it exists; raises NotFound otherwise."""
    validate_identifier(name, "table")
    if not table_exists(conn, name):
        raise NotFound(f"The table {name} does not exist.")
    return name


def require_column(conn: sqlite3.Connection, table: str, column: str) -> str:
    validate_identifier(table, "table")
    validate_identifier(column, "column")
    if not column_exists(conn, table, column):
        raise NotFound(f"The column {column} does not exist in table {table}.")
    return column


def dimension_sort_key(col: DimensionColumn):
    """Tables alphabetical with layouts last; columns by priority, then alphabetical."""
    table_rank = 1 if col.table in LAST_TABLES else 0
    column_rank = _COLUMN_RANK.get(col.column, len(COLUMN_PRIORITY))
    return (table_rank, col.table, column_rank, col.column)


def list_dimension_columns(conn: sqlite3.Connection) -> List[DimensionColumn]:
    """
    List the non-key, non-description columns of the dimension tables in their
    fixed output order.

    The trait table, the fact table and the analysis tables are excluded, as are
    id and foreign-key columns.
    """
    rows = conn.execute(_DIMENSION_COLUMNS_SQL).fetchall()
    columns = [DimensionColumn(table=row[0], column=row[1]) for row in rows]
    columns.sort(key=dimension_sort_key)
    log.debug("Dimension columns: %s", ", ".join(f"{c.table}.{c.column}" for c in columns))
    return columns
