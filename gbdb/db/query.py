# gbdb/db/query.py
"""
Read side of the trials database: pivoted trial/phenotype views, analysis
views and plain single-table queries, all returned as pandas DataFrames.

Every identifier and value that would end up in SQL text is sanitised before
the connection is touched; filter columns are then confirmed against the
catalog before the final statement is assembled.
"""

import sqlite3
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple, Union

import pandas as pd

from gbdb.db.errors import InvalidIdentifier, InvalidValue, NotFound
from gbdb.db.introspect import (
    DimensionColumn,
    list_dimension_columns,
    require_column,
    require_table,
)
from gbdb.db.predicates import FilterValues, WhereClause, compose_filters
from gbdb.db.sanitize import (
    clean_trait_name,
    has_wildcard,
    qualify,
    quote_identifier,
    quote_literal,
    to_like_pattern,
    validate_identifier,
    validate_value,
)
from gbdb.utils.logging import get_logger

log = get_logger(__name__)

# Short filter names accepted by query_trials
FILTER_COLUMNS: Dict[str, Tuple[str, str]] = {
    "species": ("entries", "species"),
    "classifications": ("entries", "classification"),
    "populations": ("entries", "population"),
    "entries": ("entries", "name"),
    "years": ("trials", "year"),
    "seasons": ("trials", "season"),
    "harvests": ("trials", "harvest"),
    "sites": ("trials", "site"),
    "replications": ("layouts", "replication"),
    "blocks": ("layouts", "block"),
    "rows": ("layouts", "row"),
    "cols": ("layouts", "col"),
}

# Tables present in the trials join; explicit "table.column" filters must use one
JOINED_TABLES = ("entries", "traits", "trials", "layouts", "phenotype_data")

_LAYOUT_JOINS = {"left": "LEFT JOIN", "inner": "JOIN"}

_TRAITS_FOR_ANALYSES_SQL = """
    SELECT DISTINCT traits.name AS trait_name
    FROM traits
    JOIN analysis_tags ON traits.id = analysis_tags.trait_id
    JOIN analyses ON analysis_tags.analysis_id = analyses.id
    WHERE analyses.name IN ({placeholders})
    ORDER BY traits.name
"""


def _read_frame(conn: sqlite3.Connection, sql: str, params: Sequence[Any] = ()) -> pd.DataFrame:
    log.debug("Executing parameterised query:\n%s\nparams=%s", sql, list(params))
    cursor = conn.execute(sql, list(params))
    columns = [d[0] for d in cursor.description]
    return pd.DataFrame([tuple(row) for row in cursor.fetchall()], columns=columns)


def resolve_filter_key(key: str) -> Tuple[str, str]:
    """Map a filter name (alias or ``table.column``) to its (table, column)."""
    validate_identifier(key, "column")
    if key in FILTER_COLUMNS:
        return FILTER_COLUMNS[key]
    if "." in key:
        table, column = key.split(".", 1)
        validate_identifier(table, "table")
        validate_identifier(column, "column")
        if table not in JOINED_TABLES:
            raise InvalidIdentifier(
                f"Cannot filter on {key}: table {table} is not part of the trials view."
            )
        return table, column
    raise InvalidIdentifier(
        f"Unknown filter '{key}'. Use one of {sorted(FILTER_COLUMNS)} or 'table.column'."
    )


def resolve_traits(conn: sqlite3.Connection, traits: Sequence[str]) -> List[str]:
    """
    Match requested trait names against the traits table.

    Names without '*' must match exactly; names with '*' are patterns. Requests
    that match nothing contribute nothing.

    Returns:
        Sorted, de-duplicated list of stored trait names.
    """
    matches = set()
    for trait in traits:
        validate_value(trait, "trait")
        if has_wildcard(trait):
            rows = conn.execute(
                "SELECT name FROM traits WHERE name LIKE ? ESCAPE '\\'",
                (to_like_pattern(trait),),
            ).fetchall()
        else:
            rows = conn.execute("SELECT name FROM traits WHERE name = ?", (trait,)).fetchall()
        if not rows:
            log.debug("No stored trait matches '%s'", trait)
        matches.update(row[0] for row in rows)
    return sorted(matches)


def _pivot_column(trait: str) -> str:
    # Trait names cannot be bound as output column names
    validate_value(trait, "trait")
    return (
        f"MAX(CASE WHEN traits.name = {quote_literal(trait)} THEN phenotype_data.value END)"
        f" AS {quote_identifier(clean_trait_name(trait))}"
    )


def _check_aliases(dims: List[DimensionColumn], traits: List[str]) -> None:
    # Every output column needs a distinct label in the returned frame
    seen = {d.column: f"{d.table}.{d.column}" for d in dims}
    for trait in traits:
        alias = clean_trait_name(trait)
        if alias in seen:
            raise InvalidValue(
                f"Trait '{trait}' maps to output column '{alias}', already used by '{seen[alias]}'."
            )
        seen[alias] = trait


def _assemble(
    dims: List[DimensionColumn],
    traits: List[str],
    source: List[str],
    where: str,
    sort_rows: bool,
) -> str:
    if not dims:
        raise NotFound("No dimension columns found in the catalog; is the schema initialised?")
    _check_aliases(dims, traits)
    fields = [d.qualified for d in dims]
    lines = ["SELECT", ",\n".join(fields + [_pivot_column(t) for t in traits])]
    lines.extend(source)
    if where:
        lines.append(where)
    lines.append("GROUP BY " + ",\n".join(fields))
    if sort_rows:
        lines.append("ORDER BY " + ",\n".join(fields))
    return "\n".join(lines)


def build_trials_query(
    conn: sqlite3.Connection,
    traits: Union[str, Sequence[str]],
    filters: Optional[Mapping[str, FilterValues]] = None,
    sort_rows: bool = True,
    layout_join: str = "left",
) -> Tuple[str, List[Any]]:
    """
    Build the pivoted trials/phenotypes query.

    Args:
        conn: Open connection, used for catalog lookups and trait resolution.
        traits: Trait names; '*' acts as a wildcard.
        filters: Mapping of filter name to values. Names are the keys of
            FILTER_COLUMNS or explicit ``table.column`` references.
        sort_rows: Append ORDER BY over the dimension columns.
        layout_join: "left" keeps measurements without a layout, "inner" drops them.

    Returns:
        (sql, params) ready for a single parameterised execution.
    """
    if isinstance(traits, str):
        traits = [traits]
    for trait in traits:
        validate_value(trait, "trait")
    if layout_join not in _LAYOUT_JOINS:
        raise InvalidValue(f"layout_join must be one of {sorted(_LAYOUT_JOINS)}, got '{layout_join}'.")

    items = [resolve_filter_key(key) + (values,) for key, values in (filters or {}).items()]
    where: WhereClause = compose_filters(items)

    for table, column, _ in items:
        require_table(conn, table)
        require_column(conn, table, column)

    log.debug("Extracting and sorting the relevant table and column names...")
    dims = list_dimension_columns(conn)
    matched = resolve_traits(conn, traits)
    log.debug("Output trait fields: %s", matched)

    source = [
        "FROM phenotype_data",
        "JOIN entries ON phenotype_data.entry_id = entries.id",
        "JOIN traits ON phenotype_data.trait_id = traits.id",
        "JOIN trials ON phenotype_data.trial_id = trials.id",
        f"{_LAYOUT_JOINS[layout_join]} layouts ON phenotype_data.layout_id = layouts.id",
    ]
    sql = _assemble(dims, matched, source, where.render(), sort_rows)
    return sql, list(where.params)


def query_trials(
    conn: sqlite3.Connection,
    traits: Union[str, Sequence[str]],
    filters: Optional[Mapping[str, FilterValues]] = None,
    sort_rows: bool = True,
    layout_join: str = "left",
) -> pd.DataFrame:
    """
    Query trial and phenotype data as a wide table: one row per distinct
    entry/trial/layout combination and one column per matched trait.

    Example:
        query_trials(conn, ["trait_*"], {"entries": ["*1*"], "years": (2020, 2023)})
    """
    sql, params = build_trials_query(conn, traits, filters, sort_rows, layout_join)
    return _read_frame(conn, sql, params)


def build_analysis_query(
    conn: sqlite3.Connection,
    analyses: Union[str, Sequence[str]],
    sort_rows: bool = True,
) -> Tuple[str, List[Any]]:
    """
    Build the pivoted query over every measurement tagged with one of the
    named analyses. The trait columns are the traits tagged by those analyses.

    The analysis names are bound once as ?1..?k and reused by both the trait
    lookup and the final filter.
    """
    names = [analyses] if isinstance(analyses, str) else list(analyses)
    if not names:
        raise InvalidValue("At least one analysis name is required.")
    for name in names:
        if not isinstance(name, str):
            raise InvalidValue(f"Analysis names must be strings, got {name!r}.")
        validate_value(name, "analysis")

    placeholders = ", ".join(f"?{i}" for i in range(1, len(names) + 1))
    dims = list_dimension_columns(conn)
    traits = [
        row[0]
        for row in conn.execute(_TRAITS_FOR_ANALYSES_SQL.format(placeholders=placeholders), names)
    ]
    log.debug("Traits tagged by %s: %s", names, traits)

    source = [
        "FROM analysis_tags",
        "JOIN analyses ON analysis_tags.analysis_id = analyses.id",
        "JOIN phenotype_data ON analysis_tags.entry_id = phenotype_data.entry_id",
        "AND analysis_tags.trait_id = phenotype_data.trait_id",
        "AND analysis_tags.trial_id = phenotype_data.trial_id",
        "AND analysis_tags.layout_id IS phenotype_data.layout_id",
        "JOIN entries ON analysis_tags.entry_id = entries.id",
        "JOIN traits ON analysis_tags.trait_id = traits.id",
        "JOIN trials ON analysis_tags.trial_id = trials.id",
        "LEFT JOIN layouts ON analysis_tags.layout_id = layouts.id",
    ]
    sql = _assemble(dims, traits, source, f"WHERE analyses.name IN ({placeholders})", sort_rows)
    return sql, names


def query_analyses(
    conn: sqlite3.Connection,
    analyses: Union[str, Sequence[str]],
    sort_rows: bool = True,
) -> pd.DataFrame:
    sql, params = build_analysis_query(conn, analyses, sort_rows)
    return _read_frame(conn, sql, params)


def query_table(
    conn: sqlite3.Connection,
    table: str,
    fields: Optional[Sequence[str]] = None,
    filters: Optional[Mapping[str, FilterValues]] = None,
) -> pd.DataFrame:
    """
    Query a single table, optionally restricted to some fields and filtered
    with the same value rules as query_trials (keys are column names).

    Example:
        query_table(conn, "trials", filters={"year": [2021, 2022]})
        query_table(conn, "phenotype_data", fields=["id", "value"], filters={"value": (1.0, 10.0)})
    """
    validate_identifier(table, "table")
    fields = list(fields or [])
    for field in fields:
        validate_identifier(field, "column")
    where = compose_filters((table, column, values) for column, values in (filters or {}).items())

    require_table(conn, table)
    for column in fields + list((filters or {}).keys()):
        require_column(conn, table, column)

    select = ", ".join(qualify(table, f) for f in fields) if fields else "*"
    sql = f"SELECT {select} FROM {table} {where.render()}".strip()
    return _read_frame(conn, sql, where.params)
