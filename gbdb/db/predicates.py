# gbdb/db/predicates.py
"""
WHERE-clause assembly with numbered placeholders.

A WhereClause is immutable: add_filter returns a new clause carrying the extra
fragment and its parameters, so placeholder numbers are always derived from
the parameters already bound and can never drift.

Filter values:
  • (low, high) tuple of two numbers   -> BETWEEN, bounds normalised to (min, max)
  • list of strings (None = missing)   -> LIKE per element, '*' is the wildcard
  • list of numbers (None = missing)   -> = per element
A single string or number is treated as a one-element list.
"""

import numbers
from dataclasses import dataclass, replace
from functools import reduce
from typing import Any, Iterable, List, Sequence, Tuple, Union

from gbdb.db.errors import InvalidValue
from gbdb.db.sanitize import qualify, to_like_pattern, validate_value

FilterValues = Union[Tuple[float, float], Sequence[Any], str, float, int]


def _is_number(value: Any) -> bool:
    return isinstance(value, numbers.Real) and not isinstance(value, bool)


def _bindable(value: Any) -> Any:
    # sqlite3 binds numpy scalars as BLOBs, which never compare equal to a number
    return int(value) if isinstance(value, numbers.Integral) else float(value)


def _as_list(values: FilterValues) -> List[Any]:
    if isinstance(values, (str, bytes)) or _is_number(values) or values is None:
        return [values]
    return list(values)


def build_predicate(table: str, column: str, values: FilterValues, start: int = 1) -> Tuple[str, List[Any]]:
    """
    Build one parenthesised predicate for ``table.column``.

    Args:
        table: Table name, spliced into the SQL after sanitising.
        column: Column name, spliced into the SQL after sanitising.
        values: Range tuple or list of candidate values (see module docstring).
        start: Number of the first placeholder this predicate may use.

    Returns:
        (fragment, params) where fragment uses placeholders ?start, ?start+1, ...
    """
    target = qualify(table, column)

    if isinstance(values, tuple) and len(values) == 2 and all(_is_number(v) for v in values):
        low, high = sorted(_bindable(v) for v in values)
        return f"({target} BETWEEN ?{start} AND ?{start + 1})", [low, high]

    candidates = _as_list(values)
    if not candidates:
        raise InvalidValue(f"No filter values supplied for {table}.{column}.")
    present = [v for v in candidates if v is not None]
    for v in present:
        validate_value(v)
    if all(isinstance(v, str) for v in present):
        op, numeric = "LIKE", False
    elif all(_is_number(v) for v in present):
        op, numeric = "=", True
    else:
        raise InvalidValue(
            f"Filter values for {table}.{column} must be all strings or all numbers: {candidates!r}"
        )

    conditions: List[str] = []
    params: List[Any] = []
    for v in candidates:
        if v is None:
            conditions.append(f"({target} IS NULL)")
            continue
        n = start + len(params)
        if numeric:
            conditions.append(f"({target} = ?{n})")
            params.append(_bindable(v))
        else:
            conditions.append(f"({target} LIKE ?{n} ESCAPE '\\')")
            params.append(to_like_pattern(v))
    return "(" + " OR ".join(conditions) + ")", params


@dataclass(frozen=True)
class WhereClause:
    """An AND-composition of predicates plus the parameters they bind."""
    fragments: Tuple[str, ...] = ()
    params: Tuple[Any, ...] = ()
    offset: int = 0  # parameters bound ahead of this clause in the same statement

    @property
    def next_placeholder(self) -> int:
        return self.offset + len(self.params) + 1

    def add_filter(self, table: str, column: str, values: FilterValues) -> "WhereClause":
        fragment, params = build_predicate(table, column, values, start=self.next_placeholder)
        return replace(
            self,
            fragments=self.fragments + (fragment,),
            params=self.params + tuple(params),
        )

    def __bool__(self) -> bool:
        return bool(self.fragments)

    @property
    def sql(self) -> str:
        return " AND ".join(self.fragments)

    def render(self) -> str:
        """The WHERE clause, or an empty string when there are no filters."""
        return f"WHERE {self.sql}" if self.fragments else ""


def compose_filters(
    filters: Iterable[Tuple[str, str, FilterValues]],
    offset: int = 0,
) -> WhereClause:
    """Fold (table, column, values) triples into a single WhereClause."""
    return reduce(
        lambda clause, item: clause.add_filter(*item),
        filters,
        WhereClause(offset=offset),
    )
