# gbdb/db/sanitize.py
"""
Checks and quoting helpers for strings that end up inside SQL text.

SQLite binds literals but never identifiers, so table, column and trait names
are spliced into statements. Everything spliced goes through this module first.
"""

from typing import Any

from gbdb.db.errors import InvalidIdentifier, InvalidValue

STATEMENT_SEPARATOR = ";"


def validate_no_semicolon(s: Any, kind: str = "identifier") -> str:
    """
    Reject a string containing a statement separator.

    Args:
        s: The identifier or value to check.
        kind: "identifier", "table", "column" raise InvalidIdentifier;
            anything else raises InvalidValue.

    Returns:
        The string unchanged.
    """
    text = str(s)
    if STATEMENT_SEPARATOR in text:
        if kind in ("identifier", "table", "column"):
            raise InvalidIdentifier(f"The {kind} '{text}' cannot contain a semicolon.")
        raise InvalidValue(f"The {kind} '{text}' cannot contain a semicolon.")
    return text


def validate_identifier(name: Any, kind: str = "identifier") -> str:
    if name is None or str(name).strip() == "":
        raise InvalidIdentifier(f"The {kind} name cannot be empty.")
    return validate_no_semicolon(name, kind)


def validate_value(value: Any, kind: str = "value") -> Any:
    """Strings are checked; numbers and None pass through."""
    if isinstance(value, str):
        validate_no_semicolon(value, kind)
    return value


def quote_identifier(name: str) -> str:
    return '"' + name.replace('"', '""') + '"'


def quote_literal(value: str) -> str:
    return "'" + value.replace("'", "''") + "'"


def qualify(table: str, column: str) -> str:
    """Render ``table."column"`` after checking both parts."""
    validate_identifier(table, "table")
    validate_identifier(column, "column")
    return f"{table}.{quote_identifier(column)}"


def clean_trait_name(trait_name: str) -> str:
    """Replace whitespace and pipe characters so the name works as an output column."""
    for ch in (" ", "\t", "|"):
        trait_name = trait_name.replace(ch, "_")
    return trait_name


def to_like_pattern(value: str) -> str:
    """
    Turn a user pattern with ``*`` wildcards into a LIKE pattern.

    Literal ``%`` and ``_`` are escaped (use with ``ESCAPE '\\'``) so only the
    caller's ``*`` acts as a wildcard.
    """
    escaped = value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return escaped.replace("*", "%")


def has_wildcard(value: str) -> bool:
    return "*" in value
