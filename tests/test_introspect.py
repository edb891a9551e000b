import pytest

from gbdb.db.errors import InvalidIdentifier, NotFound
from gbdb.db.introspect import (
    DimensionColumn,
    column_exists,
    dimension_sort_key,
    list_dimension_columns,
    require_column,
    require_table,
    table_exists,
)


def test_catalog_lookups(conn):
    assert table_exists(conn, "entries")
    assert not table_exists(conn, "genotypes")
    assert column_exists(conn, "layouts", "row")
    assert not column_exists(conn, "layouts", "column")


def test_require_raises_not_found(conn):
    with pytest.raises(NotFound):
        require_table(conn, "genotypes")
    with pytest.raises(NotFound):
        require_column(conn, "entries", "ploidy")
    assert require_column(conn, "trials", "site") == "site"


def test_require_sanitizes_before_catalog(conn, statements):
    with pytest.raises(InvalidIdentifier):
        require_table(conn, "entries; DROP TABLE traits")
    assert statements == []


def test_dimension_columns_fixed_order(conn):
    cols = [(c.table, c.column) for c in list_dimension_columns(conn)]
    assert cols == [
        ("entries", "species"),
        ("entries", "classification"),
        ("entries", "name"),
        ("entries", "population"),
        ("trials", "year"),
        ("trials", "season"),
        ("trials", "harvest"),
        ("trials", "site"),
        ("layouts", "replication"),
        ("layouts", "block"),
        ("layouts", "row"),
        ("layouts", "col"),
    ]


def test_dimension_columns_pick_up_new_columns(conn):
    conn.execute("ALTER TABLE trials ADD COLUMN altitude TEXT")
    conn.execute("ALTER TABLE entries ADD COLUMN cultivar TEXT")
    cols = [(c.table, c.column) for c in list_dimension_columns(conn)]
    # Unranked names follow the ranked ones within their table
    assert cols.index(("entries", "cultivar")) == 4
    assert cols.index(("trials", "altitude")) == 9
    assert cols[-1] == ("layouts", "col")


def test_sort_key_accepts_column_alias():
    a = DimensionColumn("layouts", "column")
    b = DimensionColumn("layouts", "row")
    c = DimensionColumn("entries", "zzz")
    assert sorted([a, b, c], key=dimension_sort_key) == [c, b, a]


def test_qualified_name_is_quoted():
    assert DimensionColumn("layouts", "row").qualified == 'layouts."row"'
