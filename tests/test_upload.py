import sqlite3

import numpy as np
import pandas as pd
import pytest

from conftest import make_trials_long
from gbdb.db import api as db_api
from gbdb.db.errors import IngestionError, InvalidValue, ParseError, SchemaMismatch
from gbdb.db.query import query_trials
from gbdb.db.upload import (
    UploadDefaults,
    bulk_upload,
    parse_value,
    parse_year,
    prepare_records,
    upload_row,
    upload_rows,
)
from gbdb.utils.config import DatabaseConfig


def _counts(conn):
    tables = ["entries", "traits", "trials", "layouts", "analyses", "phenotype_data", "analysis_tags"]
    return {t: conn.execute(f"SELECT count(*) FROM {t}").fetchone()[0] for t in tables}


def _fail_on_value(conn, value, action="ABORT"):
    conn.execute(
        f"""
        CREATE TRIGGER fail_on_value BEFORE INSERT ON phenotype_data
        WHEN NEW.value = {value}
        BEGIN SELECT RAISE({action}, 'rejected by test trigger'); END
        """
    )


# ==== Record preparation ======================================================

def test_parse_year():
    assert parse_year("2023") == 2023
    assert parse_year(2021.0) == 2021
    assert parse_year(None) is None
    assert parse_year(np.nan) is None
    with pytest.raises(ParseError) as exc:
        parse_year("2023-2024", row=7)
    assert exc.value.row == 7
    assert "7" in str(exc.value)


def test_parse_value():
    assert parse_value("1.5") == 1.5
    assert parse_value(np.float64(2.0)) == 2.0
    assert parse_value(np.nan) is None
    assert parse_value("") is None
    with pytest.raises(InvalidValue):
        parse_value(np.inf)
    with pytest.raises(InvalidValue):
        parse_value("-inf")
    with pytest.raises(ParseError):
        parse_value("tall", row=3)


def test_prepare_records_applies_defaults():
    long_df = pd.DataFrame(
        {"entries": ["e1"], "populations": ["p1"], "trait": ["t"], "value": [1]}
    )
    (rec,) = prepare_records(long_df, UploadDefaults(species="Lolium", year="2022", site="S"))
    assert rec.species == "Lolium"
    assert rec.year == 2022
    assert rec.site == "S"
    assert rec.replication is None
    assert rec.value == 1.0


def test_prepare_records_requires_columns():
    with pytest.raises(SchemaMismatch):
        prepare_records(pd.DataFrame({"entries": ["e1"], "trait": ["t"]}), UploadDefaults())


def test_prepare_records_rejects_trait_with_semicolon():
    long_df = make_trials_long(trait="yield; DROP TABLE traits")
    with pytest.raises(InvalidValue):
        prepare_records(long_df, UploadDefaults())


# ==== Set-based engine ========================================================

def test_bulk_upload_summary(conn):
    summary = bulk_upload(conn, make_trials_long())
    assert summary.staged == 3
    assert summary.entries == 3
    assert summary.traits == 1
    assert summary.trials == 1
    assert summary.layouts == 0
    assert summary.phenotypes == 3
    assert summary.analysis_tags == 0


def test_bulk_upload_is_idempotent(conn):
    long_df = make_trials_long(replication="1", block="1", row="1", col="1")
    bulk_upload(conn, long_df)
    first = _counts(conn)
    again = bulk_upload(conn, long_df)
    assert _counts(conn) == first
    assert again.phenotypes == 0
    assert again.entries == 0


def test_null_keys_collide(conn):
    long_df = make_trials_long(population=None, season=None, harvest=None)
    bulk_upload(conn, long_df)
    bulk_upload(conn, long_df)
    counts = _counts(conn)
    assert counts["entries"] == 3
    assert counts["trials"] == 1
    assert counts["phenotype_data"] == 3


def test_layout_requires_replication(conn):
    bulk_upload(conn, make_trials_long(entries=("a",), values=(1.0,), replication="1", block="2", row="3", col="4"))
    bulk_upload(conn, make_trials_long(entries=("b",), values=(2.0,), replication=None, block="9"))
    assert _counts(conn)["layouts"] == 1
    rows = conn.execute(
        "SELECT e.name, p.layout_id FROM phenotype_data p JOIN entries e ON p.entry_id = e.id ORDER BY e.name"
    ).fetchall()
    assert rows[0][1] is not None
    assert rows[1][1] is None


def test_first_measurement_wins(conn):
    bulk_upload(conn, make_trials_long(values=(1.0, 2.0, 3.0)))
    bulk_upload(conn, make_trials_long(values=(9.0, 9.0, 9.0)))
    df = query_trials(conn, ["trait_1"])
    assert list(df["trait_1"]) == [1.0, 2.0, 3.0]


def test_missing_values_stored_as_null(conn):
    bulk_upload(conn, make_trials_long(values=(1.0, np.nan, None)))
    stored = [r[0] for r in conn.execute("SELECT value FROM phenotype_data")]
    assert len(stored) == 3
    assert stored.count(None) == 2
    assert 1.0 in stored


def test_bulk_upload_rolls_back_on_failure(conn):
    _fail_on_value(conn, 2.0)
    with pytest.raises(IngestionError) as exc:
        bulk_upload(conn, make_trials_long(), UploadDefaults(analysis="a1"))
    assert isinstance(exc.value.__cause__, sqlite3.Error)
    assert all(n == 0 for n in _counts(conn).values())
    staging = conn.execute(
        "SELECT count(*) FROM sqlite_temp_master WHERE name = 'staging_phenotypes'"
    ).fetchone()[0]
    assert staging == 0


def test_bulk_upload_keeps_error_when_sqlite_aborts_transaction(conn):
    _fail_on_value(conn, 2.0, action="ROLLBACK")
    with pytest.raises(IngestionError) as exc:
        bulk_upload(conn, make_trials_long(), UploadDefaults(analysis="a1"))
    assert "rejected by test trigger" in str(exc.value)
    assert isinstance(exc.value.__cause__, sqlite3.IntegrityError)
    assert not conn.in_transaction
    assert all(n == 0 for n in _counts(conn).values())

    # The connection is still usable afterwards
    conn.execute("DROP TRIGGER fail_on_value")
    assert bulk_upload(conn, make_trials_long()).phenotypes == 3


def test_transaction_reraises_original_after_full_rollback(conn):
    conn.execute(
        """
        CREATE TRIGGER no_traits BEFORE INSERT ON traits
        BEGIN SELECT RAISE(ROLLBACK, 'traits are read-only'); END
        """
    )
    with pytest.raises(sqlite3.IntegrityError, match="traits are read-only"):
        with db_api.transaction(conn, "outer"):
            conn.execute("INSERT INTO analyses (name) VALUES ('a1')")
            with db_api.transaction(conn, "inner"):
                conn.execute("INSERT INTO traits (name) VALUES ('t')")
    assert not conn.in_transaction
    assert conn.execute("SELECT count(*) FROM analyses").fetchone()[0] == 0


def test_parse_error_raised_before_any_write(conn):
    long_df = make_trials_long()
    long_df.loc[1, "years"] = "20x3"
    with pytest.raises(ParseError) as exc:
        bulk_upload(conn, long_df)
    assert exc.value.row == 1
    assert all(n == 0 for n in _counts(conn).values())


def test_infinite_value_rejected(conn):
    with pytest.raises(InvalidValue):
        bulk_upload(conn, make_trials_long(values=(1.0, np.inf, 3.0)))
    assert _counts(conn)["phenotype_data"] == 0


def test_bulk_tags_only_the_batch(conn):
    bulk_upload(conn, make_trials_long(trait="trait_1"))
    summary = bulk_upload(conn, make_trials_long(trait="trait_2"), UploadDefaults(analysis="a2"))
    assert summary.analysis_tags == 3
    tagged = conn.execute(
        """
        SELECT DISTINCT t.name FROM analysis_tags g JOIN traits t ON g.trait_id = t.id
        """
    ).fetchall()
    assert [r[0] for r in tagged] == ["trait_2"]


def test_analysis_description_last_non_null_wins(conn):
    long_df = make_trials_long()
    bulk_upload(conn, long_df, UploadDefaults(analysis="a1", analysis_description="first"))
    bulk_upload(conn, long_df, UploadDefaults(analysis="a1"))
    desc = conn.execute("SELECT description FROM analyses WHERE name = 'a1'").fetchone()[0]
    assert desc == "first"
    bulk_upload(conn, long_df, UploadDefaults(analysis="a1", analysis_description="second"))
    desc = conn.execute("SELECT description FROM analyses WHERE name = 'a1'").fetchone()[0]
    assert desc == "second"
    assert _counts(conn)["analysis_tags"] == 3


def test_bulk_descriptions_from_frame(conn):
    long_df = make_trials_long()
    long_df["entry_description"] = ["first entry", None, None]
    bulk_upload(conn, long_df)
    bulk_upload(conn, make_trials_long())
    desc = conn.execute("SELECT description FROM entries WHERE name = 'entry_01'").fetchone()[0]
    assert desc == "first entry"


def test_phenomes_frame_uses_scalar_defaults(conn):
    long_df = pd.DataFrame(
        {
            "entries": ["e1", "e2"],
            "populations": ["p1", "p1"],
            "trait": ["gebv", "gebv"],
            "value": [0.1, -0.2],
        }
    )
    bulk_upload(conn, long_df, UploadDefaults(species="Lolium perenne", year="2030", season="Winter"))
    trial = conn.execute("SELECT year, season, harvest, site FROM trials").fetchall()
    assert [tuple(r) for r in trial] == [(2030, "Winter", None, None)]
    species = {r[0] for r in conn.execute("SELECT species FROM entries")}
    assert species == {"Lolium perenne"}


def test_species_column_overrides_default(conn):
    long_df = make_trials_long()
    long_df["species"] = ["A", "A", "B"]
    bulk_upload(conn, long_df, UploadDefaults(species="ignored"))
    species = sorted(r[0] for r in conn.execute("SELECT species FROM entries"))
    assert species == ["A", "A", "B"]


# ==== Row-level engine ========================================================

def test_upload_row_returns_new_id_once(conn):
    record = make_trials_long().iloc[0]
    first = upload_row(conn, record)
    assert isinstance(first, str) and len(first) == 32
    assert upload_row(conn, record) is None
    assert _counts(conn)["phenotype_data"] == 1


def test_upload_rows_idempotent(conn):
    long_df = make_trials_long(replication="1", block="1", row="1", col="1")
    assert upload_rows(conn, long_df) == 3
    counts = _counts(conn)
    assert upload_rows(conn, long_df, batch_size=1) == 0
    assert _counts(conn) == counts
    assert counts["layouts"] == 1


def test_row_level_matches_set_based(conn, tmp_path):
    long_df = pd.concat(
        [
            make_trials_long(trait="trait_1", replication="1", block="1", row="1", col="1"),
            make_trials_long(trait="trait_2", values=(4.0, 5.0, 6.0), population=None),
        ],
        ignore_index=True,
    )
    defaults = UploadDefaults(analysis="a1")
    bulk_upload(conn, long_df, defaults)

    other = db_api.connect(DatabaseConfig(path=tmp_path / "rows.sqlite3"))
    try:
        db_api.init_schema(other)
        upload_rows(other, long_df, defaults, batch_size=2)
        assert _counts(other) == _counts(conn)
        pd.testing.assert_frame_equal(
            query_trials(other, ["trait_*"]), query_trials(conn, ["trait_*"])
        )
    finally:
        other.close()


def test_upload_rows_whole_batch_is_atomic(conn):
    _fail_on_value(conn, 3.0)
    with pytest.raises(sqlite3.Error):
        upload_rows(conn, make_trials_long())
    assert all(n == 0 for n in _counts(conn).values())


def test_upload_rows_sub_batches_commit_independently(conn):
    _fail_on_value(conn, 3.0)
    with pytest.raises(sqlite3.Error):
        upload_rows(conn, make_trials_long(), batch_size=2)
    counts = _counts(conn)
    assert counts["phenotype_data"] == 2
    assert counts["entries"] == 2


def test_upload_rows_parse_error_names_row(conn):
    long_df = make_trials_long()
    long_df.loc[2, "years"] = "next year"
    with pytest.raises(ParseError) as exc:
        upload_rows(conn, long_df)
    assert exc.value.row == 2
    assert all(n == 0 for n in _counts(conn).values())


def test_upload_rows_rejects_bad_batch_size(conn):
    with pytest.raises(InvalidValue):
        upload_rows(conn, make_trials_long(), batch_size=0)


def test_row_level_description_last_non_null_wins(conn):
    long_df = make_trials_long(entries=("entry_01",), values=(1.0,))
    described = long_df.assign(trait_description="Grain yield", trial_description="Dry season trial")
    upload_rows(conn, described)
    upload_rows(conn, long_df)
    assert conn.execute("SELECT description FROM traits").fetchone()[0] == "Grain yield"
    assert conn.execute("SELECT description FROM trials").fetchone()[0] == "Dry season trial"

    upload_rows(conn, long_df.assign(trait_description="Grain yield (t/ha)"))
    assert conn.execute("SELECT description FROM traits").fetchone()[0] == "Grain yield (t/ha)"
