import pandas as pd
import pytest
from typer.testing import CliRunner

from gbdb.db import api as db_api
from gbdb.utils.config import DatabaseConfig


@pytest.fixture
def cli_runner():
    """Reusable Typer CLI runner."""
    return CliRunner()


@pytest.fixture
def db_config(tmp_path):
    return DatabaseConfig(path=tmp_path / "gbdb.sqlite3")


@pytest.fixture
def conn(db_config):
    """Fresh on-disk database with the schema applied."""
    connection = db_api.connect(db_config)
    db_api.init_schema(connection)
    try:
        yield connection
    finally:
        connection.close()


@pytest.fixture
def statements(conn):
    """Every SQL statement sent on ``conn`` after this fixture is requested."""
    captured = []
    conn.set_trace_callback(captured.append)
    yield captured
    conn.set_trace_callback(None)


def make_trials_long(
    entries=("entry_01", "entry_02", "entry_03"),
    trait="trait_1",
    values=(1.0, 2.0, 3.0),
    population="pop_1",
    year="2023",
    season="Dry",
    harvest="H1",
    site="SiteA",
    replication=None,
    block=None,
    row=None,
    col=None,
) -> pd.DataFrame:
    """Long-format frame for one trait in one trial."""
    n = len(entries)
    return pd.DataFrame(
        {
            "entries": list(entries),
            "populations": [population] * n,
            "years": [year] * n,
            "seasons": [season] * n,
            "harvests": [harvest] * n,
            "sites": [site] * n,
            "replications": [replication] * n,
            "blocks": [block] * n,
            "rows": [row] * n,
            "cols": [col] * n,
            "trait": [trait] * n,
            "value": list(values),
        }
    )


@pytest.fixture
def seeded(conn):
    """The three-entry, one-trait, one-trial scenario loaded through the set-based engine."""
    from gbdb.db.upload import bulk_upload

    bulk_upload(conn, make_trials_long())
    return conn
