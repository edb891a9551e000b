# gbdb/cli.py
"""
Command-line interface for the gbdb trials database, powered by Typer.
"""

import enum
from pathlib import Path
from typing import Dict, List, Optional

import pandas as pd
import typer
from rich.console import Console
from rich.table import Table

from gbdb.db import api as db_api
from gbdb.db.query import query_analyses, query_table, query_trials
from gbdb.db.update import update_description
from gbdb.db.upload import UploadDefaults, bulk_upload, upload_rows
from gbdb.importers.tabular import read_delimited, to_long, write_delimited
from gbdb.utils.config import DatabaseConfig, load_database_config
from gbdb.utils.logging import get_logger, setup_logger

DEFAULT_DB_PATH = Path("gbdb.sqlite3")

app = typer.Typer(
    no_args_is_help=True,
    help="gbdb: genomic breeding trials database.",
    context_settings={"help_option_names": ["-h", "--help"]},
)
console = Console()

# Global options from the callback
state = {}


class Engine(str, enum.Enum):
    """Available upload engines."""

    bulk = "bulk"
    rows = "rows"


@app.callback()
def main_callback(
    ctx: typer.Context,
    verbose: bool = typer.Option(
        False, "--verbose", "-v", help="Enable verbose (DEBUG) logging."
    ),
    db: Optional[Path] = typer.Option(
        None,
        "--db",
        envvar="GBDB_PATH",
        help="Path to the SQLite database file. Overrides database.path from --config.",
    ),
    config: Optional[Path] = typer.Option(
        None,
        "--config",
        exists=True,
        dir_okay=False,
        readable=True,
        help="YAML file with a `database:` section.",
    ),
    log_file: Optional[Path] = typer.Option(
        None, "--log-file", help="Path to a file for logging."
    ),
):
    """
    Main callback to set up logging and global state.
    """
    state["verbose"] = verbose
    state["db"] = db
    state["config"] = config
    state["log_file"] = log_file

    setup_logger(logfile=log_file, verbose=verbose)
    log = get_logger(__name__)
    log.debug("CLI context initialized. verbose=%s, db=%s, config=%s", verbose, db, config)


def _database_config() -> DatabaseConfig:
    if state.get("config") is not None:
        cfg = load_database_config(state["config"])
        if state.get("db") is not None:
            cfg = DatabaseConfig(
                path=Path(state["db"]),
                foreign_keys=cfg.foreign_keys,
                journal_mode=cfg.journal_mode,
                busy_timeout_ms=cfg.busy_timeout_ms,
            )
        return cfg
    return DatabaseConfig(path=Path(state.get("db") or DEFAULT_DB_PATH))


def _parse_pairs(pairs: List[str], option: str) -> List[tuple]:
    parsed = []
    for pair in pairs:
        if "=" not in pair:
            raise typer.BadParameter(f"Expected key=value, got '{pair}'.", param_hint=option)
        key, value = pair.split("=", 1)
        parsed.append((key.strip(), value))
    return parsed


def _as_number(text: str):
    try:
        return float(text)
    except ValueError:
        return None


def parse_filters(pairs: List[str]) -> Dict[str, object]:
    """
    Turn repeated ``key=value`` options into query filters.

    ``key=low..high`` with two numbers becomes a range; repeated keys collect
    their values into one list; an empty value means "missing".
    """
    filters: Dict[str, object] = {}
    for key, value in _parse_pairs(pairs, "--filter"):
        if ".." in value:
            low, high = value.split("..", 1)
            bounds = (_as_number(low), _as_number(high))
            if None not in bounds:
                filters[key] = bounds
                continue
        values = filters.setdefault(key, [])
        if isinstance(values, tuple):
            raise typer.BadParameter(f"Filter '{key}' mixes a range with values.", param_hint="--filter")
        values.append(value if value != "" else None)
    return filters


def _emit(df: pd.DataFrame, out: Optional[Path], title: str):
    if out is not None:
        write_delimited(df, out)
        return
    table = Table(title=title)
    for col in df.columns:
        table.add_column(str(col))
    for row in df.itertuples(index=False):
        table.add_row(*["" if pd.isna(v) else str(v) for v in row])
    console.print(table)


@app.command()
def init():
    """
    Create the database tables and indexes if they do not exist.
    """
    log = get_logger(__name__)
    try:
        with db_api.session(_database_config()) as conn:
            db_api.init_schema(conn)
    except Exception as e:
        log.exception("Failed to initialise the database: %s", e)
        raise typer.Exit(code=1)


@app.command()
def upload(
    file: Path = typer.Argument(
        ..., exists=True, dir_okay=False, readable=True, help="Wide trials or phenomes file."
    ),
    sep: str = typer.Option("\t", "--sep", help="Field delimiter."),
    engine: Engine = typer.Option(Engine.bulk, "--engine", help="Set-based or row-level upload."),
    batch_size: Optional[int] = typer.Option(
        None, "--batch-size", help="Row-level engine: records per transaction."
    ),
    species: str = typer.Option("unspecified", "--species"),
    classification: Optional[str] = typer.Option(None, "--classification"),
    year: Optional[str] = typer.Option(None, "--year", help="Year for files without trial columns."),
    season: Optional[str] = typer.Option(None, "--season"),
    harvest: Optional[str] = typer.Option(None, "--harvest"),
    site: Optional[str] = typer.Option(None, "--site"),
    analysis: Optional[str] = typer.Option(None, "--analysis", help="Tag every uploaded measurement."),
    analysis_description: Optional[str] = typer.Option(None, "--analysis-description"),
):
    """
    Upload a trials or phenomes file into the database.
    """
    log = get_logger(__name__)
    defaults = UploadDefaults(
        species=species,
        classification=classification,
        year=year,
        season=season,
        harvest=harvest,
        site=site,
        analysis=analysis,
        analysis_description=analysis_description,
    )
    try:
        df, kind = read_delimited(file, sep=sep)
        long_df = to_long(df)
        with db_api.session(_database_config()) as conn:
            db_api.init_schema(conn)
            if engine is Engine.bulk:
                summary = bulk_upload(conn, long_df, defaults)
                console.print(f"[green]✓ Uploaded {kind} data:[/green] {summary.as_dict()}")
            else:
                inserted = upload_rows(
                    conn, long_df, defaults, batch_size=batch_size, progress=True
                )
                console.print(f"[green]✓ Uploaded {kind} data:[/green] {inserted} new measurements")
    except Exception as e:
        log.exception("Upload of %s failed: %s", file, e)
        raise typer.Exit(code=1)


@app.command()
def trials(
    trait: List[str] = typer.Option(..., "--trait", "-t", help="Trait name; '*' is a wildcard."),
    filter_: List[str] = typer.Option(
        [], "--filter", "-f", help="key=value, key=low..high or key= (missing). Repeatable."
    ),
    no_sort: bool = typer.Option(False, "--no-sort", help="Skip ORDER BY."),
    inner_layouts: bool = typer.Option(
        False, "--inner-layouts", help="Drop measurements that have no layout."
    ),
    out: Optional[Path] = typer.Option(None, "--out", "-o", help="Write a TSV instead of printing."),
):
    """
    Query trial and phenotype data as a wide table.
    """
    log = get_logger(__name__)
    try:
        filters = parse_filters(filter_)
        with db_api.session(_database_config()) as conn:
            df = query_trials(
                conn,
                trait,
                filters,
                sort_rows=not no_sort,
                layout_join="inner" if inner_layouts else "left",
            )
        _emit(df, out, "Trials")
    except typer.BadParameter:
        raise
    except Exception as e:
        log.exception("Trials query failed: %s", e)
        raise typer.Exit(code=1)


@app.command()
def analyses(
    names: List[str] = typer.Argument(..., help="Analysis names."),
    no_sort: bool = typer.Option(False, "--no-sort", help="Skip ORDER BY."),
    out: Optional[Path] = typer.Option(None, "--out", "-o", help="Write a TSV instead of printing."),
):
    """
    Query every measurement tagged with the given analyses.
    """
    log = get_logger(__name__)
    try:
        with db_api.session(_database_config()) as conn:
            df = query_analyses(conn, names, sort_rows=not no_sort)
        _emit(df, out, "Analyses")
    except Exception as e:
        log.exception("Analyses query failed: %s", e)
        raise typer.Exit(code=1)


@app.command()
def table(
    name: str = typer.Argument(..., help="Table name."),
    field: List[str] = typer.Option([], "--field", help="Column to include. Repeatable."),
    filter_: List[str] = typer.Option([], "--filter", "-f", help="column=value. Repeatable."),
    out: Optional[Path] = typer.Option(None, "--out", "-o", help="Write a TSV instead of printing."),
):
    """
    Query a single table.
    """
    log = get_logger(__name__)
    try:
        filters = parse_filters(filter_)
        with db_api.session(_database_config()) as conn:
            df = query_table(conn, name, fields=field or None, filters=filters)
        _emit(df, out, name)
    except typer.BadParameter:
        raise
    except Exception as e:
        log.exception("Query of table %s failed: %s", name, e)
        raise typer.Exit(code=1)


@app.command()
def describe(
    table_name: str = typer.Argument(..., metavar="TABLE", help="entries, traits, trials or analyses."),
    key: List[str] = typer.Option(
        ..., "--key", "-k", help="Natural-key column=value; an empty value means NULL."
    ),
    description: str = typer.Option(..., "--description", "-d"),
):
    """
    Set the description of a row identified by its full natural key.
    """
    log = get_logger(__name__)
    try:
        identifiers = {k: (v if v != "" else None) for k, v in _parse_pairs(key, "--key")}
        with db_api.session(_database_config()) as conn:
            updated = update_description(conn, table_name, identifiers, description)
        console.print(f"[green]✓ Updated {updated} row(s) in {table_name}[/green]")
    except typer.BadParameter:
        raise
    except Exception as e:
        log.exception("Description update failed: %s", e)
        raise typer.Exit(code=1)


if __name__ == "__main__":
    app()
