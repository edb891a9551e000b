# gbdb/db/upload.py
"""
Ingestion of long-format phenotype measurements.

Two engines share one record preparation step and one conflict policy:

  • bulk_upload   set-based: stage every record in a TEMP table, then run one
                  INSERT ... SELECT per table inside a single savepoint.
  • upload_rows   row-level: one upsert chain per (entry, trait) record with
                  RETURNING ids, wrapped in a transaction per batch.

Dimension rows are inserted if absent. An existing description only changes
when the incoming description is non-NULL. Measurements and analysis tags are
never overwritten.
"""

import math
import numbers
import sqlite3
from dataclasses import asdict, dataclass
from typing import Any, Dict, Iterable, List, Mapping, NamedTuple, Optional

import pandas as pd
from rich.console import Console
from rich.progress import BarColumn, Progress, SpinnerColumn, TextColumn, TimeElapsedColumn

from gbdb.db.api import _iter_chunks, transaction
from gbdb.db.errors import IngestionError, InvalidValue, ParseError, SchemaMismatch
from gbdb.db.schema import (
    ANALYSES,
    ANALYSIS_TAGS,
    ENTRIES,
    LAYOUTS,
    PHENOTYPES,
    TRAITS,
    TRIALS,
    conflict_target,
)
from gbdb.db.sanitize import validate_value
from gbdb.utils.logging import get_logger

log = get_logger(__name__)
console = Console()

REQUIRED_COLUMNS = ["entries", "populations", "trait", "value"]

STAGING_TABLE = "staging_phenotypes"
STAGING_CHUNK_SIZE = 10_000


@dataclass(frozen=True)
class UploadDefaults:
    """Scalar values applied to every record whose frame lacks the column."""
    species: str = "unspecified"
    classification: Optional[str] = None
    year: Optional[Any] = None
    season: Optional[str] = None
    harvest: Optional[str] = None
    site: Optional[str] = None
    analysis: Optional[str] = None
    analysis_description: Optional[str] = None


@dataclass
class UploadSummary:
    staged: int = 0
    entries: int = 0
    traits: int = 0
    trials: int = 0
    layouts: int = 0
    phenotypes: int = 0
    analysis_tags: int = 0

    def as_dict(self) -> Dict[str, int]:
        return asdict(self)


class PhenotypeRecord(NamedTuple):
    # Field order is the staging table column order
    entry_name: str
    species: str
    population: Optional[str]
    classification: Optional[str]
    entry_description: Optional[str]
    trait_name: str
    trait_description: Optional[str]
    year: Optional[int]
    season: Optional[str]
    harvest: Optional[str]
    site: Optional[str]
    trial_description: Optional[str]
    replication: Optional[str]
    block: Optional[str]
    row_num: Optional[str]
    col_num: Optional[str]
    value: Optional[float]


# ==== Record preparation ======================================================

def _is_missing(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return False
    try:
        return bool(pd.isna(value))
    except (TypeError, ValueError):
        return False


def _text(value: Any) -> Optional[str]:
    if _is_missing(value):
        return None
    if isinstance(value, str):
        return value
    if isinstance(value, numbers.Integral) and not isinstance(value, bool):
        return str(int(value))
    if isinstance(value, numbers.Real) and float(value).is_integer():
        return str(int(value))
    return str(value)


def parse_year(value: Any, row: Any = None) -> Optional[int]:
    """Parse a year from text or a number; raises ParseError naming the row."""
    if _is_missing(value):
        return None
    if isinstance(value, numbers.Integral) and not isinstance(value, bool):
        return int(value)
    if isinstance(value, numbers.Real) and float(value).is_integer():
        return int(value)
    text = str(value).strip()
    if text == "":
        return None
    try:
        return int(text)
    except ValueError:
        raise ParseError(f"Row {row}: year '{value}' is not an integer.", row=row) from None


def parse_value(value: Any, row: Any = None) -> Optional[float]:
    """
    Coerce a measurement to a finite float or None.

    Missing markers (None, NaN, empty text) become None. Infinite values raise
    InvalidValue; text that is not a number raises ParseError.
    """
    if _is_missing(value):
        return None
    if isinstance(value, bool):
        raise InvalidValue(f"Row {row}: boolean '{value}' is not a measurement value.")
    if isinstance(value, numbers.Real):
        number = float(value)
    else:
        text = str(value).strip()
        if text == "":
            return None
        try:
            number = float(text)
        except ValueError:
            raise ParseError(f"Row {row}: value '{value}' is not numeric.", row=row) from None
        if math.isnan(number):
            return None
    if math.isinf(number):
        raise InvalidValue(f"Row {row}: value '{value}' is not finite.")
    return number


def _record(row: Mapping[str, Any], defaults: UploadDefaults, index: Any = None) -> PhenotypeRecord:
    def pick(column: str, default: Any = None) -> Any:
        return row[column] if column in row else default

    entry_name = _text(pick("entries"))
    if entry_name is None:
        raise InvalidValue(f"Row {index}: the entry name is missing.")
    trait_name = _text(pick("trait"))
    if trait_name is None or trait_name.strip() == "":
        raise InvalidValue(f"Row {index}: the trait name is missing.")
    # Trait names become output column names at query time
    validate_value(trait_name, "trait")

    return PhenotypeRecord(
        entry_name=entry_name,
        species=_text(pick("species", defaults.species)) or defaults.species,
        population=_text(pick("populations")),
        classification=_text(pick("classifications", defaults.classification)),
        entry_description=_text(pick("entry_description")),
        trait_name=trait_name,
        trait_description=_text(pick("trait_description")),
        year=parse_year(pick("years", defaults.year), index),
        season=_text(pick("seasons", defaults.season)),
        harvest=_text(pick("harvests", defaults.harvest)),
        site=_text(pick("sites", defaults.site)),
        trial_description=_text(pick("trial_description")),
        replication=_text(pick("replications")),
        block=_text(pick("blocks")),
        row_num=_text(pick("rows")),
        col_num=_text(pick("cols")),
        value=parse_value(pick("value"), index),
    )


def prepare_records(long_df: pd.DataFrame, defaults: UploadDefaults) -> List[PhenotypeRecord]:
    """
    Turn a long frame into typed records, applying scalar defaults.

    Raises:
        SchemaMismatch: a required column is absent.
        ParseError: a year or value cannot be parsed (``.row`` holds the index label).
        InvalidValue: a missing name, a non-finite value or a trait with ';'.
    """
    missing = [c for c in REQUIRED_COLUMNS if c not in long_df.columns]
    if missing:
        raise SchemaMismatch(f"Long-format input is missing required columns: {missing}")
    records = [
        _record(row, defaults, index)
        for index, row in zip(long_df.index, long_df.to_dict("records"))
    ]
    log.debug("Prepared %d records", len(records))
    return records


# ==== Set-based engine ========================================================

_CREATE_STAGING = f"""
CREATE TEMP TABLE {STAGING_TABLE} (
    entry_name TEXT,
    species TEXT,
    population TEXT,
    classification TEXT,
    entry_description TEXT,
    trait_name TEXT,
    trait_description TEXT,
    year INTEGER,
    season TEXT,
    harvest TEXT,
    site TEXT,
    trial_description TEXT,
    replication TEXT,
    block TEXT,
    row_num TEXT,
    col_num TEXT,
    value REAL
)
"""

_INSERT_STAGING = (
    f"INSERT INTO {STAGING_TABLE} VALUES ("
    + ", ".join("?" for _ in PhenotypeRecord._fields)
    + ")"
)

# WHERE 1 keeps SQLite from parsing ON CONFLICT as a join constraint
_STAGE_ENTRIES = f"""
INSERT INTO entries (name, species, population, classification, description)
SELECT entry_name, species, population, classification, MAX(entry_description)
FROM {STAGING_TABLE}
WHERE 1
GROUP BY entry_name, species, population, classification
ON CONFLICT {conflict_target(ENTRIES)}
DO UPDATE SET description = coalesce(excluded.description, entries.description)
"""

_STAGE_TRAITS = f"""
INSERT INTO traits (name, description)
SELECT trait_name, MAX(trait_description)
FROM {STAGING_TABLE}
WHERE 1
GROUP BY trait_name
ON CONFLICT {conflict_target(TRAITS)}
DO UPDATE SET description = coalesce(excluded.description, traits.description)
"""

_STAGE_TRIALS = f"""
INSERT INTO trials (year, season, harvest, site, description)
SELECT year, season, harvest, site, MAX(trial_description)
FROM {STAGING_TABLE}
WHERE 1
GROUP BY year, season, harvest, site
ON CONFLICT {conflict_target(TRIALS)}
DO UPDATE SET description = coalesce(excluded.description, trials.description)
"""

_STAGE_LAYOUTS = f"""
INSERT INTO layouts (replication, block, "row", col)
SELECT DISTINCT replication, block, row_num, col_num
FROM {STAGING_TABLE}
WHERE replication IS NOT NULL
ON CONFLICT {conflict_target(LAYOUTS)} DO NOTHING
"""

# Natural-key joins from a staged record to its dimension rows, NULL-safe
_STAGING_JOINS = f"""
FROM {STAGING_TABLE} AS s
JOIN entries AS e
    ON e.name = s.entry_name
    AND e.species = s.species
    AND e.population IS s.population
    AND e.classification IS s.classification
JOIN traits AS t
    ON t.name = s.trait_name
JOIN trials AS tr
    ON tr.year IS s.year
    AND tr.season IS s.season
    AND tr.harvest IS s.harvest
    AND tr.site IS s.site
LEFT JOIN layouts AS l
    ON s.replication IS NOT NULL
    AND l.replication IS s.replication
    AND l.block IS s.block
    AND l."row" IS s.row_num
    AND l.col IS s.col_num
"""

_STAGE_PHENOTYPES = f"""
INSERT INTO phenotype_data (entry_id, trait_id, trial_id, layout_id, value)
SELECT e.id, t.id, tr.id, l.id, s.value
{_STAGING_JOINS}
WHERE 1
ON CONFLICT {conflict_target(PHENOTYPES)} DO NOTHING
"""

_UPSERT_ANALYSIS = f"""
INSERT INTO analyses (name, description)
VALUES (?1, ?2)
ON CONFLICT {conflict_target(ANALYSES)}
DO UPDATE SET description = coalesce(excluded.description, analyses.description)
RETURNING id
"""

_STAGE_ANALYSIS_TAGS = f"""
INSERT INTO analysis_tags (analysis_id, entry_id, trait_id, trial_id, layout_id)
SELECT DISTINCT ?1, p.entry_id, p.trait_id, p.trial_id, p.layout_id
{_STAGING_JOINS}
JOIN phenotype_data AS p
    ON p.entry_id = e.id
    AND p.trait_id = t.id
    AND p.trial_id = tr.id
    AND p.layout_id IS l.id
WHERE 1
ON CONFLICT {conflict_target(ANALYSIS_TAGS)} DO NOTHING
"""


def _count(conn: sqlite3.Connection, table: str) -> int:
    return conn.execute(f"SELECT count(*) FROM {table}").fetchone()[0]


def upsert_analysis(conn: sqlite3.Connection, name: str, description: Optional[str] = None) -> str:
    """Insert an analysis or refresh its description; returns its id."""
    validate_value(name, "analysis")
    return conn.execute(_UPSERT_ANALYSIS, (name, description)).fetchall()[0][0]


def bulk_upload(
    conn: sqlite3.Connection,
    long_df: pd.DataFrame,
    defaults: Optional[UploadDefaults] = None,
) -> UploadSummary:
    """
    Set-based upload of a long frame in a single transaction.

    Args:
        conn: Open connection.
        long_df: Columns entries, populations, trait, value plus any of years,
            seasons, harvests, sites, replications, blocks, rows, cols, species,
            classifications and *_description.
        defaults: Scalars for columns the frame lacks, and the optional analysis.

    Returns:
        UploadSummary with the number of records staged and rows added per table.

    Raises:
        IngestionError: any database failure; nothing from this call is kept.
    """
    defaults = defaults or UploadDefaults()
    records = prepare_records(long_df, defaults)
    summary = UploadSummary(staged=len(records))
    if not records:
        log.warning("Nothing to upload: the input has no records.")
        return summary

    tables = {
        "entries": ENTRIES,
        "traits": TRAITS,
        "trials": TRIALS,
        "layouts": LAYOUTS,
        "phenotypes": PHENOTYPES,
        "analysis_tags": ANALYSIS_TAGS,
    }
    try:
        with transaction(conn, "gbdb_bulk_upload"):
            before = {field: _count(conn, table) for field, table in tables.items()}

            log.info("Creating temporary staging table...")
            conn.execute(f"DROP TABLE IF EXISTS temp.{STAGING_TABLE}")
            conn.execute(_CREATE_STAGING)

            log.info("Bulk-loading %d rows into staging table...", len(records))
            for chunk in _iter_chunks(records, STAGING_CHUNK_SIZE):
                conn.executemany(_INSERT_STAGING, chunk)

            log.info("Inserting data from staging table into dimension tables...")
            for stmt in (_STAGE_ENTRIES, _STAGE_TRAITS, _STAGE_TRIALS, _STAGE_LAYOUTS):
                conn.execute(stmt)

            log.info("Linking phenotype data...")
            conn.execute(_STAGE_PHENOTYPES)

            if defaults.analysis is not None:
                log.info("Adding analysis tags for '%s'...", defaults.analysis)
                analysis_id = upsert_analysis(conn, defaults.analysis, defaults.analysis_description)
                conn.execute(_STAGE_ANALYSIS_TAGS, (analysis_id,))

            conn.execute(f"DROP TABLE temp.{STAGING_TABLE}")

            for field, table in tables.items():
                setattr(summary, field, _count(conn, table) - before[field])
    except Exception as e:
        log.error("Bulk upload failed, transaction rolled back: %s", e)
        raise IngestionError(f"Bulk upload failed and was rolled back: {e}") from e

    log.info("Upload successful: %s", summary.as_dict())
    return summary


# ==== Row-level engine ========================================================

_UPSERT_ENTRY = f"""
INSERT INTO entries (name, species, population, classification, description)
VALUES (?1, ?2, ?3, ?4, ?5)
ON CONFLICT {conflict_target(ENTRIES)}
DO UPDATE SET description = coalesce(excluded.description, entries.description)
RETURNING id
"""

_UPSERT_TRAIT = f"""
INSERT INTO traits (name, description)
VALUES (?1, ?2)
ON CONFLICT {conflict_target(TRAITS)}
DO UPDATE SET description = coalesce(excluded.description, traits.description)
RETURNING id
"""

_UPSERT_TRIAL = f"""
INSERT INTO trials (year, season, harvest, site, description)
VALUES (?1, ?2, ?3, ?4, ?5)
ON CONFLICT {conflict_target(TRIALS)}
DO UPDATE SET description = coalesce(excluded.description, trials.description)
RETURNING id
"""

# No-op update so RETURNING yields the existing id
_UPSERT_LAYOUT = f"""
INSERT INTO layouts (replication, block, "row", col)
VALUES (?1, ?2, ?3, ?4)
ON CONFLICT {conflict_target(LAYOUTS)}
DO UPDATE SET replication = excluded.replication
RETURNING id
"""

_INSERT_PHENOTYPE = f"""
INSERT INTO phenotype_data (entry_id, trait_id, trial_id, layout_id, value)
VALUES (?1, ?2, ?3, ?4, ?5)
ON CONFLICT {conflict_target(PHENOTYPES)} DO NOTHING
RETURNING id
"""

_INSERT_ANALYSIS_TAG = f"""
INSERT INTO analysis_tags (analysis_id, entry_id, trait_id, trial_id, layout_id)
VALUES (?1, ?2, ?3, ?4, ?5)
ON CONFLICT {conflict_target(ANALYSIS_TAGS)} DO NOTHING
"""


def _returning_id(conn: sqlite3.Connection, sql: str, params: Iterable[Any]) -> str:
    return conn.execute(sql, tuple(params)).fetchall()[0][0]


def _write_record(
    conn: sqlite3.Connection,
    rec: PhenotypeRecord,
    analysis_id: Optional[str] = None,
) -> Optional[str]:
    entry_id = _returning_id(
        conn, _UPSERT_ENTRY,
        (rec.entry_name, rec.species, rec.population, rec.classification, rec.entry_description),
    )
    trait_id = _returning_id(conn, _UPSERT_TRAIT, (rec.trait_name, rec.trait_description))
    trial_id = _returning_id(
        conn, _UPSERT_TRIAL,
        (rec.year, rec.season, rec.harvest, rec.site, rec.trial_description),
    )
    layout_id = None
    if rec.replication is not None:
        layout_id = _returning_id(
            conn, _UPSERT_LAYOUT, (rec.replication, rec.block, rec.row_num, rec.col_num)
        )

    inserted = conn.execute(
        _INSERT_PHENOTYPE, (entry_id, trait_id, trial_id, layout_id, rec.value)
    ).fetchall()

    if analysis_id is not None:
        conn.execute(_INSERT_ANALYSIS_TAG, (analysis_id, entry_id, trait_id, trial_id, layout_id))
    return inserted[0][0] if inserted else None


def upload_row(
    conn: sqlite3.Connection,
    record: Mapping[str, Any],
    defaults: Optional[UploadDefaults] = None,
) -> Optional[str]:
    """
    Upsert one long-format record (one entry/trait measurement).

    Returns:
        The new phenotype_data id, or None when the measurement already existed.
    """
    defaults = defaults or UploadDefaults()
    rec = _record(record, defaults)
    with transaction(conn, "gbdb_upload_row"):
        analysis_id = None
        if defaults.analysis is not None:
            analysis_id = upsert_analysis(conn, defaults.analysis, defaults.analysis_description)
        return _write_record(conn, rec, analysis_id)


def upload_rows(
    conn: sqlite3.Connection,
    long_df: pd.DataFrame,
    defaults: Optional[UploadDefaults] = None,
    batch_size: Optional[int] = None,
    progress: bool = False,
) -> int:
    """
    Row-level upload of a long frame.

    Every record is parsed before anything is written. Records are then written
    one upsert chain at a time, inside one transaction for the whole frame or
    one per ``batch_size`` records; a failure rolls back the current batch.

    Returns:
        Number of phenotype_data rows inserted.
    """
    defaults = defaults or UploadDefaults()
    if batch_size is not None and batch_size < 1:
        raise InvalidValue(f"batch_size must be a positive integer, got {batch_size}.")
    records = prepare_records(long_df, defaults)
    if not records:
        log.warning("Nothing to upload: the input has no records.")
        return 0

    inserted = 0
    with Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        BarColumn(),
        TextColumn("[progress.percentage]{task.percentage:>3.0f}%"),
        TimeElapsedColumn(),
        console=console,
        disable=not progress,
    ) as bar:
        task = bar.add_task("Uploading data...", total=len(records))
        for batch in _iter_chunks(records, batch_size or len(records)):
            with transaction(conn, "gbdb_upload_rows"):
                analysis_id = None
                if defaults.analysis is not None:
                    analysis_id = upsert_analysis(conn, defaults.analysis, defaults.analysis_description)
                for rec in batch:
                    if _write_record(conn, rec, analysis_id) is not None:
                        inserted += 1
                    bar.advance(task)
            log.debug("Committed batch of %d records", len(batch))

    log.info("Row-level upload inserted %d measurements from %d records.", inserted, len(records))
    return inserted
