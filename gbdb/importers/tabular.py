# gbdb/importers/tabular.py
"""
Delimited-file I/O for wide trials/phenomes tables.

A trials file carries one row per entry x trial x layout position:
    id, entries, populations, years, seasons, harvests, sites,
    replications, blocks, rows, cols, <trait_1>, <trait_2>, ...
A phenomes file carries one row per entry:
    id, entries, populations, <trait_1>, <trait_2>, ...
The id column is optional and ignored.
"""

import io
from pathlib import Path
from typing import List, Tuple, Union

import pandas as pd

from gbdb.db.errors import ParseError
from gbdb.utils.logging import get_logger

log = get_logger(__name__)

PHENOMES_ID_COLUMNS = ["entries", "populations"]
TRIALS_ID_COLUMNS = PHENOMES_ID_COLUMNS + [
    "years",
    "seasons",
    "harvests",
    "sites",
    "replications",
    "blocks",
    "rows",
    "cols",
]
# Optional per-row overrides of upload defaults
OPTIONAL_ID_COLUMNS = ["species", "classifications"]


def identity_columns(df: pd.DataFrame) -> List[str]:
    """Identity columns present in ``df``, in file order."""
    known = set(TRIALS_ID_COLUMNS + OPTIONAL_ID_COLUMNS + ["id"])
    return [c for c in df.columns if c in known]


def trait_columns(df: pd.DataFrame) -> List[str]:
    """Every column that is not an identity column."""
    ids = set(identity_columns(df))
    return [c for c in df.columns if c not in ids]


def detect_kind(columns) -> str:
    cols = set(columns)
    if all(c in cols for c in TRIALS_ID_COLUMNS):
        return "trials"
    if all(c in cols for c in PHENOMES_ID_COLUMNS):
        return "phenomes"
    raise ParseError(
        f"Input is neither a trials nor a phenomes table; expected at least {PHENOMES_ID_COLUMNS}, "
        f"got {list(columns)}"
    )


def read_delimited(path: Union[str, Path], sep: str = "\t") -> Tuple[pd.DataFrame, str]:
    """
    Read a wide trials or phenomes table.

    Returns:
        (df, kind) where kind is "trials" or "phenomes". Identity columns are
        read as text; the id column is dropped.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Input file not found: {path}")
    header = pd.read_csv(path, sep=sep, nrows=0).columns
    kind = detect_kind(header)
    text_columns = {c: str for c in header if c in set(TRIALS_ID_COLUMNS + OPTIONAL_ID_COLUMNS)}
    df = pd.read_csv(path, sep=sep, dtype=text_columns)
    if "id" in df.columns:
        df = df.drop(columns=["id"])
    log.info("Read %s table from %s: %d rows, %d traits", kind, path, len(df), len(trait_columns(df)))
    return df, kind


def to_long(df: pd.DataFrame) -> pd.DataFrame:
    """Melt the trait columns of a wide table into ``trait``/``value`` columns."""
    ids = [c for c in identity_columns(df) if c != "id"]
    traits = trait_columns(df)
    if not traits:
        log.warning("No trait columns found; nothing to melt.")
    return df.melt(id_vars=ids, value_vars=traits, var_name="trait", value_name="value")


def write_delimited(df: pd.DataFrame, path: Union[str, Path], sep: str = "\t") -> Path:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    df.to_csv(path, sep=sep, index=False)
    log.info("Wrote %d rows to %s", len(df), path)
    return path


def to_tsv_bytes(df: pd.DataFrame) -> bytes:
    """Serialize a frame to tab-delimited UTF-8 bytes."""
    buffer = io.StringIO()
    df.to_csv(buffer, sep="\t", index=False)
    return buffer.getvalue().encode("utf-8")
