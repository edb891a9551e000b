"""
Schema definitions for the genomic breeding trials database.

Tables:
  • entries, traits, trials, layouts   dimension tables
  • phenotype_data                     one measurement per (entry, trait, trial, layout)
  • analyses, analysis_tags            named analyses and their many-to-many tags

Every id is a random 128-bit key rendered as 32 hex characters. Natural keys
treat NULL as equal to NULL: nullable key columns enter the unique index as
coalesce(col, X'00'). A BLOB never compares equal to TEXT or INTEGER, so the
sentinel cannot collide with a stored value. ON CONFLICT targets are rendered
by conflict_target() from the same definitions so they always match the index.
"""

from typing import Dict, FrozenSet, Tuple

ENTRIES = "entries"
TRAITS = "traits"
TRIALS = "trials"
LAYOUTS = "layouts"
ANALYSES = "analyses"
PHENOTYPES = "phenotype_data"
ANALYSIS_TAGS = "analysis_tags"

NULL_SENTINEL = "X'00'"

NATURAL_KEYS: Dict[str, Tuple[str, ...]] = {
    ENTRIES: ("name", "species", "population", "classification"),
    TRAITS: ("name",),
    TRIALS: ("year", "season", "harvest", "site"),
    LAYOUTS: ("replication", "block", "row", "col"),
    ANALYSES: ("name",),
    PHENOTYPES: ("entry_id", "trait_id", "trial_id", "layout_id"),
    ANALYSIS_TAGS: ("analysis_id", "entry_id", "trait_id", "trial_id", "layout_id"),
}

NULLABLE_KEY_COLUMNS: Dict[str, FrozenSet[str]] = {
    ENTRIES: frozenset({"population", "classification"}),
    TRAITS: frozenset(),
    TRIALS: frozenset({"year", "season", "harvest", "site"}),
    LAYOUTS: frozenset({"replication", "block", "row", "col"}),
    ANALYSES: frozenset(),
    PHENOTYPES: frozenset({"layout_id"}),
    ANALYSIS_TAGS: frozenset({"layout_id"}),
}

# Tables whose rows carry a mutable description keyed by the natural key
DESCRIBED_TABLES: Tuple[str, ...] = (ENTRIES, TRAITS, TRIALS, ANALYSES)


def conflict_target(table: str) -> str:
    """Render the column/expression list of a table's natural-key unique index."""
    parts = []
    for col in NATURAL_KEYS[table]:
        quoted = f'"{col}"'
        if col in NULLABLE_KEY_COLUMNS[table]:
            parts.append(f"coalesce({quoted}, {NULL_SENTINEL})")
        else:
            parts.append(quoted)
    return "(" + ", ".join(parts) + ")"


_ID_DEFAULT = "TEXT PRIMARY KEY NOT NULL DEFAULT (lower(hex(randomblob(16))))"

# ---------------------------------------------------------------------------
# Dimension tables
# ---------------------------------------------------------------------------

# Breeding lines, populations, families, cultivars
CREATE_ENTRIES = f"""
CREATE TABLE IF NOT EXISTS entries (
    id {_ID_DEFAULT},
    name TEXT NOT NULL,
    species TEXT NOT NULL,
    population TEXT,
    classification TEXT,
    description TEXT
);
"""

CREATE_TRAITS = f"""
CREATE TABLE IF NOT EXISTS traits (
    id {_ID_DEFAULT},
    name TEXT UNIQUE NOT NULL,
    description TEXT
);
"""

CREATE_TRIALS = f"""
CREATE TABLE IF NOT EXISTS trials (
    id {_ID_DEFAULT},
    year INTEGER,
    season TEXT,
    harvest TEXT,
    site TEXT,
    description TEXT
);
"""

CREATE_LAYOUTS = f"""
CREATE TABLE IF NOT EXISTS layouts (
    id {_ID_DEFAULT},
    replication TEXT,
    block TEXT,
    "row" TEXT,
    col TEXT
);
"""

CREATE_ANALYSES = f"""
CREATE TABLE IF NOT EXISTS analyses (
    id {_ID_DEFAULT},
    name TEXT UNIQUE NOT NULL,
    description TEXT
);
"""

# ---------------------------------------------------------------------------
# Facts
# ---------------------------------------------------------------------------

CREATE_PHENOTYPE_DATA = f"""
CREATE TABLE IF NOT EXISTS phenotype_data (
    id {_ID_DEFAULT},
    entry_id TEXT NOT NULL,
    trait_id TEXT NOT NULL,
    trial_id TEXT NOT NULL,
    layout_id TEXT,
    value REAL,
    FOREIGN KEY(entry_id) REFERENCES entries(id),
    FOREIGN KEY(trait_id) REFERENCES traits(id),
    FOREIGN KEY(trial_id) REFERENCES trials(id),
    FOREIGN KEY(layout_id) REFERENCES layouts(id),
    CHECK (value IS NULL OR typeof(value) IN ('real', 'integer'))
);
"""

CREATE_ANALYSIS_TAGS = f"""
CREATE TABLE IF NOT EXISTS analysis_tags (
    id {_ID_DEFAULT},
    analysis_id TEXT NOT NULL,
    entry_id TEXT NOT NULL,
    trait_id TEXT NOT NULL,
    trial_id TEXT NOT NULL,
    layout_id TEXT,
    FOREIGN KEY(analysis_id) REFERENCES analyses(id),
    FOREIGN KEY(entry_id) REFERENCES entries(id),
    FOREIGN KEY(trait_id) REFERENCES traits(id),
    FOREIGN KEY(trial_id) REFERENCES trials(id),
    FOREIGN KEY(layout_id) REFERENCES layouts(id)
);
"""

# ---------------------------------------------------------------------------
# Indexes
# ---------------------------------------------------------------------------

CREATE_UNIQUE_ENTRY_INSTANCE = f"""
CREATE UNIQUE INDEX IF NOT EXISTS unique_entry_instance ON entries {conflict_target(ENTRIES)};
"""

CREATE_UNIQUE_TRIAL_INSTANCE = f"""
CREATE UNIQUE INDEX IF NOT EXISTS unique_trial_instance ON trials {conflict_target(TRIALS)};
"""

CREATE_UNIQUE_LAYOUT_INSTANCE = f"""
CREATE UNIQUE INDEX IF NOT EXISTS unique_layout_instance ON layouts {conflict_target(LAYOUTS)};
"""

CREATE_UNIQUE_PHENOTYPE_MEASUREMENT = f"""
CREATE UNIQUE INDEX IF NOT EXISTS unique_phenotype_measurement ON phenotype_data {conflict_target(PHENOTYPES)};
"""

CREATE_UNIQUE_ANALYSIS_INSTANCE = f"""
CREATE UNIQUE INDEX IF NOT EXISTS unique_analysis_instance ON analysis_tags {conflict_target(ANALYSIS_TAGS)};
"""

CREATE_INDEX_PHENOTYPE_LOOKUP = """
CREATE INDEX IF NOT EXISTS idx_phenotype_entry_trait_trial_layout ON phenotype_data (entry_id, trait_id, trial_id, layout_id);
"""

CREATE_INDEX_ANALYSIS_TAG_LOOKUP = """
CREATE INDEX IF NOT EXISTS idx_analysis_tag_lookup ON analysis_tags (analysis_id, entry_id, trait_id, trial_id, layout_id);
"""

# ---------------------------------------------------------------------------
# Aggregate table/index lists
# ---------------------------------------------------------------------------

ALL_TABLES = [
    CREATE_ENTRIES,
    CREATE_TRAITS,
    CREATE_TRIALS,
    CREATE_LAYOUTS,
    CREATE_ANALYSES,
    CREATE_PHENOTYPE_DATA,
    CREATE_ANALYSIS_TAGS,
]

ALL_INDEXES = [
    CREATE_UNIQUE_ENTRY_INSTANCE,
    CREATE_UNIQUE_TRIAL_INSTANCE,
    CREATE_UNIQUE_LAYOUT_INSTANCE,
    CREATE_UNIQUE_PHENOTYPE_MEASUREMENT,
    CREATE_UNIQUE_ANALYSIS_INSTANCE,
    CREATE_INDEX_PHENOTYPE_LOOKUP,
    CREATE_INDEX_ANALYSIS_TAG_LOOKUP,
]
