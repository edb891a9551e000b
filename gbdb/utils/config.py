# gbdb/utils/config.py
"""
Configuration loading utility.

The database connection is described by an explicit DatabaseConfig object that
the surrounding application builds once and passes to ``gbdb.db.api.connect``.
Nothing in the data-access core reads the process environment.
"""

import yaml
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Mapping, Union


def load_config(path: Union[str, Path]) -> Dict[str, Any]:
    """
    Loads a YAML configuration file.

    Args:
        path: The path to the YAML file.

    Returns:
        A dictionary containing the configuration.
    """
    with open(path, 'r') as f:
        return yaml.safe_load(f) or {}


@dataclass(frozen=True)
class DatabaseConfig:
    """Connection settings for the SQLite trials database."""
    path: Path
    foreign_keys: bool = True
    journal_mode: str = "WAL"
    busy_timeout_ms: int = 5000

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "DatabaseConfig":
        if not data or not data.get("path"):
            raise ValueError("Database configuration requires a 'path'.")
        return cls(
            path=Path(data["path"]).expanduser(),
            foreign_keys=bool(data.get("foreign_keys", True)),
            journal_mode=str(data.get("journal_mode", "WAL")),
            busy_timeout_ms=int(data.get("busy_timeout_ms", 5000)),
        )


def load_database_config(path: Union[str, Path]) -> DatabaseConfig:
    """Reads the ``database:`` section of a YAML configuration file."""
    cfg = load_config(path)
    return DatabaseConfig.from_mapping(cfg.get("database") or {})
