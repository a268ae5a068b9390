"""Database initialization and timestamp helpers."""

import sqlite3
from datetime import datetime
from pathlib import Path

from ..utils.logger import setup_logger

logger = setup_logger(__name__)

TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"


def format_timestamp(value: datetime | None) -> str | None:
    """Render a datetime in the sortable storage format."""
    if value is None:
        return None
    return value.strftime(TIMESTAMP_FORMAT)


def parse_timestamp(value: str | None) -> datetime | None:
    """Parse a stored timestamp back into a datetime."""
    if value is None:
        return None
    return datetime.fromisoformat(value)


def init_database(db_path: str) -> None:
    """Initialize SQLite database with schema.

    Creates all tables, indexes, and enables foreign key constraints.

    Args:
        db_path: Path to the SQLite database file.
    """
    db_dir = Path(db_path).parent
    db_dir.mkdir(parents=True, exist_ok=True)

    conn = sqlite3.connect(db_path)
    conn.execute("PRAGMA foreign_keys = ON")
    schema_path = Path(__file__).parent / "schema.sql"
    with open(schema_path) as f:
        conn.executescript(f.read())
    conn.close()
    logger.info("Database initialized at %s", db_path)
