import logging
import re
import sqlite3

from pymongo import MongoClient

logger = logging.getLogger(__name__)

_TABLE_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

# {table} is substituted after validation; sqlite cannot bind identifiers.
SCHEMA = """
CREATE TABLE IF NOT EXISTS {table} (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    priority NUMERIC NOT NULL,
    reserved_at NUMERIC,
    data TEXT NOT NULL DEFAULT '{{}}'
);
CREATE INDEX IF NOT EXISTS idx_{table}_priority ON {table}(priority);
"""


def is_mongo_uri(uri: str) -> bool:
    return uri.startswith(("mongodb://", "mongodb+srv://"))


def check_table_name(name: str) -> str:
    if not _TABLE_RE.match(name or ""):
        raise ValueError(f"Invalid collection name for SQLite store: {name!r}")
    return name


def connect_db(path: str) -> sqlite3.Connection:
    # Autocommit mode: writers that need atomicity issue BEGIN IMMEDIATE themselves.
    conn = sqlite3.connect(path, timeout=30.0, isolation_level=None)
    conn.row_factory = sqlite3.Row
    return conn


def init_db(path: str, table: str) -> None:
    conn = connect_db(path)
    try:
        conn.execute("PRAGMA journal_mode=WAL")
        conn.executescript(SCHEMA.format(table=check_table_name(table)))
    finally:
        conn.close()
    logger.debug("SQLite schema ready db=%s table=%s", path, table)


def connect_mongo(uri: str, database_name: str, collection_name: str, **client_options):
    """Return the pymongo collection backing a queue."""
    client = MongoClient(uri, **client_options)
    logger.debug("Using MongoDB collection %s.%s", database_name, collection_name)
    return client[database_name][collection_name]
