"""
SQLite store for accounts, animals, public projections and the transfer ledger.

Every unit of work opens its own connection. Writes go through
`transaction()`, which takes the database write lock up front
(BEGIN IMMEDIATE) so that concurrent requests serialize on the lock instead
of interleaving their reads and writes.
"""

import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator

from .config import DB_PATH, DB_TIMEOUT, PUBLIC_ID_START

logger = logging.getLogger(__name__)

_db_path = DB_PATH


def configure(db_path: str) -> None:
    """Point the module at another database file (tests, CLI)."""
    global _db_path
    _db_path = db_path


def get_db_path() -> str:
    return _db_path


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def connect() -> sqlite3.Connection:
    conn = sqlite3.connect(
        _db_path,
        timeout=DB_TIMEOUT,
        isolation_level=None,
        check_same_thread=False,
    )
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    return conn


@contextmanager
def transaction() -> Iterator[sqlite3.Connection]:
    """
    Run a block as one atomic write transaction.

    Commits when the block exits normally; any exception rolls back every
    statement executed in the block and is re-raised.

    Usage:
        with transaction() as conn:
            conn.execute("UPDATE transfers SET status = ? WHERE id = ?", ("accepted", 1))
    """
    conn = connect()
    try:
        conn.execute("BEGIN IMMEDIATE")
        try:
            yield conn
        except BaseException:
            conn.execute("ROLLBACK")
            raise
        conn.execute("COMMIT")
    finally:
        conn.close()


@contextmanager
def read_connection() -> Iterator[sqlite3.Connection]:
    conn = connect()
    try:
        yield conn
    finally:
        conn.close()


def next_public_id(conn: sqlite3.Connection, counter: str, prefix: str) -> str:
    """Allocate the next public identifier for `counter` (e.g. CTC1000, CTC1001)."""
    conn.execute(
        "INSERT OR IGNORE INTO counters (name, seq) VALUES (?, ?)",
        (counter, PUBLIC_ID_START - 1),
    )
    conn.execute("UPDATE counters SET seq = seq + 1 WHERE name = ?", (counter,))
    seq = conn.execute("SELECT seq FROM counters WHERE name = ?", (counter,)).fetchone()[0]
    return f"{prefix}{seq}"


SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS counters (
        name TEXT PRIMARY KEY,
        seq INTEGER NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS accounts (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        id_public TEXT NOT NULL UNIQUE,
        auth_uid TEXT UNIQUE,
        email TEXT,
        display_name TEXT,
        breeder_name TEXT,
        show_remarks_public INTEGER NOT NULL DEFAULT 0,
        show_genetic_code_public INTEGER NOT NULL DEFAULT 0,
        created_at TEXT NOT NULL,
        updated_at TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS animals (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        id_public TEXT NOT NULL UNIQUE,
        owner_id INTEGER NOT NULL,
        owner_id_public TEXT NOT NULL,
        original_owner_id INTEGER,
        sold_status TEXT CHECK (sold_status IS NULL OR sold_status IN ('sold', 'purchased')),
        is_public INTEGER NOT NULL DEFAULT 0,
        include_remarks INTEGER NOT NULL DEFAULT 0,
        include_genetic_code INTEGER NOT NULL DEFAULT 0,
        section_privacy TEXT NOT NULL DEFAULT '{}',
        details TEXT NOT NULL DEFAULT '{}',
        created_at TEXT NOT NULL,
        updated_at TEXT,
        FOREIGN KEY (owner_id) REFERENCES accounts (id),
        FOREIGN KEY (original_owner_id) REFERENCES accounts (id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS animal_view_grants (
        animal_id INTEGER NOT NULL,
        account_id INTEGER NOT NULL,
        granted_at TEXT NOT NULL,
        PRIMARY KEY (animal_id, account_id),
        FOREIGN KEY (animal_id) REFERENCES animals (id),
        FOREIGN KEY (account_id) REFERENCES accounts (id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS account_animals (
        account_id INTEGER NOT NULL,
        animal_id INTEGER NOT NULL,
        added_at TEXT NOT NULL,
        PRIMARY KEY (account_id, animal_id),
        FOREIGN KEY (account_id) REFERENCES accounts (id),
        FOREIGN KEY (animal_id) REFERENCES animals (id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS public_animals (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        id_public TEXT NOT NULL,
        owner_id_public TEXT NOT NULL,
        document TEXT NOT NULL,
        content_hash TEXT NOT NULL,
        projected_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS transfers (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        from_user_id INTEGER NOT NULL,
        to_user_id INTEGER NOT NULL,
        animal_id_public TEXT NOT NULL,
        transfer_type TEXT NOT NULL CHECK (transfer_type IN ('sale', 'purchase')),
        offer_view_only INTEGER NOT NULL DEFAULT 0,
        status TEXT NOT NULL DEFAULT 'pending' CHECK (status IN ('pending', 'accepted', 'declined')),
        transaction_id TEXT,
        created_at TEXT NOT NULL,
        responded_at TEXT,
        FOREIGN KEY (from_user_id) REFERENCES accounts (id),
        FOREIGN KEY (to_user_id) REFERENCES accounts (id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS transfer_events (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        event_id TEXT NOT NULL UNIQUE,
        transfer_id INTEGER,
        animal_id_public TEXT NOT NULL,
        event_type TEXT NOT NULL,
        event_version INTEGER NOT NULL DEFAULT 1,
        payload TEXT NOT NULL,
        metadata TEXT NOT NULL,
        account_id INTEGER,
        event_time TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS notifications (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        account_id INTEGER NOT NULL,
        type TEXT NOT NULL,
        message TEXT NOT NULL DEFAULT '',
        status TEXT,
        transfer_id INTEGER,
        animal_id_public TEXT,
        metadata TEXT NOT NULL DEFAULT '{}',
        read INTEGER NOT NULL DEFAULT 0,
        created_at TEXT NOT NULL
    )
    """,
]

INDEXES = [
    "CREATE INDEX IF NOT EXISTS idx_animals_owner ON animals(owner_id)",
    "CREATE INDEX IF NOT EXISTS idx_view_grants_account ON animal_view_grants(account_id)",
    "CREATE INDEX IF NOT EXISTS idx_public_animals_owner ON public_animals(owner_id_public)",
    "CREATE INDEX IF NOT EXISTS idx_transfers_from ON transfers(from_user_id)",
    "CREATE INDEX IF NOT EXISTS idx_transfers_to ON transfers(to_user_id)",
    "CREATE INDEX IF NOT EXISTS idx_transfers_animal ON transfers(animal_id_public)",
    "CREATE INDEX IF NOT EXISTS idx_transfer_events_transfer ON transfer_events(transfer_id)",
    "CREATE INDEX IF NOT EXISTS idx_notifications_account ON notifications(account_id, read)",
    # At most one pending offer per (animal, recipient)
    """
    CREATE UNIQUE INDEX IF NOT EXISTS uniq_pending_transfer
    ON transfers(animal_id_public, to_user_id) WHERE status = 'pending'
    """,
]


def _add_column_safely(conn: sqlite3.Connection, table_name: str, column_name: str, column_type: str) -> None:
    """Add a column to an existing table if it doesn't exist yet"""
    columns = [row[1] for row in conn.execute(f"PRAGMA table_info({table_name})").fetchall()]
    if column_name not in columns:
        conn.execute(f"ALTER TABLE {table_name} ADD COLUMN {column_name} {column_type}")
        logger.info(f"Added {column_name} to {table_name} table")


def create_projection_unique_index(conn: sqlite3.Connection) -> int:
    """
    Enforce one public projection per public identifier.

    Databases written before the constraint existed may already hold
    duplicates; those are collapsed to the most recently projected row and
    the index creation is retried. Returns the number of rows removed.
    """
    try:
        conn.execute(
            "CREATE UNIQUE INDEX IF NOT EXISTS uniq_public_animals_id_public ON public_animals(id_public)"
        )
        return 0
    except sqlite3.IntegrityError:
        cur = conn.execute(
            """
            DELETE FROM public_animals
            WHERE id NOT IN (
                SELECT MAX(id) FROM public_animals GROUP BY id_public
            )
            """
        )
        removed = cur.rowcount
        logger.warning(f"Removed {removed} duplicate public projections before creating unique index")
        conn.execute(
            "CREATE UNIQUE INDEX IF NOT EXISTS uniq_public_animals_id_public ON public_animals(id_public)"
        )
        return removed


def init_db(db_path: str | None = None) -> None:
    """Create tables and indexes. Safe to run on every startup."""
    if db_path is not None:
        configure(db_path)
    Path(_db_path).parent.mkdir(parents=True, exist_ok=True)

    conn = connect()
    try:
        conn.execute("PRAGMA journal_mode=WAL")
        for statement in SCHEMA:
            conn.execute(statement)
        # Columns added after the first release
        _add_column_safely(conn, "animal_view_grants", "hidden", "INTEGER NOT NULL DEFAULT 0")
        _add_column_safely(conn, "transfers", "updated_at", "TEXT")
        for statement in INDEXES:
            conn.execute(statement)
        create_projection_unique_index(conn)
    finally:
        conn.close()
    logger.info(f"SQLite database ready at {_db_path}")
