"""
SQLite foundation for the portable key/value store.
"""

import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Generator


@contextmanager
def get_db(db_path: str) -> Generator[sqlite3.Connection, None, None]:
    """Get a SQLite database connection."""
    conn = sqlite3.connect(db_path)
    try:
        yield conn
    finally:
        conn.close()


def init_db(db_path: str):
    """Initialize the database with required tables."""
    Path(db_path).parent.mkdir(parents=True, exist_ok=True)

    with get_db(db_path) as conn:
        cursor = conn.cursor()

        # Containers exist independently of the values they hold
        cursor.execute('''
            CREATE TABLE IF NOT EXISTS containers (
                hive TEXT NOT NULL,
                path TEXT NOT NULL COLLATE NOCASE,
                PRIMARY KEY (hive, path)
            )
        ''')

        cursor.execute('''
            CREATE TABLE IF NOT EXISTS vals (
                hive TEXT NOT NULL,
                path TEXT NOT NULL COLLATE NOCASE,
                name TEXT NOT NULL COLLATE NOCASE,
                kind TEXT NOT NULL,
                data TEXT NOT NULL,
                updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                PRIMARY KEY (hive, path, name)
            )
        ''')

        cursor.execute('CREATE INDEX IF NOT EXISTS idx_vals_container ON vals(hive, path)')

        conn.commit()


def health_check(db_path: str):
    """Check database health."""
    try:
        with get_db(db_path) as conn:
            cursor = conn.cursor()
            cursor.execute("SELECT name FROM sqlite_master WHERE type='table';")
            table_names = [row[0] for row in cursor.fetchall()]
            return all(table in table_names for table in ['containers', 'vals'])
    except sqlite3.Error:
        return False
