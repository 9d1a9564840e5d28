"""
Portable key/value store backed by SQLite.

Mirrors registry semantics (case-insensitive containers and names, implicit
hive roots, create-on-write) so the engine behaves the same off Windows.
"""

import json
import sqlite3
from typing import Dict, Iterable, List, Optional

from .db import get_db, init_db
from .schema import ConfigKey, ConfigValue, ErrorKind, StoreResult
from .store import KeyValueStore
from ..util.logging import StructuredLogger


class SqliteKeyValueStore(KeyValueStore):
    """Key/value store persisted in a single SQLite file.

    When `elevated` is False, writes under `privileged_hives` are refused with
    PERMISSION_DENIED, the same way a non-admin process is refused by the
    registry.
    """

    def __init__(self, db_path: str, logger: StructuredLogger, elevated: bool = True,
                 privileged_hives: Iterable[str] = ("HKLM",)):
        super().__init__(logger)
        self.db_path = db_path
        self.elevated = elevated
        self.privileged_hives = frozenset(h.upper() for h in privileged_hives)
        init_db(db_path)

    def _check_rights(self, key: ConfigKey) -> Optional[StoreResult]:
        if not self.elevated and key.hive in self.privileged_hives:
            return StoreResult.fail(ErrorKind.PERMISSION_DENIED, f"Access denied writing {key}")
        return None

    def get(self, key: ConfigKey, name: str) -> Optional[ConfigValue]:
        try:
            with get_db(self.db_path) as conn:
                cursor = conn.cursor()
                cursor.execute(
                    "SELECT kind, data FROM vals WHERE hive = ? AND path = ? AND name = ?",
                    (key.hive, key.path, name)
                )
                row = cursor.fetchone()
        except sqlite3.Error as e:
            self.logger.error(f"Failed to read {key}\\{name}: {e}")
            return None

        if row is None:
            self.logger.debug(f"Value not found: {key}\\{name}")
            return None

        try:
            return ConfigValue.from_json(json.loads(row[1]))
        except (ValueError, TypeError, IndexError) as e:
            self.logger.error(f"Corrupt value at {key}\\{name}: {e}")
            return None

    def set(self, key: ConfigKey, name: str, value: ConfigValue) -> StoreResult:
        denied = self._check_rights(key)
        if denied:
            return denied

        try:
            with get_db(self.db_path) as conn:
                cursor = conn.cursor()
                self._insert_containers(cursor, key)
                cursor.execute(
                    "INSERT INTO vals (hive, path, name, kind, data) VALUES (?, ?, ?, ?, ?) "
                    "ON CONFLICT(hive, path, name) DO UPDATE SET kind = excluded.kind, "
                    "data = excluded.data, updated_at = CURRENT_TIMESTAMP",
                    (key.hive, key.path, name, value.kind.value, json.dumps(value.to_json()))
                )
                conn.commit()
        except sqlite3.Error as e:
            self.logger.error(f"Database error during set for {key}\\{name}: {e}")
            return StoreResult.fail(ErrorKind.STORE_REJECTED, str(e))

        return StoreResult.ok()

    def remove(self, key: ConfigKey, name: str) -> StoreResult:
        denied = self._check_rights(key)
        if denied:
            return denied

        try:
            with get_db(self.db_path) as conn:
                cursor = conn.cursor()
                cursor.execute(
                    "DELETE FROM vals WHERE hive = ? AND path = ? AND name = ?",
                    (key.hive, key.path, name)
                )
                deleted = cursor.rowcount
                conn.commit()
        except sqlite3.Error as e:
            self.logger.error(f"Database error during remove for {key}\\{name}: {e}")
            return StoreResult.fail(ErrorKind.STORE_REJECTED, str(e))

        if deleted == 0:
            return StoreResult.fail(ErrorKind.NOT_FOUND, f"{key}\\{name} does not exist")
        return StoreResult.ok()

    def exists(self, key: ConfigKey) -> bool:
        if not key.path:
            return True
        try:
            with get_db(self.db_path) as conn:
                cursor = conn.cursor()
                cursor.execute(
                    "SELECT 1 FROM containers WHERE hive = ? AND path = ?",
                    (key.hive, key.path)
                )
                return cursor.fetchone() is not None
        except sqlite3.Error as e:
            self.logger.error(f"Failed to check {key}: {e}")
            return False

    def create_key(self, key: ConfigKey) -> StoreResult:
        denied = self._check_rights(key)
        if denied:
            return denied

        try:
            with get_db(self.db_path) as conn:
                cursor = conn.cursor()
                self._insert_containers(cursor, key)
                conn.commit()
        except sqlite3.Error as e:
            return StoreResult.fail(ErrorKind.STORE_REJECTED, str(e))
        return StoreResult.ok()

    def list_values(self, key: ConfigKey) -> Dict[str, ConfigValue]:
        values = {}
        try:
            with get_db(self.db_path) as conn:
                cursor = conn.cursor()
                cursor.execute(
                    "SELECT name, data FROM vals WHERE hive = ? AND path = ? ORDER BY name",
                    (key.hive, key.path)
                )
                rows = cursor.fetchall()
        except sqlite3.Error as e:
            self.logger.error(f"Failed to list values of {key}: {e}")
            return values

        for name, data in rows:
            values[name] = ConfigValue.from_json(json.loads(data))
        return values

    def list_subkeys(self, key: ConfigKey) -> List[str]:
        try:
            with get_db(self.db_path) as conn:
                cursor = conn.cursor()
                cursor.execute("SELECT path FROM containers WHERE hive = ?", (key.hive,))
                paths = [row[0] for row in cursor.fetchall()]
        except sqlite3.Error as e:
            self.logger.error(f"Failed to list subkeys of {key}: {e}")
            return []

        children = {}
        prefix = key.path.lower() + "\\" if key.path else ""
        for path in paths:
            if not path or not path.lower().startswith(prefix) or len(path) == len(prefix):
                continue
            child = path[len(prefix):].split("\\")[0]
            children.setdefault(child.lower(), child)
        return sorted(children.values(), key=str.lower)

    def count_values(self) -> int:
        """Total number of stored values."""
        with get_db(self.db_path) as conn:
            cursor = conn.cursor()
            cursor.execute("SELECT COUNT(*) FROM vals")
            return cursor.fetchone()[0]

    @staticmethod
    def _insert_containers(cursor: sqlite3.Cursor, key: ConfigKey):
        """Create key and every missing ancestor."""
        parts = key.path.split("\\") if key.path else []
        for i in range(1, len(parts) + 1):
            cursor.execute(
                "INSERT OR IGNORE INTO containers (hive, path) VALUES (?, ?)",
                (key.hive, "\\".join(parts[:i]))
            )
