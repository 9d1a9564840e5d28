"""
KeyValueStore contract - typed values addressed by (ConfigKey, name).

Backends implement the primitive operations; subtree export/import used by
the backup store is built on top of them here.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from .schema import ConfigKey, ConfigValue, ErrorKind, StoreResult
from ..util.logging import StructuredLogger

SNAPSHOT_FORMAT = "tweakguard.subtree/1"


class KeyValueStore(ABC):
    """Persistent configuration store.

    `get` never raises: absence and read errors both come back as None.
    `set` creates any missing containers along the key path before writing.
    Mutating calls return a StoreResult; missing rights surface as
    ErrorKind.PERMISSION_DENIED rather than an exception.
    """

    def __init__(self, logger: StructuredLogger):
        self.logger = logger

    @abstractmethod
    def get(self, key: ConfigKey, name: str) -> Optional[ConfigValue]:
        ...

    @abstractmethod
    def set(self, key: ConfigKey, name: str, value: ConfigValue) -> StoreResult:
        ...

    @abstractmethod
    def remove(self, key: ConfigKey, name: str) -> StoreResult:
        ...

    @abstractmethod
    def exists(self, key: ConfigKey) -> bool:
        ...

    @abstractmethod
    def create_key(self, key: ConfigKey) -> StoreResult:
        ...

    @abstractmethod
    def list_values(self, key: ConfigKey) -> Dict[str, ConfigValue]:
        ...

    @abstractmethod
    def list_subkeys(self, key: ConfigKey) -> List[str]:
        """Names of the direct children of key."""
        ...

    def export_subtree(self, key: ConfigKey) -> Optional[Dict[str, Any]]:
        """Snapshot every container and value below key. None if key is absent."""
        if not self.exists(key):
            return None

        containers: Dict[str, Dict[str, Any]] = {}
        pending = [key]
        while pending:
            current = pending.pop()
            values = self.list_values(current)
            containers[current.relative_to(key)] = {
                name: value.to_json() for name, value in sorted(values.items())
            }
            for child in self.list_subkeys(current):
                pending.append(current.child(child))

        return {
            "format": SNAPSHOT_FORMAT,
            "key": str(key),
            "containers": dict(sorted(containers.items())),
        }

    def import_subtree(self, key: ConfigKey, snapshot: Dict[str, Any]) -> StoreResult:
        """Write a snapshot back under key.

        Each captured container ends up holding exactly its captured values;
        values added after the capture are removed. Containers created after
        the capture are left alone. Safe to repeat.
        """
        if not isinstance(snapshot, dict) or snapshot.get("format") != SNAPSHOT_FORMAT:
            found = snapshot.get("format") if isinstance(snapshot, dict) else type(snapshot).__name__
            return StoreResult.fail(ErrorKind.STORE_REJECTED, f"Unknown snapshot format: {found}")

        # Decode everything up front so a bad snapshot writes nothing
        try:
            decoded = [
                (key.child(relative) if relative else key,
                 {name: ConfigValue.from_json(raw) for name, raw in values.items()})
                for relative, values in snapshot.get("containers", {}).items()
            ]
        except (KeyError, IndexError, TypeError, ValueError, AttributeError) as e:
            return StoreResult.fail(ErrorKind.STORE_REJECTED, f"Malformed snapshot: {type(e).__name__}: {e}")

        failures = []
        for container, wanted in decoded:
            created = self.create_key(container)
            if not created:
                failures.append(created)
                continue

            current = self.list_values(container)
            wanted_names = {name.lower() for name in wanted}

            for name in current:
                if name.lower() not in wanted_names:
                    removed = self.remove(container, name)
                    if not removed and removed.error != ErrorKind.NOT_FOUND:
                        failures.append(removed)

            for name, value in wanted.items():
                if current.get(name) == value:
                    continue
                written = self.set(container, name, value)
                if not written:
                    failures.append(written)

        if failures:
            first = failures[0]
            return StoreResult.fail(first.error, f"{len(failures)} write(s) failed during import: {first.message}")
        return StoreResult.ok()
