"""
ConfigMutator - one backup capture followed by one value write or removal.
"""

from enum import Enum
from typing import Any, Optional, Set, Tuple, Union

from .backup import ConfigBackupStore
from .schema import (
    BackupHandle,
    ConfigKey,
    ConfigValue,
    ErrorKind,
    MutationResult,
    ValueKind,
)
from .store import KeyValueStore
from ..util.logging import StructuredLogger

KeyLike = Union[ConfigKey, str]


class BackupPolicy(str, Enum):
    """What to do when the pre-write capture fails.

    BEST_EFFORT logs the failure and writes anyway. REQUIRE refuses the write.
    A key that does not exist yet never blocks a write under either policy:
    there is nothing to back up.
    """
    BEST_EFFORT = "best_effort"
    REQUIRE = "require"


def as_key(key: KeyLike) -> ConfigKey:
    return key if isinstance(key, ConfigKey) else ConfigKey.parse(key)


class ConfigMutator:
    """Backup-then-mutate wrapper around a KeyValueStore.

    A key is captured only before its first mutation in a session. Capturing
    it again later in the same session would snapshot the session's own writes,
    and Undo would then restore those instead of the original state.
    """

    def __init__(self, store: KeyValueStore, backups: ConfigBackupStore, logger: StructuredLogger,
                 policy: BackupPolicy = BackupPolicy.BEST_EFFORT):
        self.store = store
        self.backups = backups
        self.logger = logger
        self.policy = BackupPolicy(policy)
        self._captured: Set[ConfigKey] = set()

    def begin_session(self):
        """Forget which keys were captured; the next mutation of each captures again."""
        self._captured.clear()

    def get_value(self, key: KeyLike, name: str, default: Any = None) -> Any:
        """Current raw value, or default when absent or unreadable."""
        try:
            found = self.store.get(as_key(key), name)
        except ValueError as e:
            self.logger.debug(f"Read of {key}\\{name} failed: {e}")
            return default
        return default if found is None else found.data

    def set_value(self, key: KeyLike, name: str, value: Any, kind: Union[ValueKind, str] = ValueKind.DWORD,
                  skip_backup: bool = False) -> MutationResult:
        """Write name=value under key, creating the key path if missing."""
        key = as_key(key)

        try:
            config_value = ConfigValue(ValueKind(kind), value)
        except ValueError as e:
            self.logger.log_mutation("set", str(key), name, value, status="failed", error=str(e))
            return MutationResult(False, key, name, error=ErrorKind.INVALID_TYPE, message=str(e))

        proceed, handle, backup_error = self._backup_first(key, skip_backup)
        if not proceed:
            message = f"Write to {key}\\{name} refused: backup required but capture failed"
            self.logger.log_mutation("set", str(key), name, value, status="failed", error=message)
            return MutationResult(False, key, name, error=ErrorKind.BACKUP_FAILED, message=message,
                                  backup_error=backup_error)

        written = self.store.set(key, name, config_value)
        if not written:
            self.logger.log_mutation("set", str(key), name, value, status="failed", error=written.message)
            return MutationResult(False, key, name, error=written.error, message=written.message,
                                  backup=handle, backup_error=backup_error)

        self.logger.log_mutation("set", str(key), name, value)
        return MutationResult(True, key, name, backup=handle, backup_error=backup_error)

    def remove_value(self, key: KeyLike, name: str, skip_backup: bool = False) -> MutationResult:
        """Delete name under key. An already-absent value counts as removed."""
        key = as_key(key)

        proceed, handle, backup_error = self._backup_first(key, skip_backup)
        if not proceed:
            message = f"Removal of {key}\\{name} refused: backup required but capture failed"
            self.logger.log_mutation("remove", str(key), name, status="failed", error=message)
            return MutationResult(False, key, name, error=ErrorKind.BACKUP_FAILED, message=message,
                                  backup_error=backup_error)

        removed = self.store.remove(key, name)
        if not removed and removed.error != ErrorKind.NOT_FOUND:
            self.logger.log_mutation("remove", str(key), name, status="failed", error=removed.message)
            return MutationResult(False, key, name, error=removed.error, message=removed.message,
                                  backup=handle, backup_error=backup_error)

        if not removed:
            self.logger.debug(f"{key}\\{name} already absent")
        self.logger.log_mutation("remove", str(key), name)
        return MutationResult(True, key, name, backup=handle, backup_error=backup_error,
                              details={"already_absent": not removed})

    def _backup_first(self, key: ConfigKey, skip_backup: bool) -> Tuple[bool, Optional[BackupHandle], Optional[ErrorKind]]:
        """Capture key once per session. Returns (proceed, handle, backup_error)."""
        if skip_backup or key in self._captured:
            return True, None, None

        captured = self.backups.capture(key)
        if captured:
            self._captured.add(key)
            return True, captured.handle, None

        if captured.error == ErrorKind.NOT_FOUND:
            # Key is created by this write; a later capture would only see our own values
            self._captured.add(key)
            return True, None, ErrorKind.NOT_FOUND

        if self.policy == BackupPolicy.REQUIRE:
            return False, None, captured.error

        self.logger.warning(f"Proceeding without backup of {key}: {captured.message}")
        self._captured.add(key)
        return True, None, captured.error
