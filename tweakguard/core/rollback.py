"""
Rollback coordination - Undo restores the most recent backup of each touched
key, then runs compensating actions for side effects that are not keys.

Every key and every action is attempted independently. One failure is
recorded and the rest still run.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence

from .backup import ConfigBackupStore
from .mutator import KeyLike, as_key
from .schema import ConfigKey, ErrorKind
from ..util.logging import StructuredLogger


class KeyRestoreOutcome(str, Enum):
    RESTORED = "restored"
    NO_BACKUP = "no_backup"
    FAILED = "failed"


@dataclass
class CompensatingAction:
    """Reverts a side effect that backups cannot capture, e.g. a service start type.

    Same contract as an ActionStep callable: None or truthy is success, a falsy
    return or an exception is failure.
    """
    name: str
    action: Callable[[], Any]


@dataclass
class RollbackModule:
    """Everything one feature touched: its keys plus its compensating actions."""
    name: str
    keys: List[ConfigKey] = field(default_factory=list)
    compensating: List[CompensatingAction] = field(default_factory=list)

    def __post_init__(self):
        self.keys = [as_key(k) for k in self.keys]


@dataclass
class KeyRestoreRecord:
    key: ConfigKey
    outcome: KeyRestoreOutcome
    artifact: Optional[str] = None
    error: Optional[ErrorKind] = None
    message: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "key": str(self.key),
            "outcome": self.outcome.value,
            "artifact": self.artifact,
            "error": self.error.value if self.error else None,
            "message": self.message,
        }


@dataclass
class ActionRecord:
    name: str
    success: bool
    message: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {"name": self.name, "success": self.success, "message": self.message}


@dataclass
class UndoReport:
    started_at: datetime
    finished_at: Optional[datetime] = None
    keys: List[KeyRestoreRecord] = field(default_factory=list)
    actions: List[ActionRecord] = field(default_factory=list)

    @property
    def restored(self) -> int:
        return sum(1 for r in self.keys if r.outcome == KeyRestoreOutcome.RESTORED)

    @property
    def no_backup(self) -> int:
        return sum(1 for r in self.keys if r.outcome == KeyRestoreOutcome.NO_BACKUP)

    @property
    def failed(self) -> int:
        key_failures = sum(1 for r in self.keys if r.outcome == KeyRestoreOutcome.FAILED)
        return key_failures + sum(1 for a in self.actions if not a.success)

    @property
    def success(self) -> bool:
        """True when nothing failed. Keys with no backup are not failures."""
        return self.failed == 0

    def outcome_for(self, key: KeyLike) -> Optional[KeyRestoreRecord]:
        key = as_key(key)
        for record in self.keys:
            if record.key == key:
                return record
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "success": self.success,
            "restored": self.restored,
            "no_backup": self.no_backup,
            "failed": self.failed,
            "keys": [r.to_dict() for r in self.keys],
            "actions": [a.to_dict() for a in self.actions],
        }


def restore_order(keys: Sequence[KeyLike]) -> List[ConfigKey]:
    """Distinct keys in caller order, except that an ancestor moves ahead of
    its descendants.

    An ancestor's subtree restore would otherwise overwrite a descendant that
    was already restored from its own, possibly older, capture.
    """
    ordered: List[ConfigKey] = []
    for key in keys:
        key = as_key(key)
        if key in ordered:
            continue
        for index, existing in enumerate(ordered):
            if key.is_ancestor_of(existing):
                ordered.insert(index, key)
                break
        else:
            ordered.append(key)
    return ordered


class RollbackCoordinator:
    """Runs Undo across any number of keys and compensating actions."""

    def __init__(self, backups: ConfigBackupStore, logger: StructuredLogger):
        self.backups = backups
        self.logger = logger

    def undo(self, keys: Sequence[KeyLike],
             compensating_actions: Optional[Sequence[CompensatingAction]] = None) -> UndoReport:
        report = UndoReport(started_at=datetime.now(timezone.utc))
        ordered = restore_order(keys)
        self.logger.log_undo("started", {"keys": len(ordered), "actions": len(compensating_actions or [])})

        for key in ordered:
            report.keys.append(self._restore_key(key))

        for action in compensating_actions or []:
            report.actions.append(self._run_action(action))

        report.finished_at = datetime.now(timezone.utc)
        self.logger.log_undo("success" if report.success else "completed_with_errors", {
            "restored": report.restored,
            "no_backup": report.no_backup,
            "failed": report.failed,
        })
        return report

    def undo_module(self, module: RollbackModule) -> UndoReport:
        self.logger.info(f"Undoing module {module.name}")
        return self.undo(module.keys, module.compensating)

    def undo_modules(self, modules: Sequence[RollbackModule]) -> UndoReport:
        """Undo several modules as one pass; shared keys are restored once."""
        keys: List[ConfigKey] = []
        actions: List[CompensatingAction] = []
        for module in modules:
            keys.extend(module.keys)
            actions.extend(module.compensating)
        return self.undo(keys, actions)

    def _restore_key(self, key: ConfigKey) -> KeyRestoreRecord:
        handle = self.backups.latest(key)
        if handle is None:
            self.logger.log_restore(str(key), "no_backup")
            return KeyRestoreRecord(key, KeyRestoreOutcome.NO_BACKUP, error=ErrorKind.NO_BACKUP_FOUND,
                                    message=f"No backup found for {key}")

        try:
            result = self.backups.restore(handle)
        except Exception as e:
            self.logger.log_restore(str(key), "failed", {"artifact": handle.path.name, "error": str(e)})
            return KeyRestoreRecord(key, KeyRestoreOutcome.FAILED, handle.path.name,
                                    ErrorKind.STORE_REJECTED, str(e))

        if not result:
            return KeyRestoreRecord(key, KeyRestoreOutcome.FAILED, handle.path.name, result.error, result.message)
        return KeyRestoreRecord(key, KeyRestoreOutcome.RESTORED, handle.path.name)

    def _run_action(self, action: CompensatingAction) -> ActionRecord:
        try:
            outcome = action.action()
        except Exception as e:
            self.logger.error(f"Compensating action {action.name} failed: {e}")
            return ActionRecord(action.name, False, str(e) or type(e).__name__)

        if outcome is not None and not outcome:
            message = getattr(outcome, "message", "") or f"{action.name} reported failure"
            self.logger.error(f"Compensating action {action.name} failed: {message}")
            return ActionRecord(action.name, False, message)

        self.logger.log_operation("undo.action", "success", {"action": action.name})
        return ActionRecord(action.name, True)
