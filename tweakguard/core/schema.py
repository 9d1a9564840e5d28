"""
Core data model - keys, typed values and operation results shared by the engine.
"""

import hashlib
import re
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, List, Optional

HIVE_ALIASES = {
    "HKEY_LOCAL_MACHINE": "HKLM",
    "HKEY_CURRENT_USER": "HKCU",
    "HKEY_CLASSES_ROOT": "HKCR",
    "HKEY_USERS": "HKU",
    "HKEY_CURRENT_CONFIG": "HKCC",
}
HIVES = frozenset(HIVE_ALIASES.values())


class ValueKind(str, Enum):
    DWORD = "DWORD"
    QWORD = "QWORD"
    STRING = "STRING"
    EXPAND_STRING = "EXPAND_STRING"
    MULTI_STRING = "MULTI_STRING"
    BINARY = "BINARY"

    @property
    def is_integer(self) -> bool:
        return self in (ValueKind.DWORD, ValueKind.QWORD)

    @property
    def is_string(self) -> bool:
        return self in (ValueKind.STRING, ValueKind.EXPAND_STRING)


class ErrorKind(str, Enum):
    NOT_FOUND = "not_found"
    PERMISSION_DENIED = "permission_denied"
    INVALID_TYPE = "invalid_type"
    STORE_REJECTED = "store_rejected"
    BACKUP_FAILED = "backup_failed"
    NO_BACKUP_FOUND = "no_backup_found"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"


class TweakGuardError(Exception):
    """Base exception for engine errors that must propagate."""
    pass


@dataclass(frozen=True, eq=False)
class ConfigKey:
    """Addressable container in the store: a hive plus a backslash path.

    Comparison is case-insensitive, matching registry semantics.
    """
    hive: str
    path: str

    def __eq__(self, other):
        if not isinstance(other, ConfigKey):
            return NotImplemented
        return str(self).lower() == str(other).lower()

    def __hash__(self):
        return hash(str(self).lower())

    def __post_init__(self):
        hive = HIVE_ALIASES.get(self.hive.upper(), self.hive.upper())
        if hive not in HIVES:
            raise ValueError(f"Unknown hive: {self.hive}")
        path = self.path.replace("/", "\\").strip("\\")
        path = re.sub(r"\\+", r"\\", path)
        object.__setattr__(self, "hive", hive)
        object.__setattr__(self, "path", path)

    @classmethod
    def parse(cls, text: str) -> "ConfigKey":
        """Parse `HKLM\\A\\B`, `HKLM:\\A\\B` or `HKEY_LOCAL_MACHINE\\A\\B`."""
        text = text.strip().replace("/", "\\")
        hive, _, path = text.partition("\\")
        return cls(hive.rstrip(":"), path)

    @property
    def parent(self) -> Optional["ConfigKey"]:
        if not self.path:
            return None
        head, _, _ = self.path.rpartition("\\")
        return ConfigKey(self.hive, head)

    def child(self, name: str) -> "ConfigKey":
        return ConfigKey(self.hive, f"{self.path}\\{name}" if self.path else name)

    def is_ancestor_of(self, other: "ConfigKey") -> bool:
        if self.hive != other.hive:
            return False
        if not self.path:
            return True
        return other.path.lower().startswith(self.path.lower() + "\\")

    def relative_to(self, ancestor: "ConfigKey") -> str:
        if self == ancestor:
            return ""
        if not ancestor.is_ancestor_of(self):
            raise ValueError(f"{self} is not below {ancestor}")
        return self.path[len(ancestor.path) + 1:] if ancestor.path else self.path

    def sanitized(self) -> str:
        """File-name-safe rendering used in backup artifact names."""
        return re.sub(r"[^A-Za-z0-9]+", "_", str(self)).strip("_")[:120]

    def digest(self) -> str:
        """Short stable digest; keys are case-insensitive like the registry."""
        return hashlib.sha256(str(self).lower().encode("utf-8")).hexdigest()[:10]

    def __str__(self) -> str:
        return f"{self.hive}\\{self.path}" if self.path else self.hive


@dataclass(frozen=True)
class ConfigValue:
    kind: ValueKind
    data: Any

    def __post_init__(self):
        object.__setattr__(self, "kind", ValueKind(self.kind))
        validate_value(self.kind, self.data)

    def to_json(self) -> List[Any]:
        if self.kind == ValueKind.BINARY:
            return [self.kind.value, bytes(self.data).hex()]
        return [self.kind.value, self.data]

    @classmethod
    def from_json(cls, raw: List[Any]) -> "ConfigValue":
        kind, data = ValueKind(raw[0]), raw[1]
        if kind == ValueKind.BINARY:
            data = bytes.fromhex(data)
        elif kind == ValueKind.MULTI_STRING:
            data = list(data)
        return cls(kind, data)


def validate_value(kind: ValueKind, data: Any) -> None:
    """Raise ValueError if data cannot be stored as kind."""
    if kind.is_integer:
        if isinstance(data, bool) or not isinstance(data, int):
            raise ValueError(f"{kind.value} requires an integer, got {type(data).__name__}")
        bits = 32 if kind == ValueKind.DWORD else 64
        if not 0 <= data < 2 ** bits:
            raise ValueError(f"{kind.value} out of range: {data}")
    elif kind.is_string:
        if not isinstance(data, str):
            raise ValueError(f"{kind.value} requires a string")
    elif kind == ValueKind.MULTI_STRING:
        if not isinstance(data, (list, tuple)) or not all(isinstance(s, str) for s in data):
            raise ValueError("MULTI_STRING requires a list of strings")
    elif kind == ValueKind.BINARY:
        if not isinstance(data, (bytes, bytearray)):
            raise ValueError("BINARY requires bytes")


@dataclass
class StoreResult:
    """Outcome of a store or backup operation. Truthy on success."""
    success: bool
    error: Optional[ErrorKind] = None
    message: str = ""

    def __bool__(self) -> bool:
        return self.success

    @classmethod
    def ok(cls, message: str = "") -> "StoreResult":
        return cls(True, None, message)

    @classmethod
    def fail(cls, error: ErrorKind, message: str = "") -> "StoreResult":
        return cls(False, error, message)


@dataclass(frozen=True)
class BackupHandle:
    """Identifies one captured snapshot artifact."""
    key: ConfigKey
    captured_at: datetime
    path: Path


@dataclass
class BackupResult:
    success: bool
    handle: Optional[BackupHandle] = None
    error: Optional[ErrorKind] = None
    message: str = ""

    def __bool__(self) -> bool:
        return self.success


@dataclass
class MutationResult:
    """Outcome of a ConfigMutator write or removal. Truthy on success."""
    success: bool
    key: ConfigKey
    name: str
    error: Optional[ErrorKind] = None
    message: str = ""
    backup: Optional[BackupHandle] = None
    backup_error: Optional[ErrorKind] = None
    details: dict = field(default_factory=dict)

    def __bool__(self) -> bool:
        return self.success
