"""
Native Windows registry backend (winreg). Only importable on Windows.
"""

import winreg
from typing import Dict, List, Optional

from .schema import ConfigKey, ConfigValue, ErrorKind, StoreResult, ValueKind
from .store import KeyValueStore
from ..util.logging import StructuredLogger

ROOTS = {
    "HKLM": winreg.HKEY_LOCAL_MACHINE,
    "HKCU": winreg.HKEY_CURRENT_USER,
    "HKCR": winreg.HKEY_CLASSES_ROOT,
    "HKU": winreg.HKEY_USERS,
    "HKCC": winreg.HKEY_CURRENT_CONFIG,
}

KIND_TO_REG = {
    ValueKind.DWORD: winreg.REG_DWORD,
    ValueKind.QWORD: winreg.REG_QWORD,
    ValueKind.STRING: winreg.REG_SZ,
    ValueKind.EXPAND_STRING: winreg.REG_EXPAND_SZ,
    ValueKind.MULTI_STRING: winreg.REG_MULTI_SZ,
    ValueKind.BINARY: winreg.REG_BINARY,
}
REG_TO_KIND = {v: k for k, v in KIND_TO_REG.items()}


def _error_kind(error: OSError) -> ErrorKind:
    if isinstance(error, PermissionError):
        return ErrorKind.PERMISSION_DENIED
    if isinstance(error, FileNotFoundError):
        return ErrorKind.NOT_FOUND
    return ErrorKind.STORE_REJECTED


class RegistryStore(KeyValueStore):
    """KeyValueStore over the live registry, 64-bit view by default."""

    def __init__(self, logger: StructuredLogger, view: int = winreg.KEY_WOW64_64KEY):
        super().__init__(logger)
        self.view = view

    def _open(self, key: ConfigKey, access: int):
        return winreg.OpenKeyEx(ROOTS[key.hive], key.path, 0, access | self.view)

    def get(self, key: ConfigKey, name: str) -> Optional[ConfigValue]:
        try:
            with self._open(key, winreg.KEY_READ) as handle:
                data, reg_type = winreg.QueryValueEx(handle, name)
        except FileNotFoundError:
            self.logger.debug(f"Value not found: {key}\\{name}")
            return None
        except OSError as e:
            self.logger.error(f"Failed to read {key}\\{name}: {e}")
            return None

        kind = REG_TO_KIND.get(reg_type)
        if kind is None:
            self.logger.warning(f"Unsupported registry type {reg_type} at {key}\\{name}")
            return None
        if kind == ValueKind.BINARY and data is None:
            data = b""
        return ConfigValue(kind, data)

    def set(self, key: ConfigKey, name: str, value: ConfigValue) -> StoreResult:
        try:
            # CreateKeyEx opens the key, creating any missing ancestors
            with winreg.CreateKeyEx(ROOTS[key.hive], key.path, 0, winreg.KEY_WRITE | self.view) as handle:
                data = list(value.data) if value.kind == ValueKind.MULTI_STRING else value.data
                winreg.SetValueEx(handle, name, 0, KIND_TO_REG[value.kind], data)
        except OSError as e:
            return StoreResult.fail(_error_kind(e), f"Failed to write {key}\\{name}: {e}")
        return StoreResult.ok()

    def remove(self, key: ConfigKey, name: str) -> StoreResult:
        try:
            with self._open(key, winreg.KEY_SET_VALUE) as handle:
                winreg.DeleteValue(handle, name)
        except OSError as e:
            return StoreResult.fail(_error_kind(e), f"Failed to remove {key}\\{name}: {e}")
        return StoreResult.ok()

    def exists(self, key: ConfigKey) -> bool:
        if not key.path:
            return True
        try:
            with self._open(key, winreg.KEY_READ):
                return True
        except OSError:
            return False

    def create_key(self, key: ConfigKey) -> StoreResult:
        try:
            winreg.CreateKeyEx(ROOTS[key.hive], key.path, 0, winreg.KEY_WRITE | self.view).Close()
        except OSError as e:
            return StoreResult.fail(_error_kind(e), f"Failed to create {key}: {e}")
        return StoreResult.ok()

    def list_values(self, key: ConfigKey) -> Dict[str, ConfigValue]:
        values = {}
        try:
            with self._open(key, winreg.KEY_READ) as handle:
                index = 0
                while True:
                    try:
                        name, data, reg_type = winreg.EnumValue(handle, index)
                    except OSError:
                        break
                    index += 1
                    kind = REG_TO_KIND.get(reg_type)
                    if kind is None:
                        self.logger.warning(f"Skipping unsupported registry type {reg_type} at {key}\\{name}")
                        continue
                    if kind == ValueKind.BINARY and data is None:
                        data = b""
                    values[name] = ConfigValue(kind, data)
        except OSError as e:
            self.logger.error(f"Failed to list values of {key}: {e}")
        return values

    def list_subkeys(self, key: ConfigKey) -> List[str]:
        names = []
        try:
            with self._open(key, winreg.KEY_READ) as handle:
                index = 0
                while True:
                    try:
                        names.append(winreg.EnumKey(handle, index))
                    except OSError:
                        break
                    index += 1
        except OSError as e:
            self.logger.error(f"Failed to list subkeys of {key}: {e}")
        return names
