"""
Request, response and loadout schemas.

A loadout is the JSON description of tiers and rollback modules that the CLI
and the API both accept.
"""

from pydantic import BaseModel, field_validator, ValidationInfo
from typing import Optional, List, Dict, Any
from datetime import datetime

from ..core.schema import ConfigKey, ValueKind, validate_value

STEP_TYPES = ['set', 'remove', 'service', 'boot_flag']
SERVICE_ACTIONS = ['stop', 'disable', 'manual', 'stop-and-disable']
START_TYPES = ['boot', 'system', 'auto', 'delayed-auto', 'demand', 'disabled']
RISKS = ['safe', 'caution', 'risky', 'ludicrous']


def _check_key(v):
    try:
        ConfigKey.parse(v)
    except ValueError as e:
        raise ValueError(f'invalid key {v!r}: {e}')
    return v


def coerce_value(kind: ValueKind, value: Any) -> Any:
    """JSON carries BINARY data as a hex string."""
    if kind == ValueKind.BINARY and isinstance(value, str):
        return bytes.fromhex(value)
    return value


class StepSpec(BaseModel):
    type: str = 'set'
    key: Optional[str] = None
    name: Optional[str] = None
    kind: str = 'DWORD'
    value: Any = None
    services: List[str] = []
    action: Optional[str] = None
    restore_start_type: str = 'demand'
    flag: Optional[str] = None
    guard: Optional[str] = None
    fatal: bool = False
    skip_backup: bool = False
    reboot_reason: Optional[str] = None
    description: str = ''

    @field_validator('type')
    @classmethod
    def type_must_be_valid(cls, v):
        if v not in STEP_TYPES:
            raise ValueError(f'type must be one of: {STEP_TYPES}')
        return v

    @field_validator('key')
    @classmethod
    def key_must_parse(cls, v):
        if v is None:
            return v
        return _check_key(v)

    @field_validator('kind')
    @classmethod
    def kind_must_be_valid(cls, v):
        v = v.upper()
        if v not in [k.value for k in ValueKind]:
            raise ValueError(f'kind must be one of: {[k.value for k in ValueKind]}')
        return v

    @field_validator('value')
    @classmethod
    def value_must_match_kind(cls, v, info: ValidationInfo):
        kind = info.data.get('kind')
        if v is None or kind is None or info.data.get('type') != 'set':
            return v
        try:
            validate_value(ValueKind(kind), coerce_value(ValueKind(kind), v))
        except ValueError as e:
            raise ValueError(str(e))
        return v

    @field_validator('action')
    @classmethod
    def action_must_be_valid(cls, v):
        if v is not None and v not in SERVICE_ACTIONS:
            raise ValueError(f'action must be one of: {SERVICE_ACTIONS}')
        return v

    @field_validator('restore_start_type')
    @classmethod
    def start_type_must_be_valid(cls, v):
        if v not in START_TYPES:
            raise ValueError(f'restore_start_type must be one of: {START_TYPES}')
        return v


class TierSpec(BaseModel):
    name: str
    enabled: bool = False
    risk: str = 'safe'
    description: str = ''
    steps: List[StepSpec] = []

    @field_validator('name')
    @classmethod
    def name_must_not_be_empty(cls, v):
        if not v.strip():
            raise ValueError('tier name cannot be empty')
        return v

    @field_validator('risk')
    @classmethod
    def risk_must_be_valid(cls, v):
        v = v.lower()
        if v not in RISKS:
            raise ValueError(f'risk must be one of: {RISKS}')
        return v


class ServiceRestoreSpec(BaseModel):
    services: List[str]
    start_type: str = 'demand'

    @field_validator('start_type')
    @classmethod
    def start_type_must_be_valid(cls, v):
        if v not in START_TYPES:
            raise ValueError(f'start_type must be one of: {START_TYPES}')
        return v


class ModuleSpec(BaseModel):
    name: str
    keys: List[str] = []
    services: List[ServiceRestoreSpec] = []
    boot_flags: List[str] = []

    @field_validator('keys')
    @classmethod
    def keys_must_parse(cls, v):
        return [_check_key(k) for k in v]


class LoadoutSpec(BaseModel):
    name: str = 'loadout'
    tiers: List[TierSpec] = []
    modules: List[ModuleSpec] = []

    @field_validator('tiers')
    @classmethod
    def tier_names_must_be_unique(cls, v):
        names = [t.name.lower() for t in v]
        if len(names) != len(set(names)):
            raise ValueError('tier names must be unique')
        return v


class ApplyRequest(BaseModel):
    loadout: LoadoutSpec
    enable: Optional[List[str]] = None
    dry_run: bool = False
    guards: Dict[str, bool] = {}


class UndoRequest(BaseModel):
    keys: List[str] = []
    loadout: Optional[LoadoutSpec] = None
    modules: Optional[List[str]] = None

    @field_validator('keys')
    @classmethod
    def keys_must_parse(cls, v):
        return [_check_key(k) for k in v]


class VerifyRequest(BaseModel):
    loadout: LoadoutSpec
    enable: Optional[List[str]] = None
    guards: Dict[str, bool] = {}


class HealthResponse(BaseModel):
    status: str
    version: str
    store_backend: str
    store_health: bool
    value_count: Optional[int] = None
    backup_dir: str
    backup_count: int
    config_issues: List[str]


class BackupInfo(BaseModel):
    key: str
    captured_at: datetime
    artifact: str


class BackupListResponse(BaseModel):
    backups: List[BackupInfo]


class ReportResponse(BaseModel):
    report: Dict[str, Any]


