"""
Loadout files - JSON descriptions of tiers and rollback modules, turned into
engine objects.

Guards are referenced by name and resolved against a registry supplied by the
caller (the detection layer); the loadout itself never contains code.
"""

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Union

from pydantic import ValidationError

from .rollback import CompensatingAction, RollbackModule
from .schema import ConfigKey, TweakGuardError, ValueKind
from .services import (
    BootConfig,
    ServiceController,
    boot_flag_step,
    delete_boot_flag,
    restore_service,
    service_step,
)
from .tiers import Guard, Step, Tier, remove_step, set_step
from ..api.schemas import LoadoutSpec, ModuleSpec, StepSpec, TierSpec, coerce_value

GuardRegistry = Mapping[str, Union[bool, Callable[[], bool]]]


class LoadoutError(TweakGuardError):
    """Loadout file is missing, malformed or references unknown guards."""
    pass


@dataclass
class Loadout:
    name: str
    tiers: List[Tier] = field(default_factory=list)
    modules: List[RollbackModule] = field(default_factory=list)

    def tier(self, name: str) -> Optional[Tier]:
        for tier in self.tiers:
            if tier.name.lower() == name.lower():
                return tier
        return None

    def module(self, name: str) -> Optional[RollbackModule]:
        for module in self.modules:
            if module.name.lower() == name.lower():
                return module
        return None

    def enable_only(self, names: Iterable[str]):
        """Enable exactly the named tiers. Unknown names raise LoadoutError."""
        wanted = {n.lower() for n in names}
        unknown = wanted - {t.name.lower() for t in self.tiers}
        if unknown:
            raise LoadoutError(f"Unknown tier(s): {', '.join(sorted(unknown))}")
        for tier in self.tiers:
            tier.enabled = tier.name.lower() in wanted

    def keys(self) -> List[ConfigKey]:
        """Every key touched by any tier, enabled or not."""
        seen: List[ConfigKey] = []
        for tier in self.tiers:
            for key in tier.keys():
                if key not in seen:
                    seen.append(key)
        return seen


def read_spec(source: Union[str, Path, Dict[str, Any], LoadoutSpec]) -> LoadoutSpec:
    if isinstance(source, LoadoutSpec):
        return source

    if isinstance(source, dict):
        raw = source
    else:
        path = Path(source)
        try:
            with open(path, "r", encoding="utf-8") as f:
                raw = json.load(f)
        except FileNotFoundError:
            raise LoadoutError(f"Loadout file not found: {path}")
        except json.JSONDecodeError as e:
            raise LoadoutError(f"Invalid JSON in {path.name}: {e}")

    try:
        return LoadoutSpec.model_validate(raw)
    except ValidationError as e:
        raise LoadoutError(f"Invalid loadout: {e}")


def load_loadout(source: Union[str, Path, Dict[str, Any], LoadoutSpec],
                 guards: Optional[GuardRegistry] = None,
                 services: Optional[ServiceController] = None,
                 boot: Optional[BootConfig] = None, ignore_guards: bool = False) -> Loadout:
    """Build a Loadout from a file path, a parsed dict or a validated spec.

    Service and boot-flag steps need a controller; a loadout that uses them
    without one raises LoadoutError. When the loadout declares no modules,
    one rollback module per tier is derived from its steps. With
    `ignore_guards` guard names are not resolved, for callers that only need
    the rollback modules.
    """
    spec = read_spec(source)
    guards = _AnyGuard() if ignore_guards else (guards or {})

    tiers = [_build_tier(t, guards, services, boot) for t in spec.tiers]
    if spec.modules:
        modules = [_build_module(m, services, boot) for m in spec.modules]
    else:
        modules = [_derive_module(t, ts, services, boot) for t, ts in zip(tiers, spec.tiers)]

    return Loadout(spec.name, tiers, modules)


class _AnyGuard(dict):
    def __contains__(self, name):
        return True

    def __missing__(self, name):
        return None


def _resolve_guard(name: Optional[str], guards: GuardRegistry, where: str) -> Guard:
    if name is None:
        return None
    if name not in guards:
        raise LoadoutError(f"{where}: unknown guard '{name}'")
    return guards[name]


def _build_tier(spec: TierSpec, guards: GuardRegistry, services: Optional[ServiceController],
                boot: Optional[BootConfig]) -> Tier:
    steps = [_build_step(spec.name, i, s, guards, services, boot) for i, s in enumerate(spec.steps)]
    return Tier(spec.name, steps, enabled=spec.enabled, risk=spec.risk, description=spec.description)


def _build_step(tier: str, index: int, spec: StepSpec, guards: GuardRegistry,
                services: Optional[ServiceController], boot: Optional[BootConfig]) -> Step:
    where = f"tier '{tier}' step {index}"
    options = dict(
        guard=_resolve_guard(spec.guard, guards, where),
        fatal=spec.fatal,
        reboot_reason=spec.reboot_reason,
        description=spec.description,
    )

    if spec.type in ("set", "remove"):
        if not spec.key or not spec.name:
            raise LoadoutError(f"{where}: '{spec.type}' needs key and name")
        if spec.type == "remove":
            return remove_step(spec.key, spec.name, skip_backup=spec.skip_backup, **options)
        if spec.value is None:
            raise LoadoutError(f"{where}: 'set' needs a value")
        kind = ValueKind(spec.kind)
        return set_step(spec.key, spec.name, coerce_value(kind, spec.value), kind,
                        skip_backup=spec.skip_backup, **options)

    if spec.type == "service":
        if services is None:
            raise LoadoutError(f"{where}: service steps need a service controller")
        if not spec.services or not spec.action:
            raise LoadoutError(f"{where}: 'service' needs services and action")
        return service_step(services, spec.services, spec.action, **options)

    if boot is None:
        raise LoadoutError(f"{where}: boot flag steps need a boot configuration")
    if not spec.flag or spec.value is None:
        raise LoadoutError(f"{where}: 'boot_flag' needs flag and value")
    if spec.reboot_reason is None:
        options.pop("reboot_reason")
    return boot_flag_step(boot, spec.flag, str(spec.value), **options)


def _build_module(spec: ModuleSpec, services: Optional[ServiceController],
                  boot: Optional[BootConfig]) -> RollbackModule:
    compensating: List[CompensatingAction] = []
    if spec.services:
        if services is None:
            raise LoadoutError(f"module '{spec.name}': service restores need a service controller")
        for restore in spec.services:
            compensating.append(restore_service(services, restore.services, restore.start_type))
    if spec.boot_flags:
        if boot is None:
            raise LoadoutError(f"module '{spec.name}': boot flags need a boot configuration")
        for flag in spec.boot_flags:
            compensating.append(delete_boot_flag(boot, flag))
    return RollbackModule(spec.name, list(spec.keys), compensating)


def _derive_module(tier: Tier, spec: TierSpec, services: Optional[ServiceController],
                   boot: Optional[BootConfig]) -> RollbackModule:
    compensating: List[CompensatingAction] = []
    for step_spec in spec.steps:
        if step_spec.type == "service":
            compensating.append(restore_service(services, step_spec.services, step_spec.restore_start_type))
        elif step_spec.type == "boot_flag":
            compensating.append(delete_boot_flag(boot, step_spec.flag))
    return RollbackModule(tier.name, tier.keys(), compensating)
