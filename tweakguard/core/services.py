"""
Service and boot-flag controllers - side effects that are not registry keys.

Both drive the system tools (sc.exe, bcdedit) through run_command and judge
success by exit status. Step builders wrap them as ActionSteps for a tier;
the matching compensating actions put them back during Undo.
"""

from enum import Enum
from typing import Iterable, List, Optional, Union

from .commands import CommandResult, run_command
from .rollback import CompensatingAction
from .tiers import ActionStep, Guard
from ..util.logging import StructuredLogger


class StartType(str, Enum):
    """sc.exe `start=` values."""
    BOOT = "boot"
    SYSTEM = "system"
    AUTO = "auto"
    DELAYED_AUTO = "delayed-auto"
    MANUAL = "demand"
    DISABLED = "disabled"


class ServiceAction(str, Enum):
    STOP = "stop"
    DISABLE = "disable"
    MANUAL = "manual"
    STOP_AND_DISABLE = "stop-and-disable"


# sc.exe exit codes that mean the requested state already holds
SERVICE_NOT_ACTIVE = 1062
SERVICE_ALREADY_RUNNING = 1056


class ServiceController:
    def __init__(self, logger: StructuredLogger, timeout: float = 60):
        self.logger = logger
        self.timeout = timeout

    def set_start_type(self, service: str, start_type: Union[StartType, str]) -> CommandResult:
        start_type = StartType(start_type)
        # sc.exe requires the space after "start="
        return self._sc(["config", service, "start=", start_type.value])

    def stop(self, service: str) -> CommandResult:
        result = self._sc(["stop", service])
        if result.returncode == SERVICE_NOT_ACTIVE:
            self.logger.debug(f"Service {service} was not running")
            result.returncode = 0
        return result

    def start(self, service: str) -> CommandResult:
        result = self._sc(["start", service])
        if result.returncode == SERVICE_ALREADY_RUNNING:
            self.logger.debug(f"Service {service} already running")
            result.returncode = 0
        return result

    def apply(self, services: Iterable[str], action: Union[ServiceAction, str]) -> bool:
        """Apply one action to every service. Returns True only if all succeeded.

        Every service is attempted even after a failure.
        """
        action = ServiceAction(action)
        ok = True
        for service in services:
            if action in (ServiceAction.STOP, ServiceAction.STOP_AND_DISABLE):
                ok = bool(self.stop(service)) and ok
            if action in (ServiceAction.DISABLE, ServiceAction.STOP_AND_DISABLE):
                ok = bool(self.set_start_type(service, StartType.DISABLED)) and ok
            elif action == ServiceAction.MANUAL:
                ok = bool(self.set_start_type(service, StartType.MANUAL)) and ok
        return ok

    def _sc(self, args: List[str]) -> CommandResult:
        return run_command(["sc"] + args, self.timeout, self.logger)


class BootConfig:
    """bcdedit flags on the current boot entry."""

    def __init__(self, logger: StructuredLogger, timeout: float = 60):
        self.logger = logger
        self.timeout = timeout

    def set_flag(self, name: str, value: str) -> CommandResult:
        return run_command(["bcdedit", "/set", name, str(value)], self.timeout, self.logger)

    def delete_flag(self, name: str) -> CommandResult:
        return run_command(["bcdedit", "/deletevalue", name], self.timeout, self.logger)


def _as_list(services: Union[str, Iterable[str]]) -> List[str]:
    return [services] if isinstance(services, str) else list(services)


def service_step(controller: ServiceController, services: Union[str, Iterable[str]],
                 action: Union[ServiceAction, str], guard: Guard = None, fatal: bool = False,
                 reboot_reason: Optional[str] = None, description: str = "") -> ActionStep:
    names = _as_list(services)
    action = ServiceAction(action)
    return ActionStep(
        name=f"service {action.value} {','.join(names)}",
        action=lambda: controller.apply(names, action),
        guard=guard,
        fatal=fatal,
        reboot_reason=reboot_reason,
        description=description,
    )


def boot_flag_step(boot: BootConfig, name: str, value: str, guard: Guard = None, fatal: bool = False,
                   reboot_reason: Optional[str] = "Boot configuration changed",
                   description: str = "") -> ActionStep:
    return ActionStep(
        name=f"bcdedit {name}={value}",
        action=lambda: boot.set_flag(name, value),
        guard=guard,
        fatal=fatal,
        reboot_reason=reboot_reason,
        description=description,
    )


def restore_service(controller: ServiceController, services: Union[str, Iterable[str]],
                    start_type: Union[StartType, str] = StartType.MANUAL) -> CompensatingAction:
    """Undo for a service step: put the start type back."""
    names = _as_list(services)
    start_type = StartType(start_type)

    def action():
        ok = True
        for service in names:
            ok = bool(controller.set_start_type(service, start_type)) and ok
        return ok

    return CompensatingAction(f"restore service {','.join(names)} start={start_type.value}", action)


def delete_boot_flag(boot: BootConfig, name: str) -> CompensatingAction:
    """Undo for a boot flag step: remove the flag so the default applies."""
    return CompensatingAction(f"bcdedit delete {name}", lambda: boot.delete_flag(name))
