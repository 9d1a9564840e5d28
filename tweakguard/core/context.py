"""
EngineContext - the explicit bundle of collaborators every engine component
receives: store, backups, logger, backup policy and cancellation signal.
"""

import os
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Union

from . import config
from .backup import ConfigBackupStore, RegExeExporter, StoreExporter
from .dao import SqliteKeyValueStore
from .mutator import BackupPolicy, ConfigMutator
from .orchestrator import TierOrchestrator
from .rollback import RollbackCoordinator
from .schema import TweakGuardError
from .services import BootConfig, ServiceController
from .store import KeyValueStore
from ..util.logging import StructuredLogger, get_logger


@dataclass
class EngineContext:
    store: KeyValueStore
    backups: ConfigBackupStore
    logger: StructuredLogger
    policy: BackupPolicy = BackupPolicy.BEST_EFFORT
    cancel_event: threading.Event = field(default_factory=threading.Event)
    command_timeout: float = 60

    def mutator(self) -> ConfigMutator:
        return ConfigMutator(self.store, self.backups, self.logger, self.policy)

    def orchestrator(self, dry_run: bool = False) -> TierOrchestrator:
        return TierOrchestrator(self.mutator(), self.logger, self.cancel_event, dry_run=dry_run)

    def rollback(self) -> RollbackCoordinator:
        return RollbackCoordinator(self.backups, self.logger)

    def services(self) -> ServiceController:
        return ServiceController(self.logger, self.command_timeout)

    def boot_config(self) -> BootConfig:
        return BootConfig(self.logger, self.command_timeout)


def build_context(backend: Optional[str] = None, db_path: Optional[Union[str, Path]] = None,
                  backup_dir: Optional[Union[str, Path]] = None,
                  policy: Optional[Union[BackupPolicy, str]] = None,
                  logger: Optional[StructuredLogger] = None) -> EngineContext:
    """Assemble an EngineContext from configuration; arguments override it."""
    logger = logger or get_logger(debug=config.debug_enabled())
    backend = backend or config.get_store_backend()

    if backend == "registry":
        if os.name != "nt":
            raise TweakGuardError("The registry backend is only available on Windows")
        # winreg only exists on Windows
        from .registry import RegistryStore
        store: KeyValueStore = RegistryStore(logger)
    elif backend == "sqlite":
        path = str(db_path or config.STORE_DB_PATH)
        if db_path is None:
            config.ensure_db_directory()
        store = SqliteKeyValueStore(path, logger)
    else:
        raise TweakGuardError(f"Unknown store backend: {backend}")

    if config.BACKUP_EXPORTER == "reg":
        exporter = RegExeExporter(logger, timeout=config.EXPORT_TIMEOUT_SEC)
    else:
        exporter = StoreExporter(
            store,
            encrypt=config.BACKUP_ENCRYPTION_ENABLED,
            passphrase=config.get_backup_passphrase(),
        )

    backups = ConfigBackupStore(
        store,
        Path(backup_dir) if backup_dir else config.get_backup_dir(),
        logger,
        exporter=exporter,
        retention=config.BACKUP_RETENTION,
    )

    return EngineContext(
        store=store,
        backups=backups,
        logger=logger,
        policy=BackupPolicy(policy or config.get_backup_policy()),
        command_timeout=config.EXPORT_TIMEOUT_SEC,
    )
