"""
Shared fixtures: a throwaway SQLite store, backup directory and engine pieces.
"""

import pytest
from unittest.mock import MagicMock

from tweakguard.core.backup import ConfigBackupStore
from tweakguard.core.context import EngineContext
from tweakguard.core.dao import SqliteKeyValueStore
from tweakguard.core.mutator import ConfigMutator
from tweakguard.core.orchestrator import TierOrchestrator
from tweakguard.core.rollback import RollbackCoordinator
from tweakguard.core.schema import ConfigKey
from tweakguard.util.logging import StructuredLogger


@pytest.fixture
def logger():
    """Real logger under a test-only name."""
    return StructuredLogger("tweakguard.test")


@pytest.fixture
def mock_logger():
    return MagicMock(spec=StructuredLogger)


@pytest.fixture
def store(tmp_path, logger):
    return SqliteKeyValueStore(str(tmp_path / "store.db"), logger)


@pytest.fixture
def backup_dir(tmp_path):
    return tmp_path / "backups"


@pytest.fixture
def backups(store, backup_dir, logger):
    return ConfigBackupStore(store, backup_dir, logger)


@pytest.fixture
def mutator(store, backups, logger):
    return ConfigMutator(store, backups, logger)


@pytest.fixture
def orchestrator(mutator, logger):
    return TierOrchestrator(mutator, logger)


@pytest.fixture
def rollback(backups, logger):
    return RollbackCoordinator(backups, logger)


@pytest.fixture
def context(store, backups, logger):
    return EngineContext(store=store, backups=backups, logger=logger)


@pytest.fixture
def key():
    return ConfigKey.parse(r"HKLM\SOFTWARE\Policies\Example")


