"""
Engine configuration - environment driven, loaded once from .env if present.
"""

import os
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()

# Key/value backend: registry (native Windows) | sqlite (portable)
STORE_BACKEND = os.getenv("STORE_BACKEND", "registry" if os.name == "nt" else "sqlite")
STORE_DB_PATH = os.getenv("STORE_DB_PATH", "./data/store.db")

# Backup artifacts
BACKUP_DIR = os.getenv("BACKUP_DIR", "./data/backups")
BACKUP_EXPORTER = os.getenv("BACKUP_EXPORTER", "native")  # native|reg
BACKUP_POLICY = os.getenv("BACKUP_POLICY", "best_effort")  # best_effort|require
BACKUP_ENCRYPTION_ENABLED = os.getenv("BACKUP_ENCRYPTION_ENABLED", "false").lower() == "true"
BACKUP_RETENTION = int(os.getenv("BACKUP_RETENTION", "0"))  # 0 keeps every record

# External reg.exe / sc.exe / bcdedit calls
EXPORT_TIMEOUT_SEC = int(os.getenv("EXPORT_TIMEOUT_SEC", "60"))

VERSION = "1.0.0"


def debug_enabled():
    """Check if debug mode is enabled."""
    return os.getenv("DEBUG", "false").lower() == "true"


def get_backup_passphrase():
    """Passphrase for encrypted artifacts. Read on demand, never cached."""
    return os.getenv("BACKUP_PASSPHRASE")


def get_store_backend():
    return STORE_BACKEND


def get_backup_dir():
    return Path(BACKUP_DIR)


def get_backup_policy():
    """Get backup policy (best_effort|require)."""
    return BACKUP_POLICY


def ensure_db_directory():
    """Ensure the store database directory exists."""
    Path(STORE_DB_PATH).parent.mkdir(parents=True, exist_ok=True)


def validate_config():
    """Validate engine configuration and return any issues."""
    issues = []

    if STORE_BACKEND not in ["registry", "sqlite"]:
        issues.append(f"Invalid STORE_BACKEND: {STORE_BACKEND}")

    if STORE_BACKEND == "registry" and os.name != "nt":
        issues.append("STORE_BACKEND=registry requires Windows")

    if BACKUP_EXPORTER not in ["native", "reg"]:
        issues.append(f"Invalid BACKUP_EXPORTER: {BACKUP_EXPORTER}")

    if BACKUP_EXPORTER == "reg" and STORE_BACKEND != "registry":
        issues.append("BACKUP_EXPORTER=reg requires STORE_BACKEND=registry")

    if BACKUP_POLICY not in ["best_effort", "require"]:
        issues.append(f"Invalid BACKUP_POLICY: {BACKUP_POLICY}")

    if BACKUP_ENCRYPTION_ENABLED and not get_backup_passphrase():
        issues.append("BACKUP_ENCRYPTION_ENABLED requires BACKUP_PASSPHRASE")

    if BACKUP_ENCRYPTION_ENABLED and BACKUP_EXPORTER == "reg":
        issues.append("Encryption is only supported by the native exporter")

    if BACKUP_RETENTION < 0:
        issues.append("BACKUP_RETENTION must be >= 0")

    if EXPORT_TIMEOUT_SEC < 1:
        issues.append("EXPORT_TIMEOUT_SEC must be >= 1")

    return issues
