"""
Backup store - captures whole key subtrees to timestamped artifacts and
re-imports them on demand.

Artifacts live in one directory and are named
`{timestamp}-{sanitized key}-{key digest}.{ext}`. Every artifact is
self-contained: it carries its own key, capture time and checksum, so it can
be restored by any later process. Records accumulate; nothing is overwritten.
"""

import base64
import hashlib
import json
import os
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from .commands import run_command
from .schema import (
    BackupHandle,
    BackupResult,
    ConfigKey,
    ErrorKind,
    StoreResult,
    TweakGuardError,
)
from .store import KeyValueStore
from ..util.logging import StructuredLogger

ARTIFACT_FORMAT = "tweakguard.backup/1"
TIMESTAMP_FORMAT = "%Y%m%dT%H%M%S%fZ"


class BackupError(TweakGuardError):
    """Custom exception for backup operations."""
    pass


class RestoreError(TweakGuardError):
    """Custom exception for restore operations."""
    pass


def _derive_key(password: str, salt: bytes) -> bytes:
    """Derive encryption key from password using PBKDF2."""
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=32,
        salt=salt,
        iterations=100000,
    )
    return kdf.derive(password.encode())


def _encrypt_data(data: bytes, key: bytes) -> bytes:
    """Encrypt data using AES-256-GCM."""
    nonce = os.urandom(12)
    cipher = Cipher(algorithms.AES(key), modes.GCM(nonce))
    encryptor = cipher.encryptor()

    ciphertext = encryptor.update(data) + encryptor.finalize()

    # Return nonce + tag + ciphertext
    return nonce + encryptor.tag + ciphertext


def _decrypt_data(encrypted_data: bytes, key: bytes) -> bytes:
    """Decrypt data using AES-256-GCM."""
    if len(encrypted_data) < 28:  # nonce (12) + tag (16)
        raise RestoreError("Encrypted data too short")

    nonce = encrypted_data[:12]
    tag = encrypted_data[12:28]
    ciphertext = encrypted_data[28:]

    cipher = Cipher(algorithms.AES(key), modes.GCM(nonce, tag))
    decryptor = cipher.decryptor()
    try:
        return decryptor.update(ciphertext) + decryptor.finalize()
    except InvalidTag:
        raise RestoreError("Decryption failed: wrong passphrase or tampered artifact")


def _calculate_checksum(data: bytes) -> str:
    """Calculate SHA-256 checksum of data."""
    return hashlib.sha256(data).hexdigest()


def _format_timestamp(moment: datetime) -> str:
    return moment.astimezone(timezone.utc).strftime(TIMESTAMP_FORMAT)


def _parse_timestamp(text: str) -> Optional[datetime]:
    try:
        return datetime.strptime(text, TIMESTAMP_FORMAT).replace(tzinfo=timezone.utc)
    except ValueError:
        return None


class Exporter(ABC):
    """Writes one key subtree to an artifact file and reads it back."""

    extension = ""

    @abstractmethod
    def export(self, key: ConfigKey, path: Path, captured_at: datetime) -> StoreResult:
        ...

    @abstractmethod
    def import_(self, path: Path) -> StoreResult:
        ...

    @abstractmethod
    def artifact_key(self, path: Path) -> Optional[ConfigKey]:
        """The key recorded inside an artifact, None if unreadable."""
        ...


class StoreExporter(Exporter):
    """JSON artifacts built from the store's own subtree export.

    Optionally encrypted with AES-256-GCM under a passphrase-derived key; the
    salt travels in the artifact so only the passphrase is needed to restore.
    """

    extension = "json"

    def __init__(self, store: KeyValueStore, encrypt: bool = False, passphrase: Optional[str] = None):
        if encrypt and not passphrase:
            raise BackupError("Encrypted backups require a passphrase")
        self.store = store
        self.encrypt = encrypt
        self.passphrase = passphrase

    def export(self, key: ConfigKey, path: Path, captured_at: datetime) -> StoreResult:
        snapshot = self.store.export_subtree(key)
        if snapshot is None:
            return StoreResult.fail(ErrorKind.NOT_FOUND, f"{key} does not exist")

        payload_bytes = json.dumps(snapshot, sort_keys=True).encode("utf-8")
        envelope: Dict[str, Any] = {
            "format": ARTIFACT_FORMAT,
            "key": str(key),
            "captured_at": captured_at.isoformat(),
            "encrypted": self.encrypt,
            "checksum": _calculate_checksum(payload_bytes),
            "salt": None,
            "payload": snapshot,
        }

        if self.encrypt:
            salt = os.urandom(16)
            encrypted = _encrypt_data(payload_bytes, _derive_key(self.passphrase, salt))
            envelope["salt"] = salt.hex()
            envelope["payload"] = base64.b64encode(encrypted).decode("ascii")

        # Readers never see a half-written artifact
        partial = path.with_name(path.name + ".partial")
        try:
            with open(partial, "w", encoding="utf-8") as f:
                json.dump(envelope, f, indent=2)
            os.replace(partial, path)
        except Exception:
            partial.unlink(missing_ok=True)
            raise

        return StoreResult.ok()

    def read(self, path: Path) -> Tuple[ConfigKey, Dict[str, Any]]:
        """Load and validate an artifact. Raises RestoreError if unusable."""
        try:
            with open(path, "r", encoding="utf-8") as f:
                envelope = json.load(f)
        except FileNotFoundError:
            raise RestoreError(f"Backup artifact not found: {path}")
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise RestoreError(f"Invalid backup artifact {path.name}: {e}")

        if not isinstance(envelope, dict) or envelope.get("format") != ARTIFACT_FORMAT:
            found = envelope.get("format") if isinstance(envelope, dict) else type(envelope).__name__
            raise RestoreError(f"Unsupported backup format in {path.name}: {found}")

        try:
            if envelope.get("encrypted"):
                if not self.passphrase:
                    raise RestoreError(f"{path.name} is encrypted and no passphrase is configured")
                salt = bytes.fromhex(envelope["salt"])
                encrypted = base64.b64decode(envelope["payload"], validate=True)
                payload_bytes = _decrypt_data(encrypted, _derive_key(self.passphrase, salt))
                snapshot = json.loads(payload_bytes.decode("utf-8"))
            else:
                snapshot = envelope["payload"]
                payload_bytes = json.dumps(snapshot, sort_keys=True).encode("utf-8")
            key = ConfigKey.parse(envelope["key"])
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            raise RestoreError(f"Malformed backup artifact {path.name}: {type(e).__name__}: {e}")

        if not isinstance(snapshot, dict):
            raise RestoreError(f"Malformed backup artifact {path.name}: payload is not an object")

        actual_checksum = _calculate_checksum(payload_bytes)
        if actual_checksum != envelope.get("checksum"):
            raise RestoreError(f"Backup checksum mismatch in {path.name}: expected {envelope.get('checksum')}, got {actual_checksum}")

        return key, snapshot

    def import_(self, path: Path) -> StoreResult:
        try:
            key, snapshot = self.read(path)
        except RestoreError as e:
            return StoreResult.fail(ErrorKind.STORE_REJECTED, str(e))
        return self.store.import_subtree(key, snapshot)

    def artifact_key(self, path: Path) -> Optional[ConfigKey]:
        try:
            with open(path, "r", encoding="utf-8") as f:
                return ConfigKey.parse(json.load(f)["key"])
        except (OSError, ValueError, KeyError, TypeError, AttributeError):
            return None


class RegExeExporter(Exporter):
    """`reg export` / `reg import` artifacts (.reg files).

    reg.exe prints "The operation completed successfully." to stderr, so only
    the exit status is checked. `reg import` merges: values created after the
    capture are not removed.
    """

    extension = "reg"

    def __init__(self, logger: StructuredLogger, timeout: float = 60):
        self.logger = logger
        self.timeout = timeout

    def export(self, key: ConfigKey, path: Path, captured_at: datetime) -> StoreResult:
        result = run_command(["reg", "export", str(key), str(path), "/y"], self.timeout, self.logger)
        if not result:
            return StoreResult.fail(result.error, result.message)
        return StoreResult.ok()

    def import_(self, path: Path) -> StoreResult:
        result = run_command(["reg", "import", str(path)], self.timeout, self.logger)
        if not result:
            return StoreResult.fail(result.error, result.message)
        return StoreResult.ok()

    def artifact_key(self, path: Path) -> Optional[ConfigKey]:
        # reg export writes UTF-16 with a BOM; the first [section] is the exported key
        try:
            with open(path, "r", encoding="utf-16") as f:
                for line in f:
                    line = line.strip()
                    if line.startswith("[") and line.endswith("]"):
                        return ConfigKey.parse(line[1:-1])
        except (OSError, UnicodeError, ValueError):
            return None
        return None


class ConfigBackupStore:
    """Timestamped subtree snapshots for ConfigKeys."""

    def __init__(self, store: KeyValueStore, backup_dir: Path, logger: StructuredLogger,
                 exporter: Optional[Exporter] = None, retention: int = 0):
        self.store = store
        self.backup_dir = Path(backup_dir)
        self.logger = logger
        self.exporter = exporter or StoreExporter(store)
        self.retention = retention
        self._last_issued: Optional[datetime] = None

    def capture(self, key: ConfigKey) -> BackupResult:
        """Export the full subtree at key.

        An absent key is not an error: a warning is logged, NOT_FOUND is
        returned and nothing is created, in the store or on disk.
        """
        if not self.store.exists(key):
            message = f"No backup taken, {key} does not exist"
            self.logger.log_backup(str(key), "not_found", {"reason": "key absent"})
            return BackupResult(False, error=ErrorKind.NOT_FOUND, message=message)

        path, captured_at = self._reserve(key)
        try:
            result = self.exporter.export(key, path, captured_at)
        except (OSError, BackupError, ValueError) as e:
            result = StoreResult.fail(ErrorKind.BACKUP_FAILED, str(e))

        if not result:
            path.unlink(missing_ok=True)
            if result.error == ErrorKind.NOT_FOUND:
                # Key vanished between the existence check and the export
                self.logger.log_backup(str(key), "not_found", {"reason": result.message})
                return BackupResult(False, error=ErrorKind.NOT_FOUND, message=result.message)
            self.logger.log_backup(str(key), "failed", {"error": result.message, "cause": result.error.value if result.error else None})
            return BackupResult(False, error=ErrorKind.BACKUP_FAILED, message=result.message)

        handle = BackupHandle(key=key, captured_at=captured_at, path=path)
        self.logger.log_backup(str(key), "success", {"artifact": path.name})

        if self.retention > 0:
            self.prune(key, self.retention)

        return BackupResult(True, handle=handle)

    def restore(self, handle: BackupHandle) -> StoreResult:
        """Re-import a captured subtree in full. Repeating it is harmless."""
        if not handle.path.exists():
            self.logger.log_restore(str(handle.key), "failed", {"error": "artifact missing", "artifact": handle.path.name})
            return StoreResult.fail(ErrorKind.NOT_FOUND, f"Backup artifact missing: {handle.path}")

        if handle.path.suffix != f".{self.exporter.extension}":
            message = f"{handle.path.name} cannot be restored by {type(self.exporter).__name__}"
            self.logger.log_restore(str(handle.key), "failed", {"error": message})
            return StoreResult.fail(ErrorKind.STORE_REJECTED, message)

        try:
            result = self.exporter.import_(handle.path)
        except (OSError, RestoreError) as e:
            result = StoreResult.fail(ErrorKind.STORE_REJECTED, str(e))

        if result:
            self.logger.log_restore(str(handle.key), "success", {"artifact": handle.path.name})
        else:
            self.logger.log_restore(str(handle.key), "failed", {"artifact": handle.path.name, "error": result.message})
        return result

    def restore_latest(self, key: ConfigKey) -> StoreResult:
        """Restore the most recent capture of key, or report NO_BACKUP_FOUND."""
        handle = self.latest(key)
        if handle is None:
            self.logger.log_restore(str(key), "no_backup")
            return StoreResult.fail(ErrorKind.NO_BACKUP_FOUND, f"No backup found for {key}")
        return self.restore(handle)

    def latest(self, key: ConfigKey) -> Optional[BackupHandle]:
        backups = self.list_backups(key)
        return backups[-1] if backups else None

    def list_backups(self, key: Optional[ConfigKey] = None) -> List[BackupHandle]:
        """Backups oldest first, for one key or for every key."""
        if not self.backup_dir.exists():
            return []

        pattern = f"*-{key.digest()}.{self.exporter.extension}" if key else f"*.{self.exporter.extension}"
        handles = []
        for path in self.backup_dir.glob(pattern):
            parsed = self._parse_name(path)
            if parsed is None:
                continue
            captured_at, artifact_key = parsed
            if key is not None and artifact_key != key:
                continue
            handles.append(BackupHandle(key=artifact_key, captured_at=captured_at, path=path))

        handles.sort(key=lambda h: (h.captured_at, h.path.name))
        return handles

    def prune(self, key: ConfigKey, keep: int) -> int:
        """Delete all but the newest `keep` backups of key. Returns count removed."""
        if keep < 1:
            raise ValueError("keep must be >= 1")

        backups = self.list_backups(key)
        stale = backups[:-keep]
        for handle in stale:
            handle.path.unlink(missing_ok=True)
        if stale:
            self.logger.log_operation("backup.prune", "success", {"key": str(key), "removed": len(stale)})
        return len(stale)

    def _reserve(self, key: ConfigKey) -> Tuple[Path, datetime]:
        """Claim a unique artifact name with exclusive create."""
        self.backup_dir.mkdir(parents=True, exist_ok=True)

        captured_at = datetime.now(timezone.utc)
        # Keep capture times strictly increasing within this process
        if self._last_issued is not None and captured_at <= self._last_issued:
            captured_at = self._last_issued + timedelta(microseconds=1)

        while True:
            name = f"{_format_timestamp(captured_at)}-{key.sanitized()}-{key.digest()}.{self.exporter.extension}"
            path = self.backup_dir / name
            try:
                with open(path, "x"):
                    pass
            except FileExistsError:
                captured_at += timedelta(microseconds=1)
                continue
            self._last_issued = captured_at
            return path, captured_at

    def _parse_name(self, path: Path) -> Optional[Tuple[datetime, Optional[ConfigKey]]]:
        stamp, _, _ = path.name.partition("-")
        captured_at = _parse_timestamp(stamp)
        if captured_at is None:
            return None
        try:
            if path.stat().st_size == 0:
                # Reserved by a capture that is still running
                return None
        except OSError:
            return None

        artifact_key = self.exporter.artifact_key(path)
        if artifact_key is None:
            self.logger.warning(f"Skipping unreadable backup artifact {path.name}")
            return None
        return captured_at, artifact_key
