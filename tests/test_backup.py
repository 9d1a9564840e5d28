"""
Tests for subtree capture and restore, artifact naming, encryption and the
reg.exe exporter.
"""

import json
import os

import pytest
from unittest.mock import patch

from tweakguard.core.backup import (
    ARTIFACT_FORMAT,
    BackupError,
    ConfigBackupStore,
    RegExeExporter,
    RestoreError,
    StoreExporter,
    _calculate_checksum,
    _decrypt_data,
    _encrypt_data,
)
from tweakguard.core.commands import CommandResult
from tweakguard.core.schema import BackupHandle, ConfigKey, ConfigValue, ErrorKind, ValueKind


def dword(n):
    return ConfigValue(ValueKind.DWORD, n)


class TestCrypto:
    """Artifact encryption helpers."""

    def test_checksum_calculation(self):
        expected = "916f0027a575074ce72a331777c3478d6513f786a591bd892da1a577bf2335f9"
        assert _calculate_checksum(b"test data") == expected

    def test_encryption_round_trip(self):
        key = os.urandom(32)
        encrypted = _encrypt_data(b"payload", key)
        assert encrypted != b"payload"
        assert _decrypt_data(encrypted, key) == b"payload"

    def test_wrong_key_fails(self):
        encrypted = _encrypt_data(b"payload", os.urandom(32))
        with pytest.raises(RestoreError):
            _decrypt_data(encrypted, os.urandom(32))


class TestCapture:
    """Capturing key subtrees."""

    def test_scenario_capture_then_restore(self, store, backups):
        """Value X=1, capture, write 2, restore gives 1 again."""
        key = ConfigKey.parse(r"HKLM\A\B")
        store.set(key, "X", dword(1))

        captured = backups.capture(key)
        assert captured
        store.set(key, "X", dword(2))
        assert store.get(key, "X").data == 2

        assert backups.restore(captured.handle)
        assert store.get(key, "X").data == 1

    def test_capture_missing_key_creates_nothing(self, store, backups, backup_dir, mock_logger):
        backups.logger = mock_logger
        key = ConfigKey.parse(r"HKLM\C\D")

        result = backups.capture(key)

        assert not result
        assert result.error == ErrorKind.NOT_FOUND
        assert not store.exists(key)
        assert not backup_dir.exists() or list(backup_dir.iterdir()) == []
        mock_logger.log_backup.assert_called_once()
        assert mock_logger.log_backup.call_args[0][1] == "not_found"

    def test_artifact_name_and_contents(self, store, backups, key):
        store.set(key, "X", dword(1))
        handle = backups.capture(key).handle

        stamp, _, rest = handle.path.name.partition("-")
        assert len(stamp) == len("20250101T120000000000Z")
        assert rest == f"{key.sanitized()}-{key.digest()}.json"

        with open(handle.path, "r", encoding="utf-8") as f:
            envelope = json.load(f)
        assert envelope["format"] == ARTIFACT_FORMAT
        assert ConfigKey.parse(envelope["key"]) == key
        assert envelope["encrypted"] is False
        assert envelope["payload"]["containers"][""] == {"X": ["DWORD", 1]}

    def test_captures_accumulate(self, store, backups, key):
        store.set(key, "X", dword(1))
        first = backups.capture(key).handle
        second = backups.capture(key).handle

        assert first.path != second.path
        assert second.captured_at > first.captured_at
        assert first.path.exists()
        assert len(backups.list_backups(key)) == 2

    def test_export_failure_removes_reserved_file(self, store, backups, backup_dir, key):
        store.set(key, "X", dword(1))
        with patch.object(backups.exporter, "export", side_effect=OSError("disk full")):
            result = backups.capture(key)

        assert not result
        assert result.error == ErrorKind.BACKUP_FAILED
        assert list(backup_dir.iterdir()) == []

    def test_capture_leaves_only_the_artifact(self, store, backups, backup_dir, key):
        store.set(key, "X", dword(1))
        handle = backups.capture(key).handle

        assert list(backup_dir.iterdir()) == [handle.path]

    def test_failed_write_leaves_no_partial_file(self, store, backups, backup_dir, key):
        store.set(key, "X", dword(1))
        with patch("tweakguard.core.backup.json.dump", side_effect=OSError("disk full")):
            result = backups.capture(key)

        assert not result
        assert list(backup_dir.iterdir()) == []

    def test_unreadable_artifact_skipped_with_warning(self, store, backup_dir, mock_logger, key):
        backups = ConfigBackupStore(store, backup_dir, mock_logger)
        store.set(key, "X", dword(1))
        good = backups.capture(key).handle
        broken = backups.capture(key).handle
        broken.path.write_text('{"format": "tweakguard.bac', encoding="utf-8")

        assert [h.path for h in backups.list_backups(key)] == [good.path]
        mock_logger.warning.assert_called_once_with(f"Skipping unreadable backup artifact {broken.path.name}")

    def test_retention_prunes_oldest(self, store, backup_dir, logger, key):
        backups = ConfigBackupStore(store, backup_dir, logger, retention=2)
        store.set(key, "X", dword(1))
        handles = [backups.capture(key).handle for _ in range(3)]

        remaining = backups.list_backups(key)
        assert [h.path for h in remaining] == [h.path for h in handles[1:]]

    def test_prune_requires_positive_keep(self, backups, key):
        with pytest.raises(ValueError):
            backups.prune(key, 0)

    def test_two_stores_never_share_an_artifact(self, store, backup_dir, logger, key):
        store.set(key, "X", dword(1))
        a = ConfigBackupStore(store, backup_dir, logger)
        b = ConfigBackupStore(store, backup_dir, logger)

        paths = {a.capture(key).handle.path, b.capture(key).handle.path, a.capture(key).handle.path}

        assert len(paths) == 3
        assert len(a.list_backups(key)) == 3


class TestRestore:
    """Restoring captured snapshots."""

    def test_restore_latest_uses_newest_capture(self, store, backups, key):
        """Captures at T1 then T2: the T2 snapshot wins."""
        store.set(key, "X", dword(1))
        backups.capture(key)
        store.set(key, "X", dword(2))
        backups.capture(key)
        store.set(key, "X", dword(3))

        assert backups.restore_latest(key)
        assert store.get(key, "X").data == 2

    def test_restore_latest_without_backup(self, backups, key):
        result = backups.restore_latest(key)
        assert not result
        assert result.error == ErrorKind.NO_BACKUP_FOUND

    def test_restore_is_idempotent(self, store, backups, key):
        store.set(key, "X", dword(1))
        store.set(key.child("Sub"), "Y", dword(2))
        handle = backups.capture(key).handle
        store.set(key, "X", dword(5))
        store.set(key, "Extra", dword(7))

        assert backups.restore(handle)
        once = store.export_subtree(key)
        assert backups.restore(handle)

        assert store.export_subtree(key) == once
        assert store.get(key, "Extra") is None

    @pytest.mark.parametrize("kind,original", [
        (ValueKind.DWORD, 7),
        (ValueKind.STRING, "before"),
        (ValueKind.MULTI_STRING, ["a", "b"]),
        (ValueKind.BINARY, b"\x01\x02"),
    ])
    def test_round_trip_restores_original_value(self, store, backups, key, kind, original):
        store.set(key, "X", ConfigValue(kind, original))
        handle = backups.capture(key).handle
        store.set(key, "X", dword(2))

        backups.restore(handle)

        assert store.get(key, "X") == ConfigValue(kind, original)

    def test_restore_missing_artifact(self, backups, key, tmp_path):
        handle = BackupHandle(key, None, tmp_path / "gone.json")
        result = backups.restore(handle)
        assert not result
        assert result.error == ErrorKind.NOT_FOUND

    def test_tampered_artifact_is_rejected(self, store, backups, key):
        store.set(key, "X", dword(1))
        handle = backups.capture(key).handle

        with open(handle.path, "r", encoding="utf-8") as f:
            envelope = json.load(f)
        envelope["payload"]["containers"][""]["X"] = ["DWORD", 99]
        with open(handle.path, "w", encoding="utf-8") as f:
            json.dump(envelope, f)

        result = backups.restore(handle)
        assert not result
        assert result.error == ErrorKind.STORE_REJECTED
        assert "checksum" in result.message.lower()
        assert store.get(key, "X").data == 1

    def test_artifact_without_payload_is_rejected(self, store, backups, key):
        store.set(key, "X", dword(1))
        handle = backups.capture(key).handle
        with open(handle.path, "r", encoding="utf-8") as f:
            envelope = json.load(f)
        del envelope["payload"]
        with open(handle.path, "w", encoding="utf-8") as f:
            json.dump(envelope, f)

        result = backups.restore_latest(key)

        assert not result
        assert result.error == ErrorKind.STORE_REJECTED
        assert "Malformed" in result.message

    @pytest.mark.parametrize("content", ["[]", '"text"', "\xff\xfe"])
    def test_non_object_artifact_is_rejected(self, store, backups, key, content):
        store.set(key, "X", dword(1))
        handle = backups.capture(key).handle
        handle.path.write_text(content, encoding="latin-1")

        result = backups.restore(handle)

        assert not result
        assert result.error == ErrorKind.STORE_REJECTED

    def test_bad_value_in_payload_writes_nothing(self, store, backups, key):
        store.set(key, "X", dword(1))
        store.set(key.child("Sub"), "Y", dword(2))
        handle = backups.capture(key).handle
        store.set(key, "X", dword(5))

        with open(handle.path, "r", encoding="utf-8") as f:
            envelope = json.load(f)
        envelope["payload"]["containers"]["Sub"]["Y"] = ["FLOAT", 1.5]
        envelope["checksum"] = _calculate_checksum(
            json.dumps(envelope["payload"], sort_keys=True).encode("utf-8"))
        with open(handle.path, "w", encoding="utf-8") as f:
            json.dump(envelope, f)

        result = backups.restore(handle)

        assert not result
        assert result.error == ErrorKind.STORE_REJECTED
        assert store.get(key, "X").data == 5

    def test_list_backups_filters_by_key(self, store, backups, key):
        other = ConfigKey.parse(r"HKCU\Other")
        store.set(key, "X", dword(1))
        store.set(other, "Y", dword(1))
        backups.capture(key)
        backups.capture(other)

        assert [h.key for h in backups.list_backups(key)] == [key]
        assert len(backups.list_backups()) == 2


class TestEncryptedArtifacts:
    """AES-256-GCM protected artifacts."""

    def test_encrypted_round_trip(self, store, backup_dir, logger, key):
        exporter = StoreExporter(store, encrypt=True, passphrase="correct horse")
        backups = ConfigBackupStore(store, backup_dir, logger, exporter=exporter)
        store.set(key, "X", ConfigValue(ValueKind.STRING, "secret"))

        handle = backups.capture(key).handle
        with open(handle.path, "r", encoding="utf-8") as f:
            envelope = json.load(f)
        assert envelope["encrypted"] is True
        assert isinstance(envelope["payload"], str)
        assert "secret" not in handle.path.read_text(encoding="utf-8")

        store.set(key, "X", ConfigValue(ValueKind.STRING, "changed"))
        assert backups.restore(handle)
        assert store.get(key, "X").data == "secret"

    def test_wrong_passphrase_fails_restore(self, store, backup_dir, logger, key):
        writer = ConfigBackupStore(store, backup_dir, logger,
                                   exporter=StoreExporter(store, encrypt=True, passphrase="one"))
        store.set(key, "X", dword(1))
        handle = writer.capture(key).handle

        reader = ConfigBackupStore(store, backup_dir, logger,
                                   exporter=StoreExporter(store, encrypt=True, passphrase="two"))
        result = reader.restore(handle)

        assert not result
        assert result.error == ErrorKind.STORE_REJECTED

    @pytest.mark.parametrize("field,value", [
        ("salt", None),
        ("salt", "not hex"),
        ("payload", "***"),
        ("payload", None),
    ])
    def test_damaged_encrypted_envelope_is_rejected(self, store, backup_dir, logger, key, field, value):
        backups = ConfigBackupStore(store, backup_dir, logger,
                                    exporter=StoreExporter(store, encrypt=True, passphrase="pw"))
        store.set(key, "X", dword(1))
        handle = backups.capture(key).handle
        with open(handle.path, "r", encoding="utf-8") as f:
            envelope = json.load(f)
        envelope[field] = value
        with open(handle.path, "w", encoding="utf-8") as f:
            json.dump(envelope, f)

        result = backups.restore_latest(key)

        assert not result
        assert result.error == ErrorKind.STORE_REJECTED

    def test_encryption_requires_passphrase(self, store):
        with pytest.raises(BackupError):
            StoreExporter(store, encrypt=True)


def _reg_export_writes_file(command, timeout, logger):
    """Stand-in for reg.exe: writes a .reg file and chatters on stderr."""
    if command[1] == "export":
        with open(command[3], "w", encoding="utf-16") as f:
            f.write("Windows Registry Editor Version 5.00\n\n")
            f.write(f"[{command[2]}]\n\"X\"=dword:00000001\n")
    return CommandResult(command, 0, "", "The operation completed successfully.\r\n")


class TestRegExeExporter:
    """reg export / reg import, judged by exit status."""

    @patch("tweakguard.core.backup.run_command", side_effect=_reg_export_writes_file)
    def test_success_despite_stderr_text(self, mock_run, store, backup_dir, logger, key):
        store.set(key, "X", dword(1))
        backups = ConfigBackupStore(store, backup_dir, logger, exporter=RegExeExporter(logger))

        result = backups.capture(key)

        assert result
        assert result.handle.path.suffix == ".reg"
        export_cmd = mock_run.call_args[0][0]
        assert export_cmd[:3] == ["reg", "export", str(key)]
        assert export_cmd[-1] == "/y"
        assert backups.latest(key) == result.handle

    @patch("tweakguard.core.backup.run_command", side_effect=_reg_export_writes_file)
    def test_restore_runs_reg_import(self, mock_run, store, backup_dir, logger, key):
        store.set(key, "X", dword(1))
        backups = ConfigBackupStore(store, backup_dir, logger, exporter=RegExeExporter(logger))
        handle = backups.capture(key).handle

        assert backups.restore_latest(key)
        assert mock_run.call_args[0][0] == ["reg", "import", str(handle.path)]

    @patch("tweakguard.core.backup.run_command")
    def test_nonzero_exit_is_failure(self, mock_run, store, backup_dir, logger, key):
        mock_run.return_value = CommandResult(["reg"], 1, "", "ERROR: The system was unable to find the specified registry key")
        store.set(key, "X", dword(1))
        backups = ConfigBackupStore(store, backup_dir, logger, exporter=RegExeExporter(logger))

        result = backups.capture(key)

        assert not result
        assert result.error == ErrorKind.BACKUP_FAILED
        assert "unable to find" in result.message
        assert list(backup_dir.iterdir()) == []

    @patch("tweakguard.core.backup.run_command")
    def test_timeout_is_failure(self, mock_run, store, backup_dir, logger, key):
        mock_run.return_value = CommandResult(["reg"], None, timed_out=True)
        store.set(key, "X", dword(1))
        backups = ConfigBackupStore(store, backup_dir, logger, exporter=RegExeExporter(logger, timeout=1))

        result = backups.capture(key)

        assert not result
        assert result.error == ErrorKind.BACKUP_FAILED

    def test_json_artifact_not_restorable_by_reg_exporter(self, store, backups, backup_dir, logger, key):
        store.set(key, "X", dword(1))
        handle = backups.capture(key).handle

        reg_backups = ConfigBackupStore(store, backup_dir, logger, exporter=RegExeExporter(logger))
        result = reg_backups.restore(handle)

        assert not result
        assert result.error == ErrorKind.STORE_REJECTED
