"""
Tests for the HTTP surface: apply, undo, verify, backups and health.
"""

import pytest
from unittest.mock import patch
from fastapi.testclient import TestClient

from tweakguard.api.main import app, get_context, get_guards
from tweakguard.core.commands import CommandResult
from tweakguard.core.schema import ConfigKey

KEY = r"HKCU\Software\ApiTest"


def loadout(**tier_options):
    tier = {
        "name": "Safe",
        "enabled": True,
        "steps": [
            {"key": KEY, "name": "Existing", "value": 5},
            {"key": KEY, "name": "Guarded", "value": 1, "guard": "has_gpu"},
        ],
    }
    tier.update(tier_options)
    return {"name": "test", "tiers": [tier]}


@pytest.fixture
def client(context):
    app.dependency_overrides[get_context] = lambda: context
    app.dependency_overrides[get_guards] = lambda: {"has_gpu": False}
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture
def seeded(context):
    context.mutator().set_value(ConfigKey.parse(KEY), "Existing", 1, skip_backup=True)
    return context


class TestHealth:
    def test_health(self, client, context):
        with patch("tweakguard.api.main.validate_config", return_value=[]):
            response = client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["store_backend"] == "SqliteKeyValueStore"
        assert data["backup_count"] == 0
        assert data["store_health"] is True
        assert data["value_count"] == 0

    def test_degraded_on_config_issues(self, client):
        with patch("tweakguard.api.main.validate_config", return_value=["Invalid BACKUP_POLICY: x"]):
            data = client.get("/health").json()
        assert data["status"] == "degraded"
        assert data["config_issues"] == ["Invalid BACKUP_POLICY: x"]


class TestApply:
    def test_apply_reports_outcomes(self, client, seeded):
        response = client.post("/apply", json={"loadout": loadout()})

        assert response.status_code == 200
        report = response.json()["report"]
        assert report["state"] == "completed"
        assert report["succeeded"] == 1
        assert report["skipped"] == 1
        assert seeded.mutator().get_value(ConfigKey.parse(KEY), "Existing") == 5

    def test_request_guards_override_registry(self, client, seeded):
        response = client.post("/apply", json={"loadout": loadout(), "guards": {"has_gpu": True}})
        assert response.json()["report"]["succeeded"] == 2

    def test_dry_run(self, client, seeded):
        report = client.post("/apply", json={"loadout": loadout(), "dry_run": True}).json()["report"]

        assert report["dry_run"] is True
        assert report["tiers"][0]["planned"] == 1
        assert seeded.mutator().get_value(ConfigKey.parse(KEY), "Existing") == 1

    def test_enable_selects_tiers(self, client, seeded):
        report = client.post("/apply", json={"loadout": loadout(enabled=False), "enable": ["safe"]}).json()["report"]
        assert report["tiers"][0]["status"] == "completed"

    def test_unknown_tier_is_bad_request(self, client):
        response = client.post("/apply", json={"loadout": loadout(), "enable": ["Nope"]})
        assert response.status_code == 400

    def test_invalid_loadout_rejected(self, client):
        bad = loadout()
        bad["tiers"][0]["steps"][0]["value"] = "not a number"
        response = client.post("/apply", json={"loadout": bad})
        assert response.status_code == 422

    @patch("tweakguard.core.services.run_command")
    def test_fatal_failure_returns_conflict(self, mock_run, client, seeded):
        mock_run.return_value = CommandResult(["bcdedit"], 1, "", "The parameter is incorrect.")
        spec = loadout()
        spec["tiers"][0]["steps"].insert(0, {"type": "boot_flag", "flag": "bogus", "value": "1", "fatal": True})

        response = client.post("/apply", json={"loadout": spec})

        assert response.status_code == 409
        detail = response.json()["detail"]
        assert "Fatal step failed" in detail["error"]
        assert detail["report"]["state"] == "aborted"
        assert seeded.mutator().get_value(ConfigKey.parse(KEY), "Existing") == 1


class TestUndo:
    def test_undo_loadout_restores_keys(self, client, seeded):
        client.post("/apply", json={"loadout": loadout()})

        response = client.post("/undo", json={"loadout": loadout()})

        assert response.status_code == 200
        report = response.json()["report"]
        assert report["restored"] == 1
        assert seeded.mutator().get_value(ConfigKey.parse(KEY), "Existing") == 1

    def test_undo_by_key(self, client, seeded):
        client.post("/apply", json={"loadout": loadout()})
        report = client.post("/undo", json={"keys": [KEY]}).json()["report"]
        assert report["success"] is True

    def test_key_without_backup(self, client):
        report = client.post("/undo", json={"keys": [r"HKCU\Software\Never"]}).json()["report"]
        assert report["keys"][0]["outcome"] == "no_backup"

    def test_unknown_module(self, client):
        response = client.post("/undo", json={"loadout": loadout(), "modules": ["Other"]})
        assert response.status_code == 400

    def test_modules_without_loadout(self, client):
        response = client.post("/undo", json={"modules": ["Safe"]})
        assert response.status_code == 400

    def test_nothing_to_undo(self, client):
        assert client.post("/undo", json={}).status_code == 400


class TestVerifyAndBackups:
    def test_verify_after_apply(self, client, seeded):
        client.post("/apply", json={"loadout": loadout()})

        report = client.post("/verify", json={"loadout": loadout()}).json()["report"]

        assert report["success"] is True
        assert report["passed"] == 1
        assert report["skipped"] == 1

    def test_verify_before_apply_fails(self, client, seeded):
        report = client.post("/verify", json={"loadout": loadout()}).json()["report"]
        assert report["failed"] == 1

    def test_list_backups(self, client, seeded):
        client.post("/apply", json={"loadout": loadout()})

        backups = client.get("/backups", params={"key": KEY}).json()["backups"]

        assert len(backups) == 1
        assert backups[0]["key"] == KEY

    def test_invalid_backup_key(self, client):
        assert client.get("/backups", params={"key": "NOPE\\x"}).status_code == 400
