"""Tests for the shipwright command line."""

import json
from datetime import datetime, timezone
from unittest.mock import patch

import pytest
import respx
import yaml
from httpx import Response

from shipwright.cli import (
    deploy_command,
    domain_check_command,
    grant_identity_command,
    plan_command,
    provision_command,
    rollback_command,
    status_command,
    unlock_command,
    up_command,
)
from shipwright.cli.main import build_parser, main
from shipwright.core.errors import ExitCode
from shipwright.providers.base import HostnameAnalysis, ProviderHealth
from shipwright.providers.lock import LOCK_TAG, LockHolder

CLI_MODULES = ["provision", "identity", "deploy", "rollback", "status", "up", "domain", "lock"]
V2_IMAGE = "crmacr.fake.io/twentycrm:v2"


@pytest.fixture
def cli_provider(monkeypatch, provider):
    """Every command talks to the in-memory control plane."""
    for module in CLI_MODULES:
        monkeypatch.setattr(f"shipwright.cli.{module}.open_provider", lambda manifest, settings=None: provider)
    return provider


@pytest.fixture
def app_secret(monkeypatch):
    monkeypatch.setenv("SHIPWRIGHT_APP_SECRET", "s3cret")


def _json(capsys):
    return json.loads(capsys.readouterr().out)


def _live_lock(run_id="other-run"):
    return LockHolder(run_id, datetime.now(timezone.utc)).encode()


class TestParser:
    def test_deploy_arguments(self):
        args = build_parser().parse_args(
            ["deploy", "-f", "crm.yaml", "--image", "twentycrm:v2", "--env", "SERVER_URL=https://crm", "--output", "json"]
        )

        assert args.command == "deploy"
        assert args.manifest == "crm.yaml"
        assert args.image == "twentycrm:v2"
        assert args.env_pairs == ["SERVER_URL=https://crm"]
        assert args.output == "json"
        assert args.log_level == "WARNING"

    def test_manifest_defaults(self):
        args = build_parser().parse_args(["status"])

        assert args.manifest == "shipwright.yaml"
        assert args.output == "text"

    def test_rollback_target_is_exclusive(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args(["rollback", "--revision", "a", "--image", "b"])

    def test_domain_check_takes_hostname(self):
        args = build_parser().parse_args(["domain-check", "crm.example.com"])

        assert args.hostname == "crm.example.com"

    def test_no_command_prints_help(self, capsys):
        with pytest.raises(SystemExit) as exc_info:
            main([])

        assert exc_info.value.code == 2
        assert "provision" in capsys.readouterr().out

    def test_main_exits_with_command_code(self, tmp_path):
        with pytest.raises(SystemExit) as exc_info:
            main(["plan", "-f", str(tmp_path / "missing.yaml")])

        assert exc_info.value.code == ExitCode.CONFIG_ERROR


class TestPlanAndProvision:
    def test_plan_changes_nothing(self, cli_provider, manifest_file, capsys):
        code = plan_command(str(manifest_file), output_format="json")

        payload = _json(capsys)
        assert code == ExitCode.SUCCESS
        assert payload["dry_run"] is True
        assert payload["summary"]["create"] == 5
        assert payload["order"][-1] == "crm-app"
        assert cli_provider.mutations == []

    def test_provision_creates_in_order_and_releases_lock(self, cli_provider, manifest_file, capsys):
        code = provision_command(str(manifest_file))

        assert code == ExitCode.SUCCESS
        assert cli_provider.scope_ensured
        assert [name for _, name in cli_provider.mutations][-1] == "crm-app"
        assert LOCK_TAG not in cli_provider.tags
        assert "5 created" in capsys.readouterr().out

    def test_provision_refused_while_another_run_holds_lock(self, cli_provider, manifest_file):
        cli_provider.tags[LOCK_TAG] = _live_lock()

        code = provision_command(str(manifest_file))

        assert code == ExitCode.CONCURRENT_RUN
        assert cli_provider.mutations == []

    def test_cyclic_manifest(self, cli_provider, manifest_data, tmp_path):
        manifest_data["resources"][0]["depends_on"] = ["crm-app"]
        path = tmp_path / "cycle.yaml"
        path.write_text(yaml.safe_dump(manifest_data))

        assert plan_command(str(path)) == ExitCode.VALIDATION_ERROR
        assert cli_provider.calls == []

    def test_failed_resource_stops_provisioning(self, cli_provider, manifest_file):
        cli_provider.fail_on.add("crm-db")

        code = provision_command(str(manifest_file))

        assert code == ExitCode.PROVISIONING_ERROR
        assert ("create", "crm-app") not in cli_provider.mutations


class TestIdentity:
    def test_grants_every_declared_role(self, cli_provider, manifest_file, capsys):
        cli_provider.principals["crm-app"] = "p-1"

        code = grant_identity_command(str(manifest_file), output_format="json")

        payload = _json(capsys)
        assert code == ExitCode.SUCCESS
        assert payload["app"] == "crm-app"
        assert {(g["scope"], g["role"]) for g in payload["granted"]} == {
            ("/fake/registry/crmacr", "AcrPull"),
            ("/fake/database/crm-db", "Contributor"),
        }

    def test_missing_app_is_identity_error(self, cli_provider, manifest_file):
        assert grant_identity_command(str(manifest_file)) == ExitCode.IDENTITY_ERROR


class TestDeploy:
    def test_missing_required_env_fails_before_any_call(self, cli_provider, manifest_file, app_secret):
        code = deploy_command(str(manifest_file), "twentycrm:v2")

        assert code == ExitCode.CONFIG_ERROR
        assert cli_provider.calls == []

    def test_missing_app_secret(self, cli_provider, manifest_file):
        code = deploy_command(str(manifest_file), "twentycrm:v2", ["SERVER_URL=https://crm"])

        assert code == ExitCode.CONFIG_ERROR

    def test_healthy_deploy(self, cli_provider, manifest_file, app_secret, capsys):
        cli_provider.images.add(V2_IMAGE)
        cli_provider.add_revision("crm-app", "crm-app--v1", "crmacr.fake.io/twentycrm:v1", weight=100)

        with respx.mock:
            respx.get("https://crm-app--r1.fake.test/healthz").mock(return_value=Response(200))
            code = deploy_command(
                str(manifest_file), "twentycrm:v2", ["SERVER_URL=https://crm"], output_format="json"
            )

        payload = _json(capsys)
        assert code == ExitCode.SUCCESS
        assert payload["revision"] == "crm-app--r1"
        assert payload["previous_revision"] == "crm-app--v1"
        assert payload["status"] == "healthy"
        assert cli_provider.last_template["secrets"] == {"APP_SECRET": "s3cret"}
        assert cli_provider.weights("crm-app") == {"crm-app--v1": 0, "crm-app--r1": 100}

    def test_unhealthy_deploy_restores_traffic(self, cli_provider, manifest_file, app_secret, monkeypatch, capsys):
        monkeypatch.setenv("SHIPWRIGHT_HEALTH_TIMEOUT_SECONDS", "0")
        cli_provider.images.add(V2_IMAGE)
        cli_provider.add_revision("crm-app", "crm-app--v1", "crmacr.fake.io/twentycrm:v1", weight=100)
        cli_provider.logs = ["Error: connect ECONNREFUSED crm-db:5432"]

        with respx.mock:
            respx.get("https://crm-app--r1.fake.test/healthz").mock(return_value=Response(503))
            code = deploy_command(str(manifest_file), "twentycrm:v2", ["SERVER_URL=https://crm"])

        assert code == ExitCode.HEALTH_ERROR
        assert cli_provider.weights("crm-app")["crm-app--v1"] == 100
        assert ("deactivate", "crm-app--r1") in cli_provider.calls
        assert "ECONNREFUSED" in capsys.readouterr().out

    def test_unknown_image(self, cli_provider, manifest_file, app_secret):
        code = deploy_command(str(manifest_file), "twentycrm:v9", ["SERVER_URL=https://crm"])

        assert code == ExitCode.DEPLOYMENT_ERROR


class TestRollback:
    def test_rolls_back_to_previous_revision(self, cli_provider, manifest_file, capsys):
        cli_provider.add_revision("crm-app", "crm-app--v1", "twentycrm:v1", weight=0, minutes=0)
        cli_provider.add_revision("crm-app", "crm-app--v2", "twentycrm:v2", weight=100, minutes=5)

        code = rollback_command(str(manifest_file), output_format="json")

        payload = _json(capsys)
        assert code == ExitCode.SUCCESS
        assert payload["target"] == "crm-app--v1"
        assert payload["previous"] == "crm-app--v2"
        assert payload["changed"] is True
        assert cli_provider.weights("crm-app") == {"crm-app--v1": 100, "crm-app--v2": 0}

    def test_nothing_to_roll_back_to(self, cli_provider, manifest_file):
        cli_provider.add_revision("crm-app", "crm-app--v1", "twentycrm:v1", weight=100)

        assert rollback_command(str(manifest_file)) == ExitCode.ROLLBACK_ERROR

    def test_rollback_by_image_redeploys(self, cli_provider, manifest_file, app_secret):
        cli_provider.images.add("crmacr.fake.io/twentycrm:v1")
        cli_provider.add_revision("crm-app", "crm-app--v2", "crmacr.fake.io/twentycrm:v2", weight=100)

        with respx.mock:
            respx.get("https://crm-app--r1.fake.test/healthz").mock(return_value=Response(200))
            code = rollback_command(str(manifest_file), image="twentycrm:v1", env_pairs=["SERVER_URL=https://crm"])

        assert code == ExitCode.SUCCESS
        assert cli_provider.last_template["image"] == "crmacr.fake.io/twentycrm:v1"


class TestStatus:
    def test_fresh_environment(self, cli_provider, manifest_file, capsys):
        code = status_command(str(manifest_file), output_format="json")

        payload = _json(capsys)
        assert code == ExitCode.SUCCESS
        assert {r["state"] for r in payload["resources"]} == {"missing"}
        assert payload["revisions"] == []
        assert payload["lock"] is None

    def test_reports_revisions_and_lock(self, cli_provider, manifest_file, capsys):
        provision_command(str(manifest_file))
        capsys.readouterr()
        cli_provider.add_revision("crm-app", "crm-app--v1", "twentycrm:v1", weight=100)
        cli_provider.tags[LOCK_TAG] = _live_lock("run-7")

        status_command(str(manifest_file), output_format="json")

        payload = _json(capsys)
        assert {r["state"] for r in payload["resources"]} == {"in_sync"}
        assert [r["name"] for r in payload["revisions"]] == ["crm-app--v1"]
        assert payload["lock"].startswith("run-7@")

    def test_unreachable_control_plane(self, cli_provider, manifest_file):
        async def unreachable():
            return ProviderHealth(status="unreachable", details="HTTP 403: AuthorizationFailed")

        cli_provider.health_check = unreachable

        assert status_command(str(manifest_file)) == ExitCode.PROVIDER_ERROR


class TestUp:
    def test_full_run(self, cli_provider, manifest_file, app_secret, capsys):
        cli_provider.images.add(V2_IMAGE)

        with respx.mock:
            respx.get("https://crm-app--r1.fake.test/healthz").mock(return_value=Response(200))
            code = up_command(str(manifest_file), "twentycrm:v2", ["SERVER_URL=https://crm"], output_format="json")

        payload = _json(capsys)
        assert code == ExitCode.SUCCESS
        assert payload["state"] == "healthy"
        assert payload["convergence"]["summary"]["create"] == 5
        assert payload["identity"]["granted"] == 2
        assert payload["deployment"]["revision"] == "crm-app--r1"
        assert LOCK_TAG not in cli_provider.tags

    def test_missing_secret_changes_nothing(self, cli_provider, manifest_file):
        code = up_command(str(manifest_file), "twentycrm:v2", ["SERVER_URL=https://crm"])

        assert code == ExitCode.CONFIG_ERROR
        assert cli_provider.calls == []


class TestDomainCheck:
    def _analysis(self, verified):
        return HostnameAnalysis(
            hostname="crm.example.com",
            verified=verified,
            txt_record="asuid.crm.example.com",
            txt_value="ABC123",
            cname_target="crm-app.fake.io",
            failure=None if verified else "TXT record not found",
        )

    def test_unverified_hostname(self, cli_provider, manifest_file, capsys):
        cli_provider.hostnames["crm.example.com"] = self._analysis(False)

        code = domain_check_command(str(manifest_file), "crm.example.com")

        out = capsys.readouterr().out
        assert code == ExitCode.PROVISIONING_ERROR
        assert "asuid.crm.example.com" in out
        assert "ABC123" in out

    def test_verified_hostname(self, cli_provider, manifest_file, capsys):
        cli_provider.hostnames["crm.example.com"] = self._analysis(True)

        code = domain_check_command(str(manifest_file), "crm.example.com", output_format="json")

        payload = _json(capsys)
        assert code == ExitCode.SUCCESS
        assert payload["app"] == "crm-app"
        assert payload["verified"] is True


class TestUnlock:
    def test_force_unlock(self, cli_provider, manifest_file, capsys):
        cli_provider.tags[LOCK_TAG] = _live_lock("run-3")

        code = unlock_command(str(manifest_file), yes=True, output_format="json")

        assert code == ExitCode.SUCCESS
        assert _json(capsys)["released"].startswith("run-3@")
        assert LOCK_TAG not in cli_provider.tags

    def test_declined_confirmation_keeps_lock(self, cli_provider, manifest_file):
        cli_provider.tags[LOCK_TAG] = _live_lock("run-3")

        with patch("shipwright.cli.lock.confirm", return_value=False) as mock_confirm:
            assert unlock_command(str(manifest_file)) == ExitCode.SUCCESS

        mock_confirm.assert_called_once()
        assert LOCK_TAG in cli_provider.tags

    def test_no_lock_held(self, cli_provider, manifest_file, capsys):
        unlock_command(str(manifest_file), yes=True, output_format="json")

        assert _json(capsys) == {"released": None}
