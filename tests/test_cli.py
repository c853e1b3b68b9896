"""Tests for the aumos-iac command-line entry point.

Every invocation runs against a SQLite state file in tmp_path so that
state survives between commands the way it does between CLI processes.
"""

import io
import json
from pathlib import Path

import pytest
import yaml

from aumos_iac_orchestrator.cli import build_parser, main
from aumos_iac_orchestrator.errors import (
    EXIT_FAILURE,
    EXIT_OK,
    EXIT_POLICY_BLOCKED,
    EXIT_STALE_PLAN,
    EXIT_USAGE,
)

OWNER_TAGS = {"owner": "platform"}


def write_manifest(path: Path, public_ip: bool = False) -> Path:
    web_attributes = {"size": "${var.instance_size}", "tags": OWNER_TAGS}
    if public_ip:
        web_attributes["associate_public_ip_address"] = True
    manifest = {
        "environments": {
            "dev": {"variables": {"instance_size": "small"}},
            "prod": {"variables": {"instance_size": "large"}},
        },
        "resources": [
            {"type": "vpc", "name": "main", "attributes": {"cidr_block": "10.0.0.0/16", "tags": OWNER_TAGS}},
            {"type": "instance", "name": "web", "attributes": web_attributes, "depends_on": ["vpc.main"]},
        ],
    }
    path.write_text(yaml.safe_dump(manifest), encoding="utf-8")
    return path


@pytest.fixture()
def backend_url(tmp_path: Path) -> str:
    return f"sqlite+aiosqlite:///{tmp_path / 'state.db'}"


@pytest.fixture()
def manifest_path(tmp_path: Path) -> Path:
    return write_manifest(tmp_path / "infrastructure.yaml")


def run(backend_url: str, *argv: str) -> tuple[int, str]:
    out = io.StringIO()
    code = main(["--state-backend", backend_url, *argv], out=out)
    return code, out.getvalue()


class TestParser:
    def test_missing_command_exits_with_usage(self) -> None:
        with pytest.raises(SystemExit) as exc_info:
            build_parser().parse_args([])
        assert exc_info.value.code == EXIT_USAGE

    def test_missing_environment_exits_with_usage(self) -> None:
        with pytest.raises(SystemExit) as exc_info:
            main(["plan"])
        assert exc_info.value.code == EXIT_USAGE

    def test_unknown_command_exits_with_usage(self) -> None:
        with pytest.raises(SystemExit) as exc_info:
            main(["teardown", "dev"])
        assert exc_info.value.code == EXIT_USAGE


class TestCommands:
    def test_bootstrap_backend(self, backend_url: str) -> None:
        code, output = run(backend_url, "bootstrap-backend")

        assert code == EXIT_OK
        assert "State backend ready" in output

    def test_plan_prints_actions(self, backend_url: str, manifest_path: Path, tmp_path: Path) -> None:
        plan_path = tmp_path / "dev.plan.json"

        code, output = run(backend_url, "plan", "dev", "--manifest", str(manifest_path), "--out", str(plan_path))

        assert code == EXIT_OK
        assert "  + vpc.main (not in state)" in output
        assert "  + instance.web (not in state)" in output
        assert "2 to create, 0 to update, 0 to destroy" in output
        saved = json.loads(plan_path.read_text(encoding="utf-8"))
        assert saved["environment"] == "dev"
        assert saved["base_version"] == 0
        assert [action["address"] for action in saved["actions"]] == ["vpc.main", "instance.web"]

    def test_apply_saved_plan_then_plan_is_clean(
        self, backend_url: str, manifest_path: Path, tmp_path: Path
    ) -> None:
        plan_path = tmp_path / "dev.plan.json"
        run(backend_url, "plan", "dev", "--manifest", str(manifest_path), "--out", str(plan_path))

        code, output = run(backend_url, "apply", "dev", "--manifest", str(manifest_path), "--plan", str(plan_path))
        assert code == EXIT_OK
        assert "Apply complete: 2 action(s), state version 2" in output

        code, output = run(backend_url, "plan", "dev", "--manifest", str(manifest_path))
        assert code == EXIT_OK
        assert "No changes." in output

    def test_stale_saved_plan_exits_3(self, backend_url: str, manifest_path: Path, tmp_path: Path) -> None:
        plan_path = tmp_path / "dev.plan.json"
        run(backend_url, "plan", "dev", "--manifest", str(manifest_path), "--out", str(plan_path))
        assert run(backend_url, "apply", "dev", "--manifest", str(manifest_path))[0] == EXIT_OK

        code, _ = run(backend_url, "apply", "dev", "--manifest", str(manifest_path), "--plan", str(plan_path))

        assert code == EXIT_STALE_PLAN

    def test_environments_are_isolated(self, backend_url: str, manifest_path: Path) -> None:
        assert run(backend_url, "apply", "dev", "--manifest", str(manifest_path))[0] == EXIT_OK

        code, output = run(backend_url, "plan", "prod", "--manifest", str(manifest_path))

        assert code == EXIT_OK
        assert "2 to create" in output

    def test_destroy(self, backend_url: str, manifest_path: Path) -> None:
        run(backend_url, "apply", "dev", "--manifest", str(manifest_path))

        code, output = run(backend_url, "destroy", "dev", "--manifest", str(manifest_path))

        assert code == EXIT_OK
        assert "  - instance.web (no longer declared)" in output
        assert "Apply complete: 2 action(s), state version 4" in output


class TestFailures:
    def test_blocking_finding_exits_1(self, backend_url: str, tmp_path: Path, capsys: pytest.CaptureFixture) -> None:
        manifest_path = write_manifest(tmp_path / "infrastructure.yaml", public_ip=True)

        code, output = run(backend_url, "apply", "dev", "--manifest", str(manifest_path))

        assert code == EXIT_POLICY_BLOCKED
        assert "[blocking] compute.public-ip instance.web" in output
        assert "Apply complete" not in output
        assert "Error:" in capsys.readouterr().err

    def test_unauthorized_override_exits_4(self, backend_url: str, tmp_path: Path) -> None:
        manifest_path = write_manifest(tmp_path / "infrastructure.yaml", public_ip=True)

        code, _ = run(backend_url, "apply", "dev", "--manifest", str(manifest_path), "--override-actor", "mallory")

        assert code == EXIT_FAILURE

    def test_authorized_override_applies(
        self, backend_url: str, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setenv("AUMOS_IAC_POLICY_OVERRIDE_ACTORS", '["security-lead"]')
        manifest_path = write_manifest(tmp_path / "infrastructure.yaml", public_ip=True)

        code, output = run(
            backend_url, "apply", "dev", "--manifest", str(manifest_path), "--override-actor", "security-lead"
        )

        assert code == EXIT_OK
        assert "Apply complete" in output

    def test_environment_missing_from_manifest_exits_4(self, backend_url: str, manifest_path: Path) -> None:
        code, _ = run(backend_url, "plan", "stage", "--manifest", str(manifest_path))
        assert code == EXIT_FAILURE

    def test_missing_manifest_exits_4(self, backend_url: str, tmp_path: Path) -> None:
        code, _ = run(backend_url, "plan", "dev", "--manifest", str(tmp_path / "missing.yaml"))
        assert code == EXIT_FAILURE

    def test_corrupt_saved_plan_exits_4(self, backend_url: str, manifest_path: Path, tmp_path: Path) -> None:
        plan_path = tmp_path / "broken.json"
        plan_path.write_text('{"plan_id": 1}', encoding="utf-8")

        code, _ = run(backend_url, "apply", "dev", "--manifest", str(manifest_path), "--plan", str(plan_path))

        assert code == EXIT_FAILURE
