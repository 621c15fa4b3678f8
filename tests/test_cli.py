"""Tests for the provisioner CLI."""

from __future__ import annotations

import json
from pathlib import Path
from unittest.mock import patch

import pytest
import yaml
from click.testing import CliRunner
from provider_mock import MockProvider

from provisioner.cli import cli
from provisioner.providers import PermanentProviderError
from provisioner.reconciler import Reconciler


@pytest.fixture
def runner() -> CliRunner:
    return CliRunner()


@pytest.fixture(autouse=True)
def quiet_logging():
    """Keep CLI invocations from installing root log handlers."""
    with patch("provisioner.cli.setup_logging"):
        yield


@pytest.fixture
def spec_file(tmp_path: Path, spec_data: dict) -> Path:
    path = tmp_path / "cluster.yaml"
    path.write_text(yaml.safe_dump(spec_data))
    return path


@pytest.fixture
def mock_reconciler(provider: MockProvider):
    """Route apply through the mock provider."""
    with patch(
        "provisioner.cli.build_reconciler",
        lambda config: Reconciler(config, adapter=provider),
    ):
        yield provider


class TestPlan:
    """Tests for the plan command."""

    def test_plan_on_empty_state(self, runner: CliRunner, spec_file: Path, tmp_path: Path) -> None:
        result = runner.invoke(cli, ["plan", str(spec_file), "--state-dir", str(tmp_path / "state")])

        assert result.exit_code == 0, result.output
        data = json.loads(result.stdout)
        assert data["summary"]["create"] == 2
        assert [c["nodeId"] for c in data["changes"]] == ["cluster", "node-pool:default"]
        assert list((tmp_path / "state").iterdir()) == []

    def test_plan_invalid_spec(self, runner: CliRunner, tmp_path: Path) -> None:
        spec = tmp_path / "bad.yaml"
        spec.write_text("cloud: openstack\n")

        result = runner.invoke(cli, ["plan", str(spec), "--state-dir", str(tmp_path / "state")])

        assert result.exit_code == 1
        assert "Error:" in result.output


class TestApply:
    """Tests for the apply command."""

    def test_apply_then_state(
        self,
        runner: CliRunner,
        spec_file: Path,
        tmp_path: Path,
        mock_reconciler: MockProvider,
    ) -> None:
        state_dir = str(tmp_path / "state")

        result = runner.invoke(cli, ["apply", str(spec_file), "--state-dir", state_dir])

        assert result.exit_code == 0, result.output
        data = json.loads(result.stdout)
        assert data["success"] is True
        assert sorted(data["applied"]) == ["cluster", "node-pool:default"]

        state = runner.invoke(cli, ["state", "--state-dir", state_dir, "--outputs"])
        outputs = json.loads(state.stdout)
        assert outputs["cluster"]["endpoint"] == "https://dev-eks.k8s.mock.example"
        assert list(outputs["node_pools"]) == ["default"]

    def test_dry_run(self, runner: CliRunner, spec_file: Path, tmp_path: Path) -> None:
        """Dry run needs no cloud access and records nothing."""
        state_dir = tmp_path / "state"

        result = runner.invoke(
            cli, ["apply", str(spec_file), "--state-dir", str(state_dir), "--dry-run"]
        )

        assert result.exit_code == 0, result.output
        data = json.loads(result.stdout)
        assert data["dryRun"] is True
        assert data["summary"]["create"] == 2
        assert list(state_dir.iterdir()) == []

    def test_partial_failure_exit_code(
        self,
        runner: CliRunner,
        spec_file: Path,
        tmp_path: Path,
        mock_reconciler: MockProvider,
    ) -> None:
        mock_reconciler.fail("cluster", PermanentProviderError("AccessDenied"))

        result = runner.invoke(
            cli, ["apply", str(spec_file), "--state-dir", str(tmp_path / "state"), "-w", "2"]
        )

        assert result.exit_code == 1
        data = json.loads(result.stdout)
        assert data["failed"]["cluster"]["message"] == "AccessDenied"
        assert data["blocked"] == {"node-pool:default": "cluster"}

    def test_invalid_worker_count(self, runner: CliRunner, spec_file: Path, tmp_path: Path) -> None:
        result = runner.invoke(
            cli, ["apply", str(spec_file), "--state-dir", str(tmp_path / "state"), "-w", "0"]
        )

        assert result.exit_code == 1
        assert "MAX_WORKERS" in result.output

    def test_missing_spec_file(self, runner: CliRunner, tmp_path: Path) -> None:
        result = runner.invoke(cli, ["apply", str(tmp_path / "missing.yaml")])

        assert result.exit_code == 2


class TestState:
    """Tests for the state command."""

    def test_empty_state(self, runner: CliRunner, tmp_path: Path) -> None:
        result = runner.invoke(cli, ["state", "--state-dir", str(tmp_path / "state")])

        assert result.exit_code == 0, result.output
        assert json.loads(result.stdout) == {}
