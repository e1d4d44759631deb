"""Test the command line interface against the in-memory world."""

import pytest
from click.testing import CliRunner

from moodle_deployer.core.errors import DependencyMissing
from moodle_deployer.core.ledger import LedgerStore
from moodle_deployer.core.preflight import check_tools, resolve_hosted_zone
from moodle_deployer.main import cli

from tests.conftest import SEED
from tests.fakes import HOSTED_ZONE_ID, FakeWorld


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def state_dir(tmp_path):
    return tmp_path / "state"


@pytest.fixture
def fake_world(monkeypatch):
    """Route the CLI's adapters and tool checks to fakes."""
    world = FakeWorld()
    monkeypatch.setattr("moodle_deployer.main.build_resource_client", lambda settings, kubeconfig: world.client)
    monkeypatch.setattr("moodle_deployer.main.check_tools", lambda: {})
    return world


@pytest.fixture
def fast_config(tmp_path):
    config = tmp_path / "fast.yaml"
    config.write_text(
        "poll_initial_interval: 0.01\n"
        "poll_max_interval: 0.01\n"
        "load_balancer_max_attempts: 2\n"
        "stage_retry_attempts: 1\n"
    )
    return config


def invoke(runner, *args, input=None):
    return runner.invoke(cli, list(args), input=input, catch_exceptions=False)


class TestPlanCommand:
    def test_shows_plan(self, runner, state_dir):
        result = invoke(runner, "plan", "--state-dir", str(state_dir), "--seed", SEED)

        assert result.exit_code == 0
        assert "Deployment Plan" in result.output
        assert "moodle-cluster-" in result.output
        assert not state_dir.exists()

    def test_invalid_bounds(self, runner, state_dir):
        result = invoke(runner, "plan", "--state-dir", str(state_dir), "--min-pods", "5", "--max-pods", "2")

        assert result.exit_code == 2
        assert "Invalid configuration" in result.output
        assert "Pod bounds" in result.output

    def test_invalid_config_file(self, runner, tmp_path):
        config = tmp_path / "bad.yaml"
        config.write_text("- not\n- a mapping\n")

        result = invoke(runner, "plan", "--config", str(config))

        assert result.exit_code == 2
        assert "Invalid configuration" in result.output


class TestDeployCommand:
    def test_deploy_and_status(self, runner, state_dir, fake_world):
        result = invoke(runner, "deploy", "--state-dir", str(state_dir), "--seed", SEED)

        assert result.exit_code == 0, result.output
        assert "Deployment Complete" in result.output
        ledger = LedgerStore(state_dir / "moodle.yaml").load()
        assert ledger.account_id == "123456789012"
        assert ledger.seed == SEED

        result = invoke(runner, "status", "--state-dir", str(state_dir))

        assert result.exit_code == 0
        assert "Deployment Status" in result.output
        assert "dns" in result.output

    def test_stage_failure(self, runner, state_dir, fast_config, monkeypatch):
        world = FakeWorld(alb_hostname=None)
        monkeypatch.setattr("moodle_deployer.main.build_resource_client", lambda settings, kubeconfig: world.client)
        monkeypatch.setattr("moodle_deployer.main.check_tools", lambda: {})

        result = invoke(runner, "deploy", "--config", str(fast_config), "--state-dir", str(state_dir))

        assert result.exit_code == 1
        assert "Stage 'ingress' failed" in result.output
        ledger = LedgerStore(state_dir / "moodle.yaml").load()
        assert ledger.stage("ingress").status.value == "failed"
        assert ledger.is_done("application")

    def test_invalid_bounds_exit_before_preflight(self, runner, state_dir, fake_world):
        result = invoke(runner, "deploy", "--state-dir", str(state_dir), "--min-nodes", "5", "--max-nodes", "2")

        assert result.exit_code == 2
        assert "Invalid configuration" in result.output
        assert "Node bounds" in result.output
        assert fake_world.aws.calls == []

    def test_missing_hosted_zone_stops_before_provisioning(self, runner, state_dir, fake_world):
        fake_world.aws.hosted_zones.clear()

        result = invoke(runner, "deploy", "--state-dir", str(state_dir), "--seed", SEED)

        assert result.exit_code == 1
        assert "Preflight failed" in result.output
        assert fake_world.creates() == []
        assert not (state_dir / "moodle.yaml").exists()

    def test_missing_tools(self, runner, state_dir, monkeypatch):
        def missing():
            raise DependencyMissing("eksctl", "install it and make sure it is on PATH")

        monkeypatch.setattr("moodle_deployer.main.check_tools", missing)

        result = invoke(runner, "deploy", "--state-dir", str(state_dir))

        assert result.exit_code == 1
        assert "Preflight failed" in result.output


class TestStatusCommand:
    def test_no_ledger(self, runner, state_dir):
        result = invoke(runner, "status", "--state-dir", str(state_dir))

        assert result.exit_code == 0
        assert "No ledger" in result.output


class TestCleanupCommand:
    @pytest.fixture
    def deployed(self, runner, state_dir, fake_world):
        result = invoke(runner, "deploy", "--state-dir", str(state_dir), "--seed", SEED)
        assert result.exit_code == 0, result.output
        return fake_world

    def test_requires_ledger_or_seed(self, runner, state_dir, fake_world):
        result = invoke(runner, "cleanup", "--state-dir", str(state_dir))

        assert result.exit_code == 1
        assert "No ledger" in result.output

    def test_nothing_to_clean_up(self, runner, state_dir, fake_world):
        result = invoke(runner, "cleanup", "--state-dir", str(state_dir), "--seed", SEED, "--yes")

        assert result.exit_code == 0
        assert "Nothing to clean up" in result.output

    def test_cancelled(self, runner, state_dir, deployed):
        result = invoke(runner, "cleanup", "--state-dir", str(state_dir), input="n\n")

        assert result.exit_code == 0
        assert "Cleanup cancelled" in result.output
        assert not deployed.aws.is_empty()
        assert (state_dir / "moodle.yaml").exists()

    def test_confirmed(self, runner, state_dir, deployed):
        result = invoke(runner, "cleanup", "--state-dir", str(state_dir), input="y\n")

        assert result.exit_code == 0, result.output
        assert "Cleanup complete" in result.output
        assert deployed.aws.is_empty()
        assert not (state_dir / "moodle.yaml").exists()

    def test_discovers_without_ledger(self, runner, state_dir, deployed):
        (state_dir / "moodle.yaml").unlink()

        result = invoke(runner, "cleanup", "--state-dir", str(state_dir), "--seed", SEED, "--yes")

        assert result.exit_code == 0, result.output
        assert deployed.aws.is_empty()


class TestPreflight:
    def test_hosted_zone_found_by_domain(self, plan):
        world = FakeWorld()

        assert resolve_hosted_zone(world.aws, plan) == HOSTED_ZONE_ID
        assert world.aws.called("find_hosted_zone_id") == [("fipcuring.com.",)]

    def test_configured_hosted_zone_used_as_given(self, plan):
        world = FakeWorld()
        configured = plan.model_copy(update={"dns": plan.dns.model_copy(update={"hosted_zone_id": "Z0CONFIGURED"})})

        assert resolve_hosted_zone(world.aws, configured) == "Z0CONFIGURED"
        assert world.aws.called("find_hosted_zone_id") == []

    def test_missing_hosted_zone(self, plan):
        world = FakeWorld()
        world.aws.hosted_zones.clear()

        with pytest.raises(DependencyMissing) as exc_info:
            resolve_hosted_zone(world.aws, plan)

        assert exc_info.value.detail == "fipcuring.com."

    def test_all_tools_present(self):
        found = check_tools(which=lambda tool: f"/usr/local/bin/{tool}")

        assert found["kubectl"] == "/usr/local/bin/kubectl"

    def test_missing_tools_listed(self):
        with pytest.raises(DependencyMissing) as exc_info:
            check_tools(which=lambda tool: None if tool in ("eksctl", "helm") else f"/bin/{tool}")

        assert exc_info.value.what == "eksctl, helm"
