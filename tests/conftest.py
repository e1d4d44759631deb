"""Pytest configuration and fixtures."""

import pytest

from moodle_deployer.config import Settings
from moodle_deployer.core.cleanup import CleanupRunner
from moodle_deployer.core.ledger import LedgerStore
from moodle_deployer.core.orchestrator import Orchestrator
from moodle_deployer.core.plan import build_plan
from moodle_deployer.stages import PollPolicies

from tests.fakes import FakeWorld

SEED = "0123456789abcdef"


def no_sleep(seconds: float) -> None:
    pass


@pytest.fixture(autouse=True)
def isolated_environment(tmp_path, monkeypatch):
    """Keep host environment variables and .env files out of Settings."""
    for name in Settings.model_fields:
        monkeypatch.delenv(name.upper(), raising=False)
    monkeypatch.chdir(tmp_path)


@pytest.fixture
def settings(tmp_path):
    """Settings with fast, tightly bounded waits."""
    return Settings(
        state_dir=tmp_path / "state",
        region="us-east-1",
        poll_initial_interval=0.01,
        poll_max_interval=0.01,
        cluster_ready_timeout=5,
        database_ready_timeout=5,
        filesystem_ready_timeout=5,
        pods_ready_timeout=5,
        load_balancer_timeout=5,
        load_balancer_max_attempts=3,
        dns_sync_timeout=5,
        stage_retry_attempts=3,
    )


@pytest.fixture
def plan(settings):
    return build_plan(settings, SEED)


@pytest.fixture
def world():
    return FakeWorld()


@pytest.fixture
def store(settings):
    return LedgerStore(settings.ledger_path)


@pytest.fixture
def policies(settings):
    return PollPolicies.from_settings(settings)


@pytest.fixture
def orchestrator(world, store, policies, settings):
    return Orchestrator(
        client=world.client,
        store=store,
        policies=policies,
        state_dir=settings.state_dir,
        retry_attempts=settings.stage_retry_attempts,
        sleep=no_sleep,
    )


@pytest.fixture
def cleanup_runner(world, store, policies, settings):
    return CleanupRunner(
        client=world.client,
        store=store,
        policies=policies,
        state_dir=settings.state_dir,
        retry_attempts=settings.stage_retry_attempts,
        sleep=no_sleep,
    )
