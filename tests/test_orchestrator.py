"""Test the stage runner against in-memory adapters."""

import json

import pytest

from moodle_deployer.core.errors import (
    DependencyMissing,
    ExternalApiError,
    PlanValidationError,
    ResourceConflict,
    StageError,
    StageTimeout,
)
from moodle_deployer.core.orchestrator import Orchestrator, new_ledger
from moodle_deployer.core.plan import build_plan
from moodle_deployer.core.state import ResourceKind, StageStatus
from moodle_deployer.stages import STAGE_IDS, ClusterStage, DatabaseStage
from moodle_deployer.stages.application import S3_POLICY_ARN

from tests.conftest import SEED, no_sleep
from tests.fakes import ALB_HOSTNAME, ALB_ZONE_ID, HOSTED_ZONE_ID, VPC_ID, FakeWorld


def make_orchestrator(world, store, policies, settings, stages=None):
    return Orchestrator(
        client=world.client,
        store=store,
        policies=policies,
        state_dir=settings.state_dir,
        retry_attempts=settings.stage_retry_attempts,
        sleep=no_sleep,
        stages=stages,
    )


class TestFullDeployment:
    """Test a deployment from nothing to a DNS record."""

    def test_run_returns_record(self, orchestrator, plan):
        record = orchestrator.run(plan)

        assert record.url == "http://www.fipcuring.com"
        assert record.cluster_name == plan.cluster.name
        assert record.db_endpoint.startswith(plan.database.identifier)
        assert record.bucket_name == plan.storage.bucket_name
        assert record.filesystem_id is not None
        assert record.alb_hostname == ALB_HOSTNAME
        assert record.dns_record == "www.fipcuring.com."

    def test_every_stage_done_in_order(self, orchestrator, plan, store):
        orchestrator.run(plan)

        ledger = store.load()
        assert list(ledger.stages) == STAGE_IDS
        assert all(state.status == StageStatus.DONE for state in ledger.stages.values())
        assert all(state.attempts == 1 for state in ledger.stages.values())
        assert ledger.seed == SEED

    def test_kubeconfig_and_key_written_to_state_dir(self, orchestrator, plan, settings):
        orchestrator.run(plan)

        assert (settings.state_dir / "moodle.kubeconfig").exists()
        pem = settings.state_dir / f"{plan.cluster.key_pair_name}.pem"
        assert pem.exists()
        assert oct(pem.stat().st_mode & 0o777) == "0o400"

    def test_alias_record_points_at_load_balancer(self, orchestrator, plan, world):
        orchestrator.run(plan)

        record = world.aws.records[(HOSTED_ZONE_ID, "www.fipcuring.com.", "A")]
        assert record["AliasTarget"]["DNSName"] == ALB_HOSTNAME
        assert record["AliasTarget"]["HostedZoneId"] == ALB_ZONE_ID


class TestIdempotency:
    """Test that reruns never duplicate resources."""

    def test_second_run_creates_nothing(self, orchestrator, plan, world):
        first = orchestrator.run(plan)
        creates = len(world.creates())

        second = orchestrator.run(plan)

        assert len(world.creates()) == creates
        assert second.ledger.all_handles() == first.ledger.all_handles()

    def test_rerun_without_ledger_finds_existing_resources(self, orchestrator, plan, world, store):
        first = orchestrator.run(plan)
        handles = first.ledger.all_handles()
        creates = len(world.creates())
        store.delete()

        second = orchestrator.run(plan)

        assert len(world.creates()) == creates
        assert second.ledger.all_handles() == handles

    def test_ledger_from_other_seed_is_rejected(self, orchestrator, settings, store):
        other = build_plan(settings, "another-seed")
        store.save(new_ledger(other))

        with pytest.raises(PlanValidationError):
            orchestrator.run(build_plan(settings, SEED))


class TestDatabaseStage:
    """Test the RDS stage in isolation from the rest of the pipeline."""

    @pytest.fixture
    def db_plan(self, settings):
        return build_plan(settings.model_copy(update={"db_identifier": "moodle-db"}), SEED)

    def test_creates_missing_instance_and_waits(self, db_plan, store, policies, settings):
        world = FakeWorld(db_pending_polls=2)
        orchestrator = make_orchestrator(world, store, policies, settings, [ClusterStage(), DatabaseStage()])

        record = orchestrator.run(db_plan)

        assert world.aws.called("create_db_instance") == [("moodle-db",)]
        assert record.db_endpoint == "moodle-db.abcdefgh.us-east-1.rds.amazonaws.com"
        assert len(world.aws.called("describe_db_instance")) >= 3

    def test_rerun_returns_same_endpoint_without_create(self, db_plan, store, policies, settings):
        world = FakeWorld()
        stages = [ClusterStage(), DatabaseStage()]
        first = make_orchestrator(world, store, policies, settings, stages).run(db_plan)
        store.delete()

        second = make_orchestrator(world, store, policies, settings, stages).run(db_plan)

        assert len(world.aws.called("create_db_instance")) == 1
        assert second.db_endpoint == first.db_endpoint
        handle = second.ledger.find_handle(ResourceKind.DB_INSTANCE)
        assert handle.attr("endpoint") == first.db_endpoint
        assert handle.attr("port") == "5432"

    def test_password_generated_once_and_stored_as_secret(self, db_plan, store, policies, settings):
        world = FakeWorld()
        make_orchestrator(world, store, policies, settings, [ClusterStage(), DatabaseStage()]).run(db_plan)

        stored = json.loads(world.aws.secrets[db_plan.database.credential_secret_name])
        assert stored["username"] == "moodleadmin"
        assert stored["dbname"] == "moodle"
        assert len(stored["password"]) >= 24
        assert world.aws.called("create_secret") == [(db_plan.database.credential_secret_name,)]

    def test_database_port_opened_to_vpc(self, db_plan, store, policies, settings):
        world = FakeWorld()
        make_orchestrator(world, store, policies, settings, [ClusterStage(), DatabaseStage()]).run(db_plan)

        [(group_id, port, cidr)] = world.aws.ingress_rules
        assert port == 5432
        assert cidr == "192.168.0.0/16"
        assert world.aws.security_groups[group_id]["name"] == "moodle-db-sg"


class TestDependencyMissing:
    """Test fail-fast behaviour on empty lookups."""

    def test_empty_subnets_fail_before_any_create(self, plan, world, store, policies, settings):
        world.aws.subnets[VPC_ID] = []
        orchestrator = make_orchestrator(world, store, policies, settings, [ClusterStage(), DatabaseStage()])

        with pytest.raises(StageError) as exc_info:
            orchestrator.run(plan)

        assert exc_info.value.stage_id == "database"
        assert isinstance(exc_info.value.cause, DependencyMissing)
        for create in ("create_security_group", "create_db_subnet_group", "create_secret", "create_db_instance"):
            assert world.aws.called(create) == []

    def test_missing_cluster_handle_fails(self, plan, world, store, policies, settings):
        orchestrator = make_orchestrator(world, store, policies, settings, [DatabaseStage()])

        with pytest.raises(StageError) as exc_info:
            orchestrator.run(plan)

        assert isinstance(exc_info.value.cause, DependencyMissing)
        assert world.aws.called("create_db_instance") == []
        state = store.load().stages["database"]
        assert state.status == StageStatus.FAILED
        assert "cluster" in state.error

    def test_missing_dependency_is_not_retried(self, plan, world, store, policies, settings):
        world.aws.subnets[VPC_ID] = []
        orchestrator = make_orchestrator(world, store, policies, settings, [ClusterStage(), DatabaseStage()])

        with pytest.raises(StageError):
            orchestrator.run(plan)

        assert len(world.aws.called("private_subnet_ids")) == 1


class TestIngressWait:
    """Test the bounded wait for the ALB hostname."""

    def test_timeout_after_bounded_attempts(self, plan, store, policies, settings):
        world = FakeWorld(alb_hostname=None)
        orchestrator = make_orchestrator(world, store, policies, settings)

        with pytest.raises(StageError) as exc_info:
            orchestrator.run(plan)

        error = exc_info.value
        assert error.stage_id == "ingress"
        assert isinstance(error.cause, StageTimeout)
        assert error.cause.attempts == 3
        assert error.cause.resource_id == "default/moodle-ingress"
        assert len(world.kubectl.called("ingress_hostname")) == 3

    def test_partial_ingress_recorded_for_cleanup(self, plan, store, policies, settings):
        world = FakeWorld(alb_hostname=None)
        orchestrator = make_orchestrator(world, store, policies, settings)

        with pytest.raises(StageError):
            orchestrator.run(plan)

        ledger = store.load()
        kinds = {h.kind for h in ledger.stages["ingress"].handles}
        assert kinds == {ResourceKind.HELM_RELEASE, ResourceKind.INGRESS}
        assert "autoscaling" not in ledger.stages
        assert "dns" not in ledger.stages


class TestFailureAndResume:
    """Test retries, failures and resuming from the ledger."""

    def test_transient_error_is_retried(self, orchestrator, plan, world, store):
        world.aws.fail(
            "create_bucket",
            ExternalApiError("s3.create_bucket", "Please reduce your request rate", code="SlowDown", transient=True),
        )

        orchestrator.run(plan)

        assert len(world.aws.called("create_bucket")) == 2
        assert plan.storage.bucket_name in world.aws.buckets
        assert store.load().stages["bucket"].attempts == 1

    def test_failure_persists_partial_ledger(self, orchestrator, plan, world, store):
        world.aws.fail("create_bucket", ExternalApiError("s3.create_bucket", "Access Denied", code="AccessDenied"))

        with pytest.raises(StageError) as exc_info:
            orchestrator.run(plan)

        assert exc_info.value.stage_id == "bucket"
        ledger = store.load()
        assert ledger.stages["bucket"].status == StageStatus.FAILED
        assert "AccessDenied" in ledger.stages["bucket"].error
        assert [h.id for h in ledger.stages["bucket"].handles] == [plan.storage.bucket_name]
        assert ledger.is_done("filesystem")

    def test_resume_skips_finished_stages(self, orchestrator, plan, world, store):
        world.aws.fail("create_bucket", ExternalApiError("s3.create_bucket", "Access Denied", code="AccessDenied"))
        with pytest.raises(StageError):
            orchestrator.run(plan)

        orchestrator.run(plan)

        assert len(world.eksctl.called("create_cluster")) == 1
        assert len(world.aws.called("create_db_instance")) == 1
        assert store.load().stages["bucket"].attempts == 2

    def test_conflict_on_create_counts_as_success(self, orchestrator, plan, world, store, monkeypatch):
        def racing_create(name, tags):
            world.aws.buckets.add(name)
            raise ResourceConflict("s3", name, "BucketAlreadyOwnedByYou")

        monkeypatch.setattr(world.aws, "create_bucket", racing_create)

        orchestrator.run(plan)

        assert store.load().is_done("bucket")

    def test_interrupt_marks_stage_failed(self, orchestrator, plan, world, store):
        world.aws.fail("create_bucket", KeyboardInterrupt())

        with pytest.raises(KeyboardInterrupt):
            orchestrator.run(plan)

        state = store.load().stages["bucket"]
        assert state.status == StageStatus.FAILED
        assert state.error == "interrupted"


class TestApplicationStage:
    """Test the Moodle workload wiring."""

    def test_s3_access_through_service_account(self, orchestrator, plan, world):
        orchestrator.run(plan)

        assert world.eksctl.service_accounts[("moodle", "default")] == [S3_POLICY_ARN]
        deployment = world.kubectl.objects[("deployment", "moodle", "default")]
        pod = deployment["spec"]["template"]["spec"]
        assert pod["serviceAccountName"] == "moodle"
        env = {e["name"] for e in pod["containers"][0]["env"]}
        assert "AWS_ACCESS_KEY_ID" not in env
        assert "MOODLE_S3_BUCKET" in env

    def test_kubernetes_secret_matches_stored_credential(self, orchestrator, plan, world):
        orchestrator.run(plan)

        stored = json.loads(world.aws.secrets[plan.database.credential_secret_name])
        secret = world.kubectl.objects[("secret", "moodle-db-secret", "default")]
        assert secret["stringData"] == {"username": stored["username"], "password": stored["password"]}

    def test_database_host_is_recorded_endpoint(self, orchestrator, plan, world):
        record = orchestrator.run(plan)

        deployment = world.kubectl.objects[("deployment", "moodle", "default")]
        env = {e["name"]: e.get("value") for e in deployment["spec"]["template"]["spec"]["containers"][0]["env"]}
        assert env["MOODLE_DATABASE_HOST"] == record.db_endpoint
