"""Test the rendered Kubernetes manifests and eksctl cluster config."""

from moodle_deployer.stages import manifests
from moodle_deployer.stages.cluster import render_cluster_config


def test_storage_class_points_at_filesystem(plan):
    sc = manifests.storage_class(plan, "fs-0abc")

    assert sc["metadata"]["name"] == plan.storage.storage_class_name
    assert sc["provisioner"] == "efs.csi.aws.com"
    assert sc["parameters"]["fileSystemId"] == "fs-0abc"


def test_claim_uses_storage_class(plan):
    pvc = manifests.claim(plan)

    assert pvc["spec"]["storageClassName"] == plan.storage.storage_class_name
    assert pvc["spec"]["accessModes"] == ["ReadWriteMany"]
    assert pvc["metadata"]["namespace"] == plan.app.namespace


def test_deployment_reads_credentials_from_secret(plan):
    dep = manifests.deployment(plan, "db.example.internal", "5432")
    container = dep["spec"]["template"]["spec"]["containers"][0]
    env = {e["name"]: e for e in container["env"]}

    assert env["MOODLE_DATABASE_HOST"]["value"] == "db.example.internal"
    assert env["MOODLE_DATABASE_PORT_NUMBER"]["value"] == "5432"
    assert "value" not in env["MOODLE_DATABASE_PASSWORD"]
    assert env["MOODLE_DATABASE_PASSWORD"]["valueFrom"]["secretKeyRef"]["name"] == plan.app.db_secret_name
    volume = dep["spec"]["template"]["spec"]["volumes"][0]
    assert volume["persistentVolumeClaim"]["claimName"] == plan.storage.claim_name


def test_ingress_routes_record_name_to_service(plan):
    ing = manifests.ingress(plan)
    rule = ing["spec"]["rules"][0]

    assert ing["spec"]["ingressClassName"] == "alb"
    assert rule["host"] == plan.dns.record_name.rstrip(".")
    assert not rule["host"].endswith(".")
    assert rule["http"]["paths"][0]["backend"]["service"]["name"] == plan.app.service_name


def test_autoscaler_bounds(plan):
    hpa = manifests.autoscaler(plan)

    assert hpa["spec"]["minReplicas"] == plan.scaling.min_pods
    assert hpa["spec"]["maxReplicas"] == plan.scaling.max_pods
    target = hpa["spec"]["metrics"][0]["resource"]["target"]
    assert target["averageUtilization"] == plan.scaling.target_cpu


def test_cluster_config_node_group(plan):
    config = render_cluster_config(plan)
    group = config["managedNodeGroups"][0]

    assert config["metadata"]["name"] == plan.cluster.name
    assert config["metadata"]["region"] == plan.region
    assert group["minSize"] == plan.cluster.min_nodes
    assert group["maxSize"] == plan.cluster.max_nodes
    assert group["ssh"]["publicKeyName"] == plan.cluster.key_pair_name
    assert group["privateNetworking"] is True
