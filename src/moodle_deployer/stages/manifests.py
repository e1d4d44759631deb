"""Kubernetes manifests for the Moodle workload, rendered as plain dicts."""

from typing import Any

from moodle_deployer.core.plan import AppSpec, DeploymentPlan

EFS_CSI_DRIVER_KUSTOMIZATION = (
    "github.com/kubernetes-sigs/aws-efs-csi-driver/deploy/kubernetes/overlays/stable/?ref=release-1.7"
)

Manifest = dict[str, Any]


def _labels(app: AppSpec) -> dict[str, str]:
    return {"app": app.name}


def storage_class(plan: DeploymentPlan, filesystem_id: str) -> Manifest:
    return {
        "apiVersion": "storage.k8s.io/v1",
        "kind": "StorageClass",
        "metadata": {"name": plan.storage.storage_class_name},
        "provisioner": "efs.csi.aws.com",
        "parameters": {
            "provisioningMode": "efs-ap",
            "fileSystemId": filesystem_id,
            "directoryPerms": "700",
            "gidRangeStart": "1000",
            "gidRangeEnd": "2000",
            "basePath": "/dynamic_provisioning",
        },
    }


def claim(plan: DeploymentPlan) -> Manifest:
    return {
        "apiVersion": "v1",
        "kind": "PersistentVolumeClaim",
        "metadata": {"name": plan.storage.claim_name, "namespace": plan.app.namespace},
        "spec": {
            "accessModes": ["ReadWriteMany"],
            "storageClassName": plan.storage.storage_class_name,
            "resources": {"requests": {"storage": plan.storage.claim_size}},
        },
    }


def db_secret(plan: DeploymentPlan, username: str, password: str) -> Manifest:
    return {
        "apiVersion": "v1",
        "kind": "Secret",
        "metadata": {"name": plan.app.db_secret_name, "namespace": plan.app.namespace},
        "type": "Opaque",
        "stringData": {"username": username, "password": password},
    }


def deployment(plan: DeploymentPlan, db_endpoint: str, db_port: str) -> Manifest:
    app = plan.app

    def from_secret(key: str) -> dict[str, Any]:
        return {"secretKeyRef": {"name": app.db_secret_name, "key": key}}

    env = [
        {"name": "MOODLE_DATABASE_TYPE", "value": "pgsql"},
        {"name": "MOODLE_DATABASE_HOST", "value": db_endpoint},
        {"name": "MOODLE_DATABASE_PORT_NUMBER", "value": db_port},
        {"name": "MOODLE_DATABASE_NAME", "value": plan.database.database_name},
        {"name": "MOODLE_DATABASE_USER", "valueFrom": from_secret("username")},
        {"name": "MOODLE_DATABASE_PASSWORD", "valueFrom": from_secret("password")},
        {"name": "MOODLE_USE_S3", "value": "true"},
        {"name": "MOODLE_S3_BUCKET", "value": plan.storage.bucket_name},
        {"name": "MOODLE_S3_REGION", "value": plan.region},
    ]

    return {
        "apiVersion": "apps/v1",
        "kind": "Deployment",
        "metadata": {"name": app.name, "namespace": app.namespace, "labels": _labels(app)},
        "spec": {
            "replicas": app.replicas,
            "selector": {"matchLabels": _labels(app)},
            "template": {
                "metadata": {"labels": _labels(app)},
                "spec": {
                    "serviceAccountName": app.service_account_name,
                    "containers": [{
                        "name": app.name,
                        "image": app.image,
                        "ports": [{"containerPort": 8080}],
                        "env": env,
                        "readinessProbe": {
                            "httpGet": {"path": app.health_check_path, "port": 8080},
                            "initialDelaySeconds": 60,
                            "periodSeconds": 15,
                        },
                        "volumeMounts": [{"name": "moodle-data", "mountPath": "/bitnami/moodledata"}],
                        "resources": {
                            "requests": {"cpu": app.cpu_request, "memory": app.memory_request},
                            "limits": {"cpu": app.cpu_limit, "memory": app.memory_limit},
                        },
                    }],
                    "volumes": [{
                        "name": "moodle-data",
                        "persistentVolumeClaim": {"claimName": plan.storage.claim_name},
                    }],
                },
            },
        },
    }


def service(plan: DeploymentPlan) -> Manifest:
    app = plan.app
    return {
        "apiVersion": "v1",
        "kind": "Service",
        "metadata": {"name": app.service_name, "namespace": app.namespace},
        "spec": {
            "selector": _labels(app),
            "ports": [{"protocol": "TCP", "port": 80, "targetPort": 8080}],
        },
    }


def ingress(plan: DeploymentPlan) -> Manifest:
    app = plan.app
    return {
        "apiVersion": "networking.k8s.io/v1",
        "kind": "Ingress",
        "metadata": {
            "name": app.ingress_name,
            "namespace": app.namespace,
            "annotations": {
                "alb.ingress.kubernetes.io/scheme": "internet-facing",
                "alb.ingress.kubernetes.io/target-type": "ip",
                "alb.ingress.kubernetes.io/healthcheck-path": app.health_check_path,
                "alb.ingress.kubernetes.io/success-codes": "200,302",
                "alb.ingress.kubernetes.io/listen-ports": '[{"HTTP": 80}]',
            },
        },
        "spec": {
            "ingressClassName": "alb",
            "rules": [{
                "host": plan.dns.record_name.rstrip("."),
                "http": {
                    "paths": [{
                        "path": "/",
                        "pathType": "Prefix",
                        "backend": {"service": {"name": app.service_name, "port": {"number": 80}}},
                    }],
                },
            }],
        },
    }


def autoscaler(plan: DeploymentPlan) -> Manifest:
    scaling = plan.scaling
    return {
        "apiVersion": "autoscaling/v2",
        "kind": "HorizontalPodAutoscaler",
        "metadata": {"name": scaling.hpa_name, "namespace": plan.app.namespace},
        "spec": {
            "scaleTargetRef": {"apiVersion": "apps/v1", "kind": "Deployment", "name": plan.app.name},
            "minReplicas": scaling.min_pods,
            "maxReplicas": scaling.max_pods,
            "metrics": [{
                "type": "Resource",
                "resource": {
                    "name": "cpu",
                    "target": {"type": "Utilization", "averageUtilization": scaling.target_cpu},
                },
            }],
        },
    }
