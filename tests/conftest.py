"""Pytest configuration and fixtures for kudev tests."""

from datetime import datetime, timezone
from pathlib import Path
from unittest.mock import MagicMock

import pytest
from kubernetes import client

from kudev.config import DeploymentConfig
from kudev.models import DesiredWorkloadState, EnvVar


@pytest.fixture
def mock_cluster_connection():
    """Mock cluster connection for testing."""
    mock_conn = MagicMock()
    mock_conn.core_v1 = MagicMock(spec=client.CoreV1Api)
    mock_conn.apps_v1 = MagicMock(spec=client.AppsV1Api)
    return mock_conn


@pytest.fixture
def source_tree(tmp_path: Path) -> Path:
    """Small project tree with a few source files."""
    (tmp_path / "main.py").write_text("print('hello')\n")
    (tmp_path / "Dockerfile").write_text("FROM python:3.12-slim\nCOPY . /app\n")
    pkg = tmp_path / "pkg"
    pkg.mkdir()
    (pkg / "util.py").write_text("def add(a, b):\n    return a + b\n")
    return tmp_path


@pytest.fixture
def sample_config(tmp_path: Path) -> DeploymentConfig:
    """Project configuration rooted at tmp_path."""
    config = DeploymentConfig.model_validate(
        {
            "apiVersion": "kudev.io/v1alpha1",
            "kind": "DeploymentConfig",
            "metadata": {"name": "myapp"},
            "spec": {
                "imageName": "myapp",
                "namespace": "dev",
                "replicas": 2,
                "servicePort": 8080,
                "env": [{"name": "LOG_LEVEL", "value": "debug"}],
            },
        }
    )
    config.project_root = tmp_path
    return config


@pytest.fixture
def desired_state() -> DesiredWorkloadState:
    """Desired state for a two-replica workload."""
    return DesiredWorkloadState(
        app_name="myapp",
        namespace="dev",
        image_ref="myapp:kudev-a1b2c3d4",
        image_digest="a1b2c3d4",
        replicas=2,
        service_port=8080,
        env=[EnvVar(name="LOG_LEVEL", value="debug")],
    )


def make_deployment(
    name: str = "myapp",
    namespace: str = "dev",
    replicas=2,
    ready_replicas=None,
    labels=None,
) -> client.V1Deployment:
    """Live Deployment as returned by the API server."""
    return client.V1Deployment(
        metadata=client.V1ObjectMeta(
            name=name,
            namespace=namespace,
            labels=labels if labels is not None else {"app": name, "managed-by": "kudev"},
            resource_version="100",
        ),
        spec=client.V1DeploymentSpec(
            replicas=replicas,
            selector=client.V1LabelSelector(match_labels={"app": name}),
            template=client.V1PodTemplateSpec(
                metadata=client.V1ObjectMeta(labels={"app": name, "team": "platform"}),
                spec=client.V1PodSpec(
                    containers=[
                        client.V1Container(
                            name=name,
                            image=f"{name}:old",
                            env=[client.V1EnvVar(name="OLD", value="1")],
                            resources=client.V1ResourceRequirements(
                                limits={"memory": "256Mi"}
                            ),
                        ),
                        client.V1Container(name="sidecar", image="envoy:1.29"),
                    ],
                    service_account_name="operator-added",
                ),
            ),
        ),
        status=client.V1DeploymentStatus(ready_replicas=ready_replicas),
    )


def make_service(name: str = "myapp", namespace: str = "dev") -> client.V1Service:
    """Live Service with cluster-assigned addresses."""
    return client.V1Service(
        metadata=client.V1ObjectMeta(name=name, namespace=namespace, resource_version="42"),
        spec=client.V1ServiceSpec(
            cluster_ip="10.96.12.34",
            ports=[client.V1ServicePort(port=8080, target_port=8080)],
            selector={"app": name},
        ),
    )


def make_pod(
    name: str,
    ready: bool = True,
    phase: str = "Running",
    restarts: int = 0,
    waiting_message: str = "",
    terminated_message: str = "",
) -> client.V1Pod:
    """Pod with one container."""
    state = client.V1ContainerState()
    if waiting_message:
        state.waiting = client.V1ContainerStateWaiting(
            reason="CrashLoopBackOff", message=waiting_message
        )
    if terminated_message:
        state.terminated = client.V1ContainerStateTerminated(
            exit_code=1, message=terminated_message
        )

    return client.V1Pod(
        metadata=client.V1ObjectMeta(
            name=name,
            creation_timestamp=datetime(2025, 2, 9, 14, 30, tzinfo=timezone.utc),
        ),
        status=client.V1PodStatus(
            phase=phase,
            conditions=[
                client.V1PodCondition(type="Ready", status="True" if ready else "False")
            ],
            container_statuses=[
                client.V1ContainerStatus(
                    name="app",
                    image="myapp:kudev-a1b2c3d4",
                    image_id="",
                    ready=ready,
                    restart_count=restarts,
                    state=state,
                )
            ],
        ),
    )


def pod_list(*pods: client.V1Pod) -> client.V1PodList:
    return client.V1PodList(items=list(pods))
