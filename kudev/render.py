"""Rendering of desired workload state into Kubernetes objects."""

import yaml
from kubernetes.client import (
    ApiClient,
    V1Container,
    V1ContainerPort,
    V1Deployment,
    V1DeploymentSpec,
    V1EnvVar,
    V1LabelSelector,
    V1ObjectMeta,
    V1PodSpec,
    V1PodTemplateSpec,
    V1Service,
    V1ServicePort,
    V1ServiceSpec,
)

from .errors import RenderError
from .models import DesiredWorkloadState

MANAGED_BY_LABEL = "managed-by"
MANAGED_BY_VALUE = "kudev"
HASH_LABEL = "kudev-hash"
APP_LABEL = "app"

MANAGED_SELECTOR = f"{MANAGED_BY_LABEL}={MANAGED_BY_VALUE}"


def app_selector(app_name: str) -> str:
    """Label selector matching the pods of one application."""
    return f"{APP_LABEL}={app_name}"


class Renderer:
    """Builds Deployment and Service objects from DesiredWorkloadState."""

    def __init__(self):
        # Only used for sanitize_for_serialization, never for API calls
        self._serializer = ApiClient()

    @staticmethod
    def _check(desired: DesiredWorkloadState) -> None:
        errors = desired.validation_errors()
        if errors:
            raise RenderError(
                f"invalid desired state for {desired.app_name or '<unnamed>'}: "
                + "; ".join(errors)
            )

    @staticmethod
    def labels(desired: DesiredWorkloadState) -> dict[str, str]:
        """Metadata labels for rendered resources."""
        return {
            APP_LABEL: desired.app_name,
            MANAGED_BY_LABEL: MANAGED_BY_VALUE,
            HASH_LABEL: desired.image_digest,
        }

    def render_deployment(self, desired: DesiredWorkloadState) -> V1Deployment:
        """
        Render the Deployment for a workload.

        Args:
            desired: Desired workload state

        Returns:
            V1Deployment

        Raises:
            RenderError: If the desired state is incomplete
        """
        self._check(desired)

        container = V1Container(
            name=desired.app_name,
            image=desired.image_ref,
            image_pull_policy="IfNotPresent",
            ports=[V1ContainerPort(container_port=desired.service_port, protocol="TCP")],
            env=[V1EnvVar(name=e.name, value=e.value) for e in desired.env] or None,
        )

        return V1Deployment(
            api_version="apps/v1",
            kind="Deployment",
            metadata=V1ObjectMeta(
                name=desired.app_name,
                namespace=desired.namespace,
                labels=self.labels(desired),
            ),
            spec=V1DeploymentSpec(
                replicas=desired.replicas,
                selector=V1LabelSelector(match_labels={APP_LABEL: desired.app_name}),
                template=V1PodTemplateSpec(
                    metadata=V1ObjectMeta(
                        labels={
                            APP_LABEL: desired.app_name,
                            MANAGED_BY_LABEL: MANAGED_BY_VALUE,
                        }
                    ),
                    spec=V1PodSpec(containers=[container]),
                ),
            ),
        )

    def render_service(self, desired: DesiredWorkloadState) -> V1Service:
        """
        Render the ClusterIP Service for a workload.

        Raises:
            RenderError: If the desired state is incomplete
        """
        self._check(desired)

        return V1Service(
            api_version="v1",
            kind="Service",
            metadata=V1ObjectMeta(
                name=desired.app_name,
                namespace=desired.namespace,
                labels=self.labels(desired),
            ),
            spec=V1ServiceSpec(
                type="ClusterIP",
                selector={APP_LABEL: desired.app_name},
                ports=[
                    V1ServicePort(
                        port=desired.service_port,
                        target_port=desired.service_port,
                        protocol="TCP",
                    )
                ],
            ),
        )

    def render_yaml(self, desired: DesiredWorkloadState) -> str:
        """Render both resources as a multi-document YAML string."""
        documents = [
            self._serializer.sanitize_for_serialization(self.render_deployment(desired)),
            self._serializer.sanitize_for_serialization(self.render_service(desired)),
        ]
        return yaml.safe_dump_all(documents, sort_keys=False, explicit_start=False)
