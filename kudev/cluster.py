"""Kubernetes client connection for the local development cluster."""

import logging
from typing import Optional

from kubernetes import config
from kubernetes.client import ApiClient, AppsV1Api, CoreV1Api
from kubernetes.config.config_exception import ConfigException

from .errors import ClusterAuthError

logger = logging.getLogger(__name__)


def current_context(kubeconfig_path: Optional[str] = None) -> str:
    """
    Return the name of the active kubeconfig context.

    Raises:
        ClusterAuthError: If the kubeconfig cannot be read
    """
    try:
        _, active = config.list_kube_config_contexts(config_file=kubeconfig_path)
    except (ConfigException, OSError) as e:
        raise ClusterAuthError(
            "failed to read kubeconfig",
            suggestion="Check that ~/.kube/config exists or set KUBECONFIG",
            cause=e,
        ) from e
    if not active:
        raise ClusterAuthError(
            "no current context in kubeconfig",
            suggestion="Select one with 'kubectl config use-context <name>'",
        )
    return active["name"]


class ClusterConnection:
    """Represents a connection to a single Kubernetes cluster."""

    def __init__(
        self,
        context: Optional[str] = None,
        kubeconfig_path: Optional[str] = None,
    ):
        """
        Initialize cluster connection.

        Args:
            context: Kubeconfig context to use (defaults to the current one)
            kubeconfig_path: Kubeconfig file (defaults to KUBECONFIG or ~/.kube/config)

        Raises:
            ClusterAuthError: If the kubeconfig cannot be loaded
        """
        self.context = context or None
        self.kubeconfig_path = kubeconfig_path
        self._api_client: Optional[ApiClient] = None
        self._core_v1: Optional[CoreV1Api] = None
        self._apps_v1: Optional[AppsV1Api] = None

        self._initialize_client()

    def _initialize_client(self):
        """Initialize Kubernetes API client."""
        try:
            self._api_client = config.new_client_from_config(
                config_file=self.kubeconfig_path,
                context=self.context,
            )
        except (ConfigException, OSError) as e:
            raise ClusterAuthError(
                f"failed to load kubeconfig context {self.context or '<current>'}",
                suggestion="Check kubeconfig with 'kubectl config get-contexts'",
                cause=e,
            ) from e

        self._core_v1 = CoreV1Api(self._api_client)
        self._apps_v1 = AppsV1Api(self._api_client)
        logger.debug(f"Connected to cluster context {self.context or '<current>'}")

    @property
    def core_v1(self) -> CoreV1Api:
        """Get CoreV1Api instance."""
        if not self._core_v1:
            raise RuntimeError("Cluster connection not initialized")
        return self._core_v1

    @property
    def apps_v1(self) -> AppsV1Api:
        """Get AppsV1Api instance."""
        if not self._apps_v1:
            raise RuntimeError("Cluster connection not initialized")
        return self._apps_v1

    def close(self):
        """Close the cluster connection."""
        if self._api_client:
            self._api_client.close()
            self._api_client = None

        self._core_v1 = None
        self._apps_v1 = None

    def __enter__(self):
        """Context manager entry."""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit."""
        self.close()
