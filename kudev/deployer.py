"""Reconciliation of desired workload state against the cluster."""

import logging
import threading
import time
from abc import ABC, abstractmethod
from typing import Callable, Optional

from kubernetes.client import V1DeleteOptions, V1Deployment, V1Namespace, V1ObjectMeta, V1Service
from kubernetes.client.exceptions import ApiException
from tenacity import retry, retry_if_exception, stop_after_attempt, wait_exponential
from urllib3.exceptions import HTTPError

from .cluster import ClusterConnection
from .errors import (
    ClusterError,
    DeleteError,
    NotFoundError,
    WaitCancelledError,
    WaitTimeoutError,
)
from .health import build_status_message, compute_status_code, pod_status
from .models import DesiredWorkloadState, ObservedStatus
from .render import (
    HASH_LABEL,
    MANAGED_BY_LABEL,
    MANAGED_BY_VALUE,
    MANAGED_SELECTOR,
    Renderer,
    app_selector,
)

logger = logging.getLogger(__name__)

DEFAULT_NAMESPACE = "default"
DEFAULT_POLL_INTERVAL = 2.0


def _is_transient(error: BaseException) -> bool:
    return isinstance(error, ClusterError) and error.is_transient


# Reads only; writes are not blindly repeated
_retry_transient = retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=2, max=10),
    retry=retry_if_exception(_is_transient),
    reraise=True,
)


def _cluster_error(action: str, error: Exception) -> ClusterError:
    """Wrap a client exception, keeping the HTTP status when there is one."""
    if isinstance(error, ApiException):
        # ApiException's own str() dumps headers and body
        return ClusterError(
            f"failed to {action}: {error.status} {error.reason or ''}".rstrip(),
            status=error.status,
        )
    return ClusterError(
        f"failed to {action}",
        suggestion="Check that the cluster is running with 'kubectl cluster-info'",
        cause=error,
    )


class Deployer(ABC):
    """Converges cluster state toward a desired workload."""

    @abstractmethod
    def upsert(self, desired: DesiredWorkloadState) -> ObservedStatus:
        """Create or update the workload and return its observed status."""

    @abstractmethod
    def status(self, app_name: str, namespace: str) -> ObservedStatus:
        """Observe the workload's current status."""

    @abstractmethod
    def delete(self, app_name: str, namespace: str) -> None:
        """Remove the workload. Absent resources are not an error."""

    @abstractmethod
    def wait_for_ready(
        self,
        app_name: str,
        namespace: str,
        timeout: float,
        cancel: Optional[threading.Event] = None,
    ) -> ObservedStatus:
        """Block until all desired replicas are ready."""

    @abstractmethod
    def wait_for_deletion(
        self,
        app_name: str,
        namespace: str,
        timeout: float,
        cancel: Optional[threading.Event] = None,
    ) -> None:
        """Block until the Deployment no longer exists."""


class KubernetesDeployer(Deployer):
    """
    Deployer backed by the Kubernetes API.

    Every mutation tolerates concurrent actors: "already exists" on namespace
    creation and "not found" on deletion are treated as success.
    """

    def __init__(
        self,
        cluster: ClusterConnection,
        renderer: Optional[Renderer] = None,
        logger: Optional[logging.Logger] = None,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
    ):
        """
        Initialize deployer.

        Args:
            cluster: Cluster connection
            renderer: Renderer for desired resources
            logger: Logger to use (defaults to the module logger)
            poll_interval: Seconds between polls in wait_for_ready/wait_for_deletion
        """
        self.cluster = cluster
        self.apps_v1 = cluster.apps_v1
        self.core_v1 = cluster.core_v1
        self.renderer = renderer or Renderer()
        self.logger = logger or logging.getLogger(__name__)
        self.poll_interval = poll_interval

    # Reads

    @_retry_transient
    def _read(self, action: str, read: Callable, name: str, namespace: Optional[str] = None):
        """Read one object; None if it does not exist."""
        try:
            if namespace is None:
                return read(name)
            return read(name, namespace)
        except ApiException as e:
            if e.status == 404:
                return None
            raise _cluster_error(action, e) from e
        except HTTPError as e:
            raise _cluster_error(action, e) from e

    @_retry_transient
    def _list_pods(self, app_name: str, namespace: str) -> list:
        try:
            pods = self.core_v1.list_namespaced_pod(
                namespace=namespace, label_selector=app_selector(app_name)
            )
        except (ApiException, HTTPError) as e:
            raise _cluster_error(f"list pods for {namespace}/{app_name}", e) from e
        return pods.items or []

    def get_deployment(self, name: str, namespace: str = DEFAULT_NAMESPACE) -> Optional[V1Deployment]:
        """
        Get a deployment.

        Returns:
            V1Deployment or None if not found
        """
        return self._read(
            f"get deployment {namespace}/{name}",
            self.apps_v1.read_namespaced_deployment,
            name,
            namespace,
        )

    def get_service(self, name: str, namespace: str = DEFAULT_NAMESPACE) -> Optional[V1Service]:
        """
        Get a service.

        Returns:
            V1Service or None if not found
        """
        return self._read(
            f"get service {namespace}/{name}",
            self.core_v1.read_namespaced_service,
            name,
            namespace,
        )

    # Upsert

    def upsert(self, desired: DesiredWorkloadState) -> ObservedStatus:
        """
        Create or update the Deployment and Service for a workload.

        Args:
            desired: Desired workload state

        Returns:
            Status observed right after the write

        Raises:
            RenderError: If the desired state is incomplete
            ClusterError: If an API call fails
        """
        self.logger.info(
            f"Deploying {desired.namespace}/{desired.app_name} with image {desired.image_ref}"
        )

        deployment = self.renderer.render_deployment(desired)
        service = self.renderer.render_service(desired)

        self._ensure_namespace(desired.namespace)
        self._upsert_deployment(deployment)
        self._upsert_service(service)

        self.logger.info(f"Deployment of {desired.namespace}/{desired.app_name} completed")
        return self.status(desired.app_name, desired.namespace)

    def _ensure_namespace(self, namespace: str) -> None:
        """Create the namespace if it doesn't exist."""
        if namespace == DEFAULT_NAMESPACE:
            return

        existing = self._read(
            f"check namespace {namespace}", self.core_v1.read_namespace, namespace
        )
        if existing is not None:
            return

        body = V1Namespace(
            metadata=V1ObjectMeta(
                name=namespace, labels={MANAGED_BY_LABEL: MANAGED_BY_VALUE}
            )
        )
        try:
            self.core_v1.create_namespace(body=body)
        except ApiException as e:
            if e.status == 409:
                # Created concurrently by someone else
                self.logger.debug(f"Namespace {namespace} already exists")
                return
            raise _cluster_error(f"create namespace {namespace}", e) from e
        except HTTPError as e:
            raise _cluster_error(f"create namespace {namespace}", e) from e

        self.logger.info(f"Namespace {namespace} created")

    def _upsert_deployment(self, desired: V1Deployment) -> None:
        name = desired.metadata.name
        namespace = desired.metadata.namespace

        existing = self.get_deployment(name, namespace)
        try:
            if existing is None:
                self.apps_v1.create_namespaced_deployment(namespace=namespace, body=desired)
                self.logger.info(f"Deployment {namespace}/{name} created")
                return

            # Selective merge: everything else on the live object is kept
            existing.spec.replicas = desired.spec.replicas

            live_containers = existing.spec.template.spec.containers or []
            desired_containers = desired.spec.template.spec.containers or []
            if live_containers and desired_containers:
                live_containers[0].image = desired_containers[0].image
                live_containers[0].env = desired_containers[0].env

            if existing.metadata.labels is None:
                existing.metadata.labels = {}
            existing.metadata.labels[HASH_LABEL] = desired.metadata.labels.get(HASH_LABEL, "")

            if existing.spec.template.metadata is None:
                existing.spec.template.metadata = V1ObjectMeta()
            if existing.spec.template.metadata.labels is None:
                existing.spec.template.metadata.labels = {}
            existing.spec.template.metadata.labels[MANAGED_BY_LABEL] = MANAGED_BY_VALUE

            self.apps_v1.replace_namespaced_deployment(
                name=name, namespace=namespace, body=existing
            )
        except (ApiException, HTTPError) as e:
            action = "create" if existing is None else "update"
            raise _cluster_error(f"{action} deployment {namespace}/{name}", e) from e

        self.logger.info(f"Deployment {namespace}/{name} updated")

    def _upsert_service(self, desired: V1Service) -> None:
        name = desired.metadata.name
        namespace = desired.metadata.namespace

        existing = self.get_service(name, namespace)
        try:
            if existing is None:
                self.core_v1.create_namespaced_service(namespace=namespace, body=desired)
                self.logger.info(f"Service {namespace}/{name} created")
                return

            # Selective merge: cluster-assigned addresses and resource version
            # stay as they are on the live object
            existing.spec.type = desired.spec.type
            existing.spec.selector = desired.spec.selector
            existing.spec.ports = desired.spec.ports

            if existing.metadata.labels is None:
                existing.metadata.labels = {}
            existing.metadata.labels.update(desired.metadata.labels or {})

            self.core_v1.replace_namespaced_service(
                name=name, namespace=namespace, body=existing
            )
        except (ApiException, HTTPError) as e:
            action = "create" if existing is None else "update"
            raise _cluster_error(f"{action} service {namespace}/{name}", e) from e

        self.logger.info(f"Service {namespace}/{name} updated")

    # Status

    def status(self, app_name: str, namespace: str = DEFAULT_NAMESPACE) -> ObservedStatus:
        """
        Get the current status of a workload.

        Args:
            app_name: Application name
            namespace: Kubernetes namespace

        Returns:
            ObservedStatus

        Raises:
            NotFoundError: If the Deployment does not exist
            ClusterError: If an API call fails
        """
        self.logger.debug(f"Getting status of {namespace}/{app_name}")

        deployment = self.get_deployment(app_name, namespace)
        if deployment is None:
            raise NotFoundError("Deployment", app_name, namespace)

        pods = [pod_status(pod) for pod in self._list_pods(app_name, namespace)]

        desired_replicas = 1
        if deployment.spec is not None and deployment.spec.replicas is not None:
            desired_replicas = deployment.spec.replicas
        ready_replicas = 0
        if deployment.status is not None:
            ready_replicas = deployment.status.ready_replicas or 0

        code = compute_status_code(ready_replicas, desired_replicas, pods)

        return ObservedStatus(
            deployment_name=deployment.metadata.name,
            namespace=deployment.metadata.namespace or namespace,
            ready_replicas=ready_replicas,
            desired_replicas=desired_replicas,
            status=code,
            pods=pods,
            image_digest=(deployment.metadata.labels or {}).get(HASH_LABEL, ""),
            message=build_status_message(code, ready_replicas, desired_replicas),
        )

    # Delete

    def delete(self, app_name: str, namespace: str = DEFAULT_NAMESPACE) -> None:
        """
        Delete the Deployment and Service of a workload.

        Both deletions are attempted even if the first fails.

        Raises:
            DeleteError: If either deletion failed
        """
        self.logger.info(f"Deleting {namespace}/{app_name}")

        failures: dict[str, BaseException] = {}

        try:
            self._delete_deployment(app_name, namespace)
        except ClusterError as e:
            failures["deployment"] = e

        try:
            self._delete_service(app_name, namespace)
        except ClusterError as e:
            failures["service"] = e

        if failures:
            raise DeleteError(failures)

        self.logger.info(f"Deletion of {namespace}/{app_name} completed")

    def _delete_deployment(self, name: str, namespace: str) -> None:
        try:
            # Foreground: the object goes away only after its pods
            self.apps_v1.delete_namespaced_deployment(
                name=name,
                namespace=namespace,
                body=V1DeleteOptions(propagation_policy="Foreground"),
            )
        except ApiException as e:
            if e.status == 404:
                self.logger.debug(f"Deployment {namespace}/{name} already deleted")
                return
            raise _cluster_error(f"delete deployment {namespace}/{name}", e) from e
        except HTTPError as e:
            raise _cluster_error(f"delete deployment {namespace}/{name}", e) from e

        self.logger.info(f"Deployment {namespace}/{name} deleted")

    def _delete_service(self, name: str, namespace: str) -> None:
        try:
            self.core_v1.delete_namespaced_service(name=name, namespace=namespace)
        except ApiException as e:
            if e.status == 404:
                self.logger.debug(f"Service {namespace}/{name} already deleted")
                return
            raise _cluster_error(f"delete service {namespace}/{name}", e) from e
        except HTTPError as e:
            raise _cluster_error(f"delete service {namespace}/{name}", e) from e

        self.logger.info(f"Service {namespace}/{name} deleted")

    def delete_by_labels(self, namespace: str = DEFAULT_NAMESPACE) -> None:
        """
        Delete every Deployment and Service managed by kudev in a namespace.

        Resources without the managed-by=kudev label are never touched.

        Raises:
            ClusterError: If an API call fails
        """
        self.logger.info(f"Deleting all kudev resources in {namespace}")

        try:
            self.apps_v1.delete_collection_namespaced_deployment(
                namespace=namespace, label_selector=MANAGED_SELECTOR
            )
        except ApiException as e:
            if e.status != 404:
                raise _cluster_error(f"delete deployments in {namespace}", e) from e
        except HTTPError as e:
            raise _cluster_error(f"delete deployments in {namespace}", e) from e

        try:
            services = self.core_v1.list_namespaced_service(
                namespace=namespace, label_selector=MANAGED_SELECTOR
            )
        except (ApiException, HTTPError) as e:
            raise _cluster_error(f"list services in {namespace}", e) from e

        for service in services.items or []:
            self._delete_service(service.metadata.name, namespace)

        self.logger.info(f"All kudev resources in {namespace} deleted")

    # Waits

    def wait_for_ready(
        self,
        app_name: str,
        namespace: str = DEFAULT_NAMESPACE,
        timeout: float = 120.0,
        cancel: Optional[threading.Event] = None,
    ) -> ObservedStatus:
        """
        Poll until all desired replicas are ready.

        A missing Deployment or a transient API failure is logged and polled
        again.

        Args:
            app_name: Application name
            namespace: Kubernetes namespace
            timeout: Maximum time to wait in seconds
            cancel: Event that aborts the wait when set

        Returns:
            The ready ObservedStatus

        Raises:
            WaitTimeoutError: If the deadline passes first
            WaitCancelledError: If cancel is set
            ClusterError: On a non-transient API failure
        """
        condition = f"deployment {namespace}/{app_name} to be ready"
        deadline = time.monotonic() + timeout

        while True:
            if cancel is not None and cancel.is_set():
                raise WaitCancelledError(condition)
            if time.monotonic() > deadline:
                raise WaitTimeoutError(condition, timeout)

            try:
                status = self.status(app_name, namespace)
            except NotFoundError as e:
                self.logger.debug(f"Waiting for deployment: {e}")
            except ClusterError as e:
                if not e.is_transient:
                    raise
                self.logger.debug(f"Waiting for deployment: {e}")
            else:
                if status.is_ready:
                    self.logger.info(
                        f"Deployment {namespace}/{app_name} is ready "
                        f"({status.ready_replicas} replicas)"
                    )
                    return status
                self.logger.debug(
                    f"Waiting for deployment {namespace}/{app_name}: "
                    f"{status.ready_replicas}/{status.desired_replicas} ready"
                )

            self._sleep(deadline, cancel, condition)

    def wait_for_deletion(
        self,
        app_name: str,
        namespace: str = DEFAULT_NAMESPACE,
        timeout: float = 120.0,
        cancel: Optional[threading.Event] = None,
    ) -> None:
        """
        Poll until the Deployment no longer exists.

        Raises:
            WaitTimeoutError: If the deadline passes first
            WaitCancelledError: If cancel is set
            ClusterError: If the Deployment cannot be read
        """
        condition = f"deployment {namespace}/{app_name} to be deleted"
        deadline = time.monotonic() + timeout

        while True:
            if cancel is not None and cancel.is_set():
                raise WaitCancelledError(condition)
            if time.monotonic() > deadline:
                raise WaitTimeoutError(condition, timeout)

            if self.get_deployment(app_name, namespace) is None:
                self.logger.info(f"Deployment {namespace}/{app_name} fully deleted")
                return

            self.logger.debug(f"Waiting for deletion of {namespace}/{app_name}")
            self._sleep(deadline, cancel, condition)

    def _sleep(
        self, deadline: float, cancel: Optional[threading.Event], condition: str
    ) -> None:
        """Sleep one poll interval, waking immediately on cancel."""
        interval = max(0.0, min(self.poll_interval, deadline - time.monotonic()))
        if cancel is None:
            time.sleep(interval)
        elif cancel.wait(interval):
            raise WaitCancelledError(condition)
