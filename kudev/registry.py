"""Making built images available to the local cluster.

Local clusters do not pull from the host's docker daemon, so each cluster type
needs its own step: kind and minikube copy the image into their nodes while
Docker Desktop shares the daemon and needs nothing.
"""

import logging
from abc import ABC, abstractmethod
from enum import Enum
from typing import Optional

from .errors import ImageLoadError
from .process import run_command

logger = logging.getLogger(__name__)

UNKNOWN_CLUSTER_HELP = (
    "Supported clusters: Docker Desktop (context docker-desktop), "
    "Minikube (context minikube), Kind (context kind-<cluster-name>). "
    "Check the current context with 'kubectl config current-context' and "
    "switch with 'kubectl config use-context <name>'"
)


class ClusterType(str, Enum):
    """Type of local Kubernetes cluster."""

    DOCKER_DESKTOP = "docker-desktop"
    MINIKUBE = "minikube"
    KIND = "kind"
    UNKNOWN = "unknown"


def detect_cluster_type(kube_context: str) -> tuple[ClusterType, str]:
    """
    Determine the cluster type from a kubeconfig context name.

    Args:
        kube_context: Context name

    Returns:
        Tuple of (cluster type, kind cluster name or "")
    """
    context = (kube_context or "").lower()

    if "docker-desktop" in context or "docker-for-desktop" in context:
        return ClusterType.DOCKER_DESKTOP, ""
    if "minikube" in context:
        return ClusterType.MINIKUBE, ""
    if context.startswith("kind-"):
        return ClusterType.KIND, context[len("kind-"):]
    return ClusterType.UNKNOWN, ""


class ImageLoader(ABC):
    """Makes a locally built image available to a cluster."""

    name = "loader"

    @abstractmethod
    async def load(self, image_ref: str) -> None:
        """
        Load an image.

        Raises:
            ImageLoadError: If the image cannot be loaded
        """


class _CommandLoader(ImageLoader):
    """Loader that shells out to a cluster CLI."""

    def __init__(self, logger: Optional[logging.Logger] = None):
        self.logger = logger or logging.getLogger(__name__)

    def command(self, image_ref: str) -> list[str]:
        raise NotImplementedError

    async def load(self, image_ref: str) -> None:
        args = self.command(image_ref)
        self.logger.info(f"Loading image {image_ref} via {self.name}")

        try:
            result = await run_command(args)
        except OSError as e:
            raise ImageLoadError(
                f"{args[0]} CLI not found",
                suggestion=f"Install {args[0]} and make sure it is on PATH",
                cause=e,
            ) from e

        if not result.success:
            raise ImageLoadError(
                f"{result.command} failed with exit code {result.returncode}: {result.output}",
                suggestion=self.troubleshooting(image_ref),
            )

        self.logger.info(f"Image {image_ref} loaded via {self.name}")

    def troubleshooting(self, image_ref: str) -> str:
        return ""


class KindLoader(_CommandLoader):
    """Loads images with ``kind load docker-image``."""

    name = "kind"

    def __init__(self, cluster_name: str = "", logger: Optional[logging.Logger] = None):
        super().__init__(logger)
        self.cluster_name = cluster_name or "kind"

    def command(self, image_ref: str) -> list[str]:
        return ["kind", "load", "docker-image", image_ref, "--name", self.cluster_name]

    def troubleshooting(self, image_ref: str) -> str:
        return (
            f"Ensure the cluster exists with 'kind get clusters' "
            f"and the image exists with 'docker images {image_ref}'"
        )


class MinikubeLoader(_CommandLoader):
    """Loads images with ``minikube image load``."""

    name = "minikube"

    def command(self, image_ref: str) -> list[str]:
        return ["minikube", "image", "load", image_ref]

    def troubleshooting(self, image_ref: str) -> str:
        return "Ensure Minikube is running with 'minikube status'"


class DockerDesktopLoader(ImageLoader):
    """Docker Desktop shares the build daemon with its cluster; nothing to load."""

    name = "docker-desktop"

    def __init__(self, logger: Optional[logging.Logger] = None):
        self.logger = logger or logging.getLogger(__name__)

    async def load(self, image_ref: str) -> None:
        self.logger.info(f"Image {image_ref} is available to Docker Desktop automatically")


class Registry(ImageLoader):
    """Picks the loader for the cluster behind a kubeconfig context."""

    name = "registry"

    def __init__(self, kube_context: str, logger: Optional[logging.Logger] = None):
        """
        Initialize registry.

        Args:
            kube_context: Kubeconfig context the images are deployed to
            logger: Logger to use (defaults to the module logger)
        """
        self.kube_context = kube_context
        self.logger = logger or logging.getLogger(__name__)

    @property
    def cluster_type(self) -> tuple[ClusterType, str]:
        """Detected (cluster type, cluster name) for the context."""
        return detect_cluster_type(self.kube_context)

    def get_loader(self) -> ImageLoader:
        """
        Return the loader for the context's cluster type.

        Raises:
            ImageLoadError: If the cluster type is not recognised
        """
        cluster_type, cluster_name = self.cluster_type
        self.logger.debug(f"Detected cluster type {cluster_type.value} for {self.kube_context}")

        if cluster_type is ClusterType.DOCKER_DESKTOP:
            return DockerDesktopLoader(self.logger)
        if cluster_type is ClusterType.MINIKUBE:
            return MinikubeLoader(self.logger)
        if cluster_type is ClusterType.KIND:
            return KindLoader(cluster_name, self.logger)

        raise ImageLoadError(
            f"unknown cluster type for context {self.kube_context!r}",
            suggestion=UNKNOWN_CLUSTER_HELP,
        )

    async def load(self, image_ref: str) -> None:
        loader = self.get_loader()
        await loader.load(image_ref)
