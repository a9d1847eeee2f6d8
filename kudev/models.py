"""Data models for kudev."""

from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Optional

from pydantic import BaseModel, Field

if TYPE_CHECKING:
    from .config import DeploymentConfig


def utcnow() -> datetime:
    """Current time in UTC."""
    return datetime.now(timezone.utc)


class FileOperation(str, Enum):
    """Semantic file change operation."""

    WRITE = "write"
    CREATE = "create"
    DELETE = "delete"
    RENAME = "rename"


class FileChangeEvent(BaseModel):
    """A single file system change, relative to the watched root."""

    path: str
    operation: FileOperation
    observed_at: datetime = Field(default_factory=utcnow)


# Ordered events collected within one debounce window.
EventBatch = list[FileChangeEvent]


class StatusCode(str, Enum):
    """Deployment health."""

    RUNNING = "Running"
    PENDING = "Pending"
    DEGRADED = "Degraded"
    FAILED = "Failed"
    UNKNOWN = "Unknown"

    @property
    def is_healthy(self) -> bool:
        """True if all replicas are ready."""
        return self is StatusCode.RUNNING


class EnvVar(BaseModel):
    """Container environment variable."""

    name: str
    value: str = ""


class DesiredWorkloadState(BaseModel):
    """Desired Deployment/Service state for one application."""

    app_name: str
    namespace: str = "default"
    image_ref: str
    image_digest: str = ""
    replicas: int = 1
    service_port: int = 8080
    env: list[EnvVar] = Field(default_factory=list)

    @classmethod
    def from_config(
        cls, config: "DeploymentConfig", image_ref: str, image_digest: str
    ) -> "DesiredWorkloadState":
        """
        Build desired state from project configuration and a built image.

        Args:
            config: Loaded project configuration
            image_ref: Full image reference (e.g. "myapp:kudev-a1b2c3d4")
            image_digest: Source digest the image was built from

        Returns:
            DesiredWorkloadState
        """
        return cls(
            app_name=config.metadata.name,
            namespace=config.spec.namespace,
            image_ref=image_ref,
            image_digest=image_digest,
            replicas=config.spec.replicas,
            service_port=config.spec.service_port,
            env=[EnvVar(name=e.name, value=e.value) for e in config.spec.env],
        )

    def validation_errors(self) -> list[str]:
        """Return the reasons this state cannot be rendered, if any."""
        errors = []
        if not self.app_name:
            errors.append("app_name is required")
        if not self.namespace:
            errors.append("namespace is required")
        if not self.image_ref:
            errors.append("image_ref is required")
        if self.service_port <= 0:
            errors.append("service_port must be positive")
        if self.replicas <= 0:
            errors.append("replicas must be positive")
        return errors


class PodStatus(BaseModel):
    """Status of an individual pod."""

    name: str
    phase: str = "Unknown"
    ready: bool = False
    restarts: int = 0
    created_at: Optional[datetime] = None
    message: str = ""


class ObservedStatus(BaseModel):
    """Deployment status as observed in the cluster at call time."""

    deployment_name: str
    namespace: str
    ready_replicas: int = 0
    desired_replicas: int = 0
    status: StatusCode = StatusCode.UNKNOWN
    pods: list[PodStatus] = Field(default_factory=list)
    image_digest: str = ""
    message: str = ""
    observed_at: datetime = Field(default_factory=utcnow)

    @property
    def is_ready(self) -> bool:
        """True if the deployment has all desired replicas ready."""
        return self.desired_replicas > 0 and self.ready_replicas >= self.desired_replicas

    def summary(self) -> str:
        """One-line status summary."""
        return (
            f"{self.deployment_name}: {self.ready_replicas}/{self.desired_replicas} "
            f"replicas ready ({self.status.value})"
        )


class BuildOptions(BaseModel):
    """Image build request."""

    source_dir: str
    dockerfile_path: str
    image_name: str
    image_tag: str
    build_args: dict[str, str] = Field(default_factory=dict)
    target: Optional[str] = None
    no_cache: bool = False

    def validation_errors(self) -> list[str]:
        """Return missing required fields, if any."""
        errors = []
        if not self.source_dir:
            errors.append("source_dir is required")
        if not self.dockerfile_path:
            errors.append("dockerfile_path is required")
        if not self.image_name:
            errors.append("image_name is required")
        if not self.image_tag:
            errors.append("image_tag is required")
        return errors


class ImageRef(BaseModel):
    """Reference to a built image."""

    full_ref: str
    id: str = ""
    digest: str = ""

    def __str__(self) -> str:
        return self.full_ref


class RebuildStage(str, Enum):
    """Step of a rebuild cycle, used to report where a cycle stopped."""

    HASH = "hash"
    TAG = "tag"
    BUILD = "build"
    LOAD = "load"
    DEPLOY = "deploy"
    DONE = "done"


class RebuildResult(BaseModel):
    """Outcome of one orchestrator rebuild cycle."""

    digest: str = ""
    skipped: bool = False
    stage: RebuildStage = RebuildStage.DONE
    image_ref: Optional[str] = None
    status: Optional[ObservedStatus] = None
    error: Optional[str] = None
    elapsed_seconds: float = 0.0

    @property
    def succeeded(self) -> bool:
        """True if the cycle completed or was skipped without error."""
        return self.error is None
