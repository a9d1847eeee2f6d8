"""kudev - Local hot-reload of container workloads on Kubernetes."""

from .builder import Builder, DockerBuilder
from .cluster import ClusterConnection
from .config import DeploymentConfig, Settings, get_settings, load_config, save_config
from .debounce import Debouncer
from .deployer import Deployer, KubernetesDeployer
from .errors import (
    BuildError,
    ClusterAuthError,
    ClusterError,
    ConfigError,
    DeleteError,
    DeployError,
    HashError,
    ImageLoadError,
    KudevError,
    NoSourceFilesError,
    NotFoundError,
    RenderError,
    WaitCancelledError,
    WaitTimeoutError,
    WatchError,
)
from .hashing import HashCalculator, default_exclusions, should_exclude
from .health import build_status_message, compute_status_code
from .models import (
    BuildOptions,
    DesiredWorkloadState,
    EnvVar,
    EventBatch,
    FileChangeEvent,
    FileOperation,
    ImageRef,
    ObservedStatus,
    PodStatus,
    RebuildResult,
    RebuildStage,
    StatusCode,
)
from .orchestrator import Orchestrator
from .registry import ClusterType, ImageLoader, Registry, detect_cluster_type
from .render import Renderer
from .tagger import Tagger, compare_hashes, is_kudev_tag, parse_tag
from .watcher import FileWatcher

__version__ = "0.1.0"

__all__ = [
    # Change detection
    "HashCalculator",
    "default_exclusions",
    "should_exclude",
    "Tagger",
    "compare_hashes",
    "is_kudev_tag",
    "parse_tag",
    # Watch pipeline
    "FileWatcher",
    "Debouncer",
    "Orchestrator",
    # Build and load
    "Builder",
    "DockerBuilder",
    "ImageLoader",
    "Registry",
    "ClusterType",
    "detect_cluster_type",
    # Cluster
    "ClusterConnection",
    "Deployer",
    "KubernetesDeployer",
    "Renderer",
    "compute_status_code",
    "build_status_message",
    # Configuration
    "DeploymentConfig",
    "Settings",
    "get_settings",
    "load_config",
    "save_config",
    # Models
    "BuildOptions",
    "DesiredWorkloadState",
    "EnvVar",
    "EventBatch",
    "FileChangeEvent",
    "FileOperation",
    "ImageRef",
    "ObservedStatus",
    "PodStatus",
    "RebuildResult",
    "RebuildStage",
    "StatusCode",
    # Errors
    "KudevError",
    "ConfigError",
    "ClusterAuthError",
    "BuildError",
    "ImageLoadError",
    "DeployError",
    "RenderError",
    "ClusterError",
    "NotFoundError",
    "DeleteError",
    "WaitTimeoutError",
    "WaitCancelledError",
    "WatchError",
    "HashError",
    "NoSourceFilesError",
]
