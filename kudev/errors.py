"""Error types for kudev.

Every error carries a user-facing message, an optional suggested action and
the underlying cause, plus the exit code the CLI should use.
"""

from typing import Optional

# Exit codes
EXIT_GENERAL = 1
EXIT_CONFIG = 2
EXIT_KUBE_AUTH = 3
EXIT_BUILD = 4
EXIT_DEPLOY = 5
EXIT_WATCH = 6

TRANSIENT_STATUS_CODES = frozenset({429, 500, 502, 503, 504})


class KudevError(Exception):
    """Base class for all kudev errors."""

    exit_code = EXIT_GENERAL

    def __init__(
        self,
        message: str,
        suggestion: str = "",
        cause: Optional[BaseException] = None,
    ):
        """
        Initialize error.

        Args:
            message: User-facing description of what failed
            suggestion: Helpful next step for the user
            cause: Underlying exception, if any
        """
        super().__init__(message)
        self.message = message
        self.suggestion = suggestion
        self.cause = cause

    def __str__(self) -> str:
        if self.cause is not None:
            return f"{self.message}: {self.cause}"
        return self.message


class ConfigError(KudevError):
    """Configuration could not be loaded or is invalid."""

    exit_code = EXIT_CONFIG


class ClusterAuthError(KudevError):
    """Kubernetes client configuration or authentication failed."""

    exit_code = EXIT_KUBE_AUTH


class BuildError(KudevError):
    """Image build failed."""

    exit_code = EXIT_BUILD


class ImageLoadError(KudevError):
    """Built image could not be made available to the cluster."""

    exit_code = EXIT_BUILD


class DeployError(KudevError):
    """Kubernetes deployment operation failed."""

    exit_code = EXIT_DEPLOY


class RenderError(DeployError):
    """Desired state could not be rendered into Kubernetes objects."""


class ClusterError(DeployError):
    """Kubernetes API call failed.

    ``status`` is the HTTP status returned by the API server, or None when the
    server could not be reached at all.
    """

    def __init__(
        self,
        message: str,
        status: Optional[int] = None,
        suggestion: str = "",
        cause: Optional[BaseException] = None,
    ):
        super().__init__(message, suggestion=suggestion, cause=cause)
        self.status = status

    @property
    def is_transient(self) -> bool:
        """True when retrying the same call later may succeed."""
        return self.status is None or self.status in TRANSIENT_STATUS_CODES


class NotFoundError(DeployError):
    """Requested resource does not exist in the cluster."""

    def __init__(self, kind: str, name: str, namespace: str):
        super().__init__(
            f"{kind.lower()} not found: {namespace}/{name}",
            suggestion="Deploy first with 'kudev up'",
        )
        self.kind = kind
        self.name = name
        self.namespace = namespace


class DeleteError(DeployError):
    """One or more resources failed to delete."""

    def __init__(self, failures: dict[str, BaseException]):
        details = "; ".join(f"{kind}: {err}" for kind, err in failures.items())
        super().__init__(f"deletion errors: {details}")
        self.failures = failures


class WaitTimeoutError(DeployError):
    """A polling wait exceeded its deadline."""

    def __init__(self, condition: str, timeout: float):
        super().__init__(
            f"timeout after {timeout:g}s waiting for {condition}",
            suggestion="Check pod events with 'kubectl describe pods'",
        )
        self.condition = condition
        self.timeout = timeout


class WaitCancelledError(DeployError):
    """A polling wait was cancelled before its condition held."""

    def __init__(self, condition: str):
        super().__init__(f"cancelled while waiting for {condition}")
        self.condition = condition


class WatchError(KudevError):
    """File watching could not be started or failed."""

    exit_code = EXIT_WATCH


class HashError(KudevError):
    """Source digest could not be computed."""

    exit_code = EXIT_BUILD


class NoSourceFilesError(HashError):
    """Source tree contains no files after exclusions."""

    def __init__(self, source_dir: str):
        super().__init__(
            f"no files found in {source_dir} (all excluded?)",
            suggestion="Check buildContextExclusions and .dockerignore",
        )
        self.source_dir = source_dir
