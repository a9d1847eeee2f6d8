"""Container image builders."""

import logging
from abc import ABC, abstractmethod
from typing import Optional

from .errors import BuildError
from .models import BuildOptions, ImageRef
from .process import run_command

logger = logging.getLogger(__name__)


class Builder(ABC):
    """Builds a container image from a source directory."""

    name = "builder"

    @abstractmethod
    async def build(self, options: BuildOptions) -> ImageRef:
        """
        Build an image.

        Args:
            options: Build request

        Returns:
            Reference to the built image

        Raises:
            BuildError: If the build fails
        """


class DockerBuilder(Builder):
    """Builds images with the docker CLI."""

    name = "docker"

    def __init__(self, logger: Optional[logging.Logger] = None, docker: str = "docker"):
        """
        Initialize docker builder.

        Args:
            logger: Logger to use (defaults to the module logger)
            docker: docker executable
        """
        self.logger = logger or logging.getLogger(__name__)
        self.docker = docker

    @staticmethod
    def build_args(options: BuildOptions) -> list[str]:
        """Arguments for ``docker build``, excluding the executable."""
        args = [
            "build",
            "-t",
            f"{options.image_name}:{options.image_tag}",
            "-f",
            options.dockerfile_path,
        ]
        for key, value in sorted(options.build_args.items()):
            args.extend(["--build-arg", f"{key}={value}"])
        if options.target:
            args.extend(["--target", options.target])
        if options.no_cache:
            args.append("--no-cache")
        args.append(options.source_dir)
        return args

    async def build(self, options: BuildOptions) -> ImageRef:
        errors = options.validation_errors()
        if errors:
            raise BuildError(f"invalid build options: {'; '.join(errors)}")

        await self._check_daemon()

        full_ref = f"{options.image_name}:{options.image_tag}"
        self.logger.info(f"Building image {full_ref} from {options.dockerfile_path}")

        try:
            result = await run_command(
                [self.docker, *self.build_args(options)],
                on_line=lambda line: self.logger.info(f"[docker] {line}"),
            )
        except OSError as e:
            raise BuildError(f"failed to start {self.docker} build", cause=e) from e

        if not result.success:
            raise BuildError(
                f"docker build failed with exit code {result.returncode}",
                suggestion="Check the build output above for the failing step",
            )

        image_id, digest = await self._inspect(full_ref)
        self.logger.info(f"Built image {full_ref} ({image_id[:19]})")
        return ImageRef(full_ref=full_ref, id=image_id, digest=digest)

    async def _check_daemon(self) -> None:
        """Verify the docker daemon is reachable."""
        try:
            result = await run_command(
                [self.docker, "version", "--format", "{{.Server.Version}}"]
            )
        except OSError as e:
            raise BuildError(
                "docker CLI not found",
                suggestion="Install Docker and make sure 'docker' is on PATH",
                cause=e,
            ) from e

        if not result.success:
            raise BuildError(
                f"docker daemon is not running or not accessible: {result.output}",
                suggestion="Start Docker Desktop or the docker service, then run 'docker version'",
            )
        self.logger.debug(f"Docker daemon available (version {result.output.strip()})")

    async def _inspect(self, full_ref: str) -> tuple[str, str]:
        """Return (image id, first repo digest) of a local image."""
        try:
            result = await run_command(
                [
                    self.docker,
                    "image",
                    "inspect",
                    "--format",
                    "{{.ID}} {{if .RepoDigests}}{{index .RepoDigests 0}}{{end}}",
                    full_ref,
                ]
            )
        except OSError as e:
            raise BuildError(f"failed to inspect image {full_ref}", cause=e) from e

        if not result.success:
            raise BuildError(f"failed to inspect image {full_ref}: {result.output}")

        parts = result.output.split()
        image_id = parts[0] if parts else ""
        digest = parts[1] if len(parts) > 1 else ""
        return image_id, digest
