"""Configuration management for kudev.

Two layers:
- ``Settings``: process-level runtime settings from the environment
  (``KUDEV_*`` variables or a ``.env`` file).
- ``DeploymentConfig``: the per-project ``.kudev.yaml`` file.
"""

import re
from functools import lru_cache
from pathlib import Path
from typing import Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .errors import ConfigError

CONFIG_FILE_NAME = ".kudev.yaml"
DEFAULT_API_VERSION = "kudev.io/v1alpha1"
DEFAULT_KIND = "DeploymentConfig"

_DNS1123_LABEL = re.compile(r"^[a-z0-9]([-a-z0-9]*[a-z0-9])?$")


class Settings(BaseSettings):
    """Runtime settings."""

    model_config = SettingsConfigDict(
        env_prefix="KUDEV_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    log_level: str = "INFO"

    # Watch Settings
    debounce_window_seconds: float = Field(
        default=0.5,
        description="Quiet period before a burst of file changes triggers a rebuild",
    )

    # Deployment Settings
    poll_interval_seconds: float = 2.0
    ready_timeout_seconds: float = 120.0
    config_file: Optional[str] = None


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


def _validate_dns_name(value: str, field_name: str) -> str:
    if not 1 <= len(value) <= 63:
        raise ValueError(f"{field_name} must be 1-63 characters")
    if not _DNS1123_LABEL.match(value):
        raise ValueError(
            f"{field_name} must be lowercase alphanumeric or '-', "
            "and start and end with an alphanumeric character"
        )
    return value


class _ConfigModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="forbid")


class EnvVarConfig(_ConfigModel):
    """Environment variable entry in ``spec.env``."""

    name: str
    value: str = ""

    @field_validator("value", mode="before")
    @classmethod
    def _stringify(cls, value):
        # YAML turns `true` and `8080` into non-strings
        if isinstance(value, bool):
            return str(value).lower()
        if value is None:
            return ""
        return str(value)


class MetadataConfig(_ConfigModel):
    """Application identification."""

    name: str

    @field_validator("name")
    @classmethod
    def _check_name(cls, value: str) -> str:
        return _validate_dns_name(value, "metadata.name")


class SpecConfig(_ConfigModel):
    """Deployment specification."""

    image_name: str = Field(default="", alias="imageName")
    dockerfile_path: str = Field(default="./Dockerfile", alias="dockerfilePath")
    namespace: str = "default"
    replicas: int = 1
    local_port: int = Field(default=8080, alias="localPort")
    service_port: int = Field(default=8080, alias="servicePort")
    env: list[EnvVarConfig] = Field(default_factory=list)
    kube_context: str = Field(default="", alias="kubeContext")
    build_context_exclusions: list[str] = Field(
        default_factory=list, alias="buildContextExclusions"
    )

    @field_validator("dockerfile_path")
    @classmethod
    def _check_dockerfile_path(cls, value: str) -> str:
        if not value:
            raise ValueError("spec.dockerfilePath cannot be empty")
        path = Path(value)
        if path.name in (".git", CONFIG_FILE_NAME):
            raise ValueError(f"spec.dockerfilePath cannot point at {path.name}")
        if "docker" not in path.name.lower():
            raise ValueError(
                f"spec.dockerfilePath should name a Dockerfile, got '{path.name}' "
                "(examples: Dockerfile, Dockerfile.dev, docker/Dockerfile)"
            )
        return value

    @field_validator("namespace")
    @classmethod
    def _check_namespace(cls, value: str) -> str:
        return _validate_dns_name(value or "default", "spec.namespace")

    @field_validator("replicas")
    @classmethod
    def _check_replicas(cls, value: int) -> int:
        if value < 1:
            raise ValueError("spec.replicas must be at least 1")
        return value

    @field_validator("local_port", "service_port")
    @classmethod
    def _check_port(cls, value: int) -> int:
        if not 1 <= value <= 65535:
            raise ValueError("ports must be between 1 and 65535")
        return value

    @field_validator("env")
    @classmethod
    def _dedupe_env(cls, value: list[EnvVarConfig]) -> list[EnvVarConfig]:
        # Duplicate names: last one wins, first position is kept
        merged: dict[str, EnvVarConfig] = {}
        for entry in value:
            merged[entry.name] = entry
        return list(merged.values())


class DeploymentConfig(_ConfigModel):
    """Root ``.kudev.yaml`` document."""

    api_version: str = Field(default=DEFAULT_API_VERSION, alias="apiVersion")
    kind: str = DEFAULT_KIND
    metadata: MetadataConfig
    spec: SpecConfig = Field(default_factory=SpecConfig)

    # Directory containing the config file; not part of the YAML document
    project_root: Path = Field(default_factory=Path.cwd, exclude=True)

    @property
    def image_name(self) -> str:
        """Image name to build, defaulting to the application name."""
        return self.spec.image_name or self.metadata.name

    @property
    def dockerfile(self) -> Path:
        """Absolute Dockerfile path resolved against the project root."""
        path = Path(self.spec.dockerfile_path)
        if path.is_absolute():
            return path
        return (self.project_root / path).resolve()


def find_config(start: Optional[Path] = None) -> Path:
    """
    Search for ``.kudev.yaml`` from ``start`` upwards.

    Args:
        start: Directory to start from (defaults to the working directory)

    Returns:
        Path to the config file

    Raises:
        ConfigError: If no config file is found
    """
    current = (start or Path.cwd()).resolve()
    for directory in (current, *current.parents):
        candidate = directory / CONFIG_FILE_NAME
        if candidate.is_file():
            return candidate
    raise ConfigError(
        f"{CONFIG_FILE_NAME} not found in {current} or any parent directory",
        suggestion="Create .kudev.yaml in the project root or pass --config",
    )


def load_config(path: Optional[Path] = None) -> DeploymentConfig:
    """
    Load and validate a project configuration file.

    Args:
        path: Config file path (searched for when omitted)

    Returns:
        Validated DeploymentConfig with project_root set

    Raises:
        ConfigError: If the file is missing, malformed or invalid
    """
    config_path = Path(path) if path else find_config()

    try:
        raw = yaml.safe_load(config_path.read_text(encoding="utf-8"))
    except FileNotFoundError as e:
        raise ConfigError(f"config file not found: {config_path}", cause=e) from e
    except yaml.YAMLError as e:
        raise ConfigError(f"invalid YAML in {config_path}", cause=e) from e

    if not isinstance(raw, dict):
        raise ConfigError(f"{config_path} must contain a mapping")

    try:
        config = DeploymentConfig.model_validate(raw)
    except ValidationError as e:
        raise ConfigError(
            f"invalid configuration in {config_path}",
            suggestion="Fix the fields listed above and retry",
            cause=e,
        ) from e

    config.project_root = config_path.resolve().parent
    if not config.dockerfile.is_file():
        raise ConfigError(
            f"spec.dockerfilePath '{config.spec.dockerfile_path}' "
            f"does not exist at {config.dockerfile}",
            suggestion="Create the Dockerfile or point spec.dockerfilePath at an existing one",
        )
    return config


def save_config(config: DeploymentConfig, path: Path, overwrite: bool = False) -> Path:
    """
    Write a configuration to disk as YAML, using the camelCase field names.

    Args:
        config: Configuration to write
        path: Destination file
        overwrite: Replace an existing file

    Returns:
        The path written

    Raises:
        ConfigError: If the file exists and overwrite is False, or cannot be written
    """
    path = Path(path)
    if path.exists() and not overwrite:
        raise ConfigError(
            f"config file already exists: {path}",
            suggestion="Use --force to overwrite it",
        )

    document = yaml.safe_dump(config.model_dump(by_alias=True), sort_keys=False)
    try:
        path.write_text(document, encoding="utf-8")
    except OSError as e:
        raise ConfigError(f"cannot write {path}", cause=e) from e
    return path
