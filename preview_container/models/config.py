"""Configuration models for the containerization core."""

from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from ..core.constants import (
    DEFAULT_ENGINE,
    DEFAULT_IMAGE,
    DEFAULT_PORT,
    IDLE_TIMEOUT,
    INSTALL_TIMEOUT,
    PACKAGE_MANAGERS,
    READINESS_MAX_INTERVAL,
    READINESS_TIMEOUT,
    RESTART_POLICIES,
    STATUS_TTL,
)


class VolumeMount(BaseModel):
    """Host path mounted into the container."""
    model_config = ConfigDict(frozen=True)

    host: str
    container: str
    read_only: bool = False


class ResourceLimits(BaseModel):
    """Default resource limits with optional ceilings for per-call overrides."""
    model_config = ConfigDict(frozen=True)

    memory: str = "1g"
    cpus: float = Field(default=1.0, gt=0)
    max_memory: Optional[str] = None
    max_cpus: Optional[float] = Field(default=None, gt=0)


class ContainerConfig(BaseModel):
    """Container settings shared by every application container."""
    model_config = ConfigDict(frozen=True)

    engine: str = DEFAULT_ENGINE
    image: str = DEFAULT_IMAGE
    port: int = Field(default=DEFAULT_PORT, ge=1, le=65535)
    resource_limits: ResourceLimits = Field(default_factory=ResourceLimits)
    environment: Dict[str, str] = Field(default_factory=dict)
    volumes: List[VolumeMount] = Field(default_factory=list)
    network_mode: Optional[str] = None
    restart_policy: str = "no"
    default_package_manager: str = "pnpm"

    @field_validator("engine")
    @classmethod
    def _normalize_engine(cls, value: str) -> str:
        value = value.strip().lower()
        if not value:
            raise ValueError("engine must not be empty")
        return value

    @field_validator("restart_policy")
    @classmethod
    def _check_restart_policy(cls, value: str) -> str:
        if value not in RESTART_POLICIES:
            raise ValueError(f"restart_policy must be one of {', '.join(RESTART_POLICIES)}")
        return value

    @field_validator("default_package_manager")
    @classmethod
    def _check_package_manager(cls, value: str) -> str:
        if value not in PACKAGE_MANAGERS:
            raise ValueError(f"default_package_manager must be one of {', '.join(PACKAGE_MANAGERS)}")
        return value


class DockerSettings(BaseModel):
    """Docker Engine API connection settings."""
    model_config = ConfigDict(frozen=True)

    socket: Optional[str] = None
    host: Optional[str] = None
    timeout: int = 60


class PodmanSettings(BaseModel):
    """Podman CLI settings."""
    model_config = ConfigDict(frozen=True)

    socket: Optional[str] = None
    binary: str = "podman"
    selinux_label: bool = True


class ContainerizationConfig(BaseModel):
    """Read-only configuration snapshot for one process lifetime."""
    model_config = ConfigDict(frozen=True)

    enabled: bool = True
    container: ContainerConfig = Field(default_factory=ContainerConfig)
    docker: DockerSettings = Field(default_factory=DockerSettings)
    podman: PodmanSettings = Field(default_factory=PodmanSettings)
    status_ttl: float = Field(default=STATUS_TTL, ge=0)
    readiness_timeout: float = Field(default=READINESS_TIMEOUT, gt=0)
    readiness_max_interval: float = Field(default=READINESS_MAX_INTERVAL, gt=0)
    install_timeout: float = Field(default=INSTALL_TIMEOUT, gt=0)
    idle_timeout: float = Field(default=IDLE_TIMEOUT, gt=0)

    @property
    def engine(self) -> str:
        """The configured engine name."""
        return self.container.engine
