"""Per-call value objects and derived container state."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from .config import VolumeMount


class StatusTag(str, Enum):
    """Coarse container status."""
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    ERROR = "error"


class HealthTag(str, Enum):
    """Engine health check status."""
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"
    STARTING = "starting"
    NONE = "none"


@dataclass(frozen=True)
class RunContainerOptions:
    """Parameters for a single run_container call."""
    app_id: str
    app_path: str
    port: Optional[int] = None  # None means the configured default
    force_recreate: bool = False
    skip_install: bool = False
    cpu_limit: Optional[float] = None
    memory_limit: Optional[str] = None
    environment: Dict[str, str] = field(default_factory=dict)
    volume_mounts: List[VolumeMount] = field(default_factory=list)


@dataclass(frozen=True)
class SyncFilesOptions:
    """Parameters for a single sync_files_to_container call."""
    app_id: str
    file_paths: Optional[List[str]] = None
    full_sync: bool = False
    app_path: Optional[str] = None  # None means read it from the container label


@dataclass(frozen=True)
class LogOptions:
    """Parameters for log snapshots and streams."""
    app_id: str
    follow: bool = True
    tail: Optional[int] = None
    since: Optional[str] = None
    timestamps: bool = False


@dataclass(frozen=True)
class ContainerStatus:
    """Point-in-time view of an application container.

    Instances are never updated in place; a new status replaces the old one.
    """
    app_id: str
    is_running: bool = False
    is_ready: bool = False
    has_dependencies_installed: bool = False
    container_name: Optional[str] = None
    port: Optional[int] = None
    status: StatusTag = StatusTag.STOPPED
    health: HealthTag = HealthTag.NONE
    uptime: Optional[float] = None
    error: Optional[str] = None
    container_id: Optional[str] = None

    def __post_init__(self):
        if self.is_ready and not self.is_running:
            raise ValueError("A container cannot be ready without running")

    @classmethod
    def stopped(cls, app_id: str, error: Optional[str] = None) -> 'ContainerStatus':
        """Status of an application with no container."""
        return cls(app_id=app_id, status=StatusTag.STOPPED, error=error)

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return {
            "appId": self.app_id,
            "isRunning": self.is_running,
            "isReady": self.is_ready,
            "hasDependenciesInstalled": self.has_dependencies_installed,
            "containerName": self.container_name,
            "port": self.port,
            "status": self.status.value,
            "health": self.health.value,
            "uptime": self.uptime,
            "error": self.error,
        }


@dataclass(frozen=True)
class ContainerOperationResult:
    """Outcome of a mutating container operation."""
    success: bool
    message: str
    data: Optional[Any] = None
    error: Optional[str] = None  # diagnostic detail, may hold raw engine output
    error_kind: Optional[str] = None

    @classmethod
    def ok(cls, message: str, data: Any = None) -> 'ContainerOperationResult':
        return cls(success=True, message=message, data=data)

    @classmethod
    def fail(cls, message: str, error: Optional[str] = None,
             error_kind: str = "EngineError", data: Any = None) -> 'ContainerOperationResult':
        return cls(success=False, message=message, data=data, error=error, error_kind=error_kind)

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        result = {"success": self.success, "message": self.message}
        if self.data is not None:
            result["data"] = self.data.to_dict() if isinstance(self.data, ContainerStatus) else self.data
        if self.error is not None:
            result["error"] = self.error
        if self.error_kind is not None:
            result["errorKind"] = self.error_kind
        return result
