"""Models for the preview container core."""

from .config import (
    ContainerConfig,
    ContainerizationConfig,
    DockerSettings,
    PodmanSettings,
    ResourceLimits,
    VolumeMount,
)
from .container import (
    ContainerOperationResult,
    ContainerStatus,
    HealthTag,
    LogOptions,
    RunContainerOptions,
    StatusTag,
    SyncFilesOptions,
)

__all__ = [
    'ContainerConfig',
    'ContainerizationConfig',
    'DockerSettings',
    'PodmanSettings',
    'ResourceLimits',
    'VolumeMount',
    'ContainerOperationResult',
    'ContainerStatus',
    'HealthTag',
    'LogOptions',
    'RunContainerOptions',
    'StatusTag',
    'SyncFilesOptions',
]
