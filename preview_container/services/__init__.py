"""Service layer for orchestrating preview containers."""

from .exceptions import (
    ServiceError,
    ContainerizationError,
    ConfigurationError,
    ContainerizationDisabledError,
    EngineUnavailableError,
    EngineCommandError,
    ContainerNotFoundError,
    ImagePullError,
    PortConflictError,
    ResourceLimitExceededError,
    ContainerInUseError,
    TransientEngineError,
    OperationTimeoutError,
    ReadinessTimeoutError,
)
from .containerization_service import ContainerizationService, LifecycleState
from .lifecycle import ActivityTracker

__all__ = [
    "ContainerizationService",
    "LifecycleState",
    "ActivityTracker",
    "ServiceError",
    "ContainerizationError",
    "ConfigurationError",
    "ContainerizationDisabledError",
    "EngineUnavailableError",
    "EngineCommandError",
    "ContainerNotFoundError",
    "ImagePullError",
    "PortConflictError",
    "ResourceLimitExceededError",
    "ContainerInUseError",
    "TransientEngineError",
    "OperationTimeoutError",
    "ReadinessTimeoutError",
]
