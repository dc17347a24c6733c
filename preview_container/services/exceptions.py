"""Custom exceptions for the containerization layer.

Every failure a handler or the service can report has a stable ``kind``
string. Result-returning operations surface it in
``ContainerOperationResult.error_kind``; read operations raise it.
"""


class ServiceError(Exception):
    """Base exception for all service-related errors."""

    pass


class ContainerizationError(ServiceError):
    """Base exception for container engine and lifecycle failures."""

    kind = "EngineError"
    retryable = False

    def __init__(self, message: str, detail: str = None):
        super().__init__(message)
        self.message = message
        self.detail = detail


class ConfigurationError(ContainerizationError):
    """Exception raised for invalid containerization configuration."""

    kind = "ConfigurationError"


class ContainerizationDisabledError(ContainerizationError):
    """Exception raised when containerization is switched off."""

    kind = "ContainerizationDisabled"


class EngineUnavailableError(ContainerizationError):
    """Exception raised when the engine control surface cannot be reached."""

    kind = "EngineUnavailable"


class EngineCommandError(ContainerizationError):
    """Exception raised when the engine rejects a command for another reason."""

    kind = "EngineError"


class ContainerNotFoundError(ContainerizationError):
    """Exception raised when an operation targets an absent container."""

    kind = "ContainerNotFound"


class ImagePullError(ContainerizationError):
    """Exception raised when the container image cannot be found or pulled."""

    kind = "ImagePullError"


class PortConflictError(ContainerizationError):
    """Exception raised when the host port is already taken."""

    kind = "PortConflict"


class ResourceLimitExceededError(ContainerizationError):
    """Exception raised when requested resources exceed allowed limits."""

    kind = "ResourceLimitExceeded"


class ContainerInUseError(ContainerizationError):
    """Exception raised when removing a running container without force."""

    kind = "ContainerInUse"


class TransientEngineError(ContainerizationError):
    """Exception raised for engine failures worth retrying (timeouts, locks)."""

    kind = "TransientEngineError"
    retryable = True


class OperationTimeoutError(ContainerizationError):
    """Exception raised when retries of a transient failure are exhausted."""

    kind = "OperationTimeout"


class ReadinessTimeoutError(ContainerizationError):
    """Exception raised when a container does not become ready in time."""

    kind = "ReadinessTimeout"
