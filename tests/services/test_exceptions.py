import pytest

from preview_container.services import exceptions


class TestExceptionKinds:
    @pytest.mark.parametrize('error_class, kind', [
        (exceptions.ConfigurationError, 'ConfigurationError'),
        (exceptions.ContainerizationDisabledError, 'ContainerizationDisabled'),
        (exceptions.EngineUnavailableError, 'EngineUnavailable'),
        (exceptions.EngineCommandError, 'EngineError'),
        (exceptions.ContainerNotFoundError, 'ContainerNotFound'),
        (exceptions.ImagePullError, 'ImagePullError'),
        (exceptions.PortConflictError, 'PortConflict'),
        (exceptions.ResourceLimitExceededError, 'ResourceLimitExceeded'),
        (exceptions.ContainerInUseError, 'ContainerInUse'),
        (exceptions.OperationTimeoutError, 'OperationTimeout'),
        (exceptions.ReadinessTimeoutError, 'ReadinessTimeout'),
    ])
    def test_kind(self, error_class, kind):
        error = error_class("message", "detail")

        assert error.kind == kind
        assert error.message == "message"
        assert error.detail == "detail"
        assert str(error) == "message"
        assert isinstance(error, exceptions.ServiceError)

    def test_only_transient_errors_are_retryable(self):
        assert exceptions.TransientEngineError("x").retryable
        assert not exceptions.EngineCommandError("x").retryable
