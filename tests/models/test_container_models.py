import pytest
from pydantic import ValidationError

from preview_container.models.config import ContainerConfig, ContainerizationConfig, ResourceLimits
from preview_container.models.container import (
    ContainerOperationResult,
    ContainerStatus,
    HealthTag,
    StatusTag,
)


class TestContainerStatus:
    """Test the container status snapshot."""

    def test_ready_requires_running(self):
        with pytest.raises(ValueError, match="ready without running"):
            ContainerStatus(app_id='app-42', is_ready=True, is_running=False)

    def test_stopped(self):
        status = ContainerStatus.stopped('app-42', error='engine down')

        assert status.status == StatusTag.STOPPED
        assert status.health == HealthTag.NONE
        assert status.error == 'engine down'

    def test_to_dict(self):
        status = ContainerStatus(
            app_id='app-42', is_running=True, is_ready=True, container_name='dyad-app-app-42',
            port=4000, status=StatusTag.RUNNING, uptime=12.5, container_id='abc',
        )

        assert status.to_dict() == {
            'appId': 'app-42',
            'isRunning': True,
            'isReady': True,
            'hasDependenciesInstalled': False,
            'containerName': 'dyad-app-app-42',
            'port': 4000,
            'status': 'running',
            'health': 'none',
            'uptime': 12.5,
            'error': None,
        }

    def test_is_immutable(self):
        status = ContainerStatus.stopped('app-42')
        with pytest.raises(AttributeError):
            status.port = 4000


class TestContainerOperationResult:
    def test_ok(self):
        result = ContainerOperationResult.ok("Container removed")

        assert result.success
        assert result.error_kind is None
        assert result.to_dict() == {'success': True, 'message': "Container removed"}

    def test_fail_serializes_status_data(self):
        status = ContainerStatus.stopped('app-42')
        result = ContainerOperationResult.fail("Failed", "boom", "PortConflict", status)

        payload = result.to_dict()
        assert payload['errorKind'] == 'PortConflict'
        assert payload['error'] == 'boom'
        assert payload['data']['status'] == 'stopped'


class TestConfigModels:
    """Test configuration validation."""

    def test_defaults(self):
        config = ContainerizationConfig()

        assert config.engine == 'docker'
        assert config.container.restart_policy == 'no'
        assert config.container.default_package_manager == 'pnpm'

    def test_engine_is_normalized(self):
        assert ContainerConfig(engine='  PODMAN ').engine == 'podman'

    def test_empty_engine(self):
        with pytest.raises(ValidationError):
            ContainerConfig(engine=' ')

    @pytest.mark.parametrize('kwargs', [
        {'restart_policy': 'sometimes'},
        {'default_package_manager': 'bun'},
        {'port': 0},
    ])
    def test_invalid_container_config(self, kwargs):
        with pytest.raises(ValidationError):
            ContainerConfig(**kwargs)

    def test_resource_limits_must_be_positive(self):
        with pytest.raises(ValidationError):
            ResourceLimits(cpus=0)

    def test_config_is_frozen(self):
        config = ContainerizationConfig()
        with pytest.raises(ValidationError):
            config.enabled = False
