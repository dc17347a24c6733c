import asyncio
import json
from unittest.mock import AsyncMock

import pytest

from preview_container.core.constants import PULL_TIMEOUT
from preview_container.handlers import podman_handler
from preview_container.handlers.base import ContainerSpec, RetryPolicy
from preview_container.handlers.podman_handler import PodmanHandler
from preview_container.models.config import ContainerConfig, PodmanSettings, VolumeMount
from preview_container.models.container import LogOptions
from preview_container.services.exceptions import (
    EngineCommandError,
    EngineUnavailableError,
    PortConflictError,
    TransientEngineError,
)

RUNNING = {
    'Id': 'abc123',
    'State': {'Status': 'running', 'Running': True},
    'HostConfig': {'PortBindings': {'4000/tcp': [{'HostIp': '', 'HostPort': '4000'}]}},
}


def run(coro):
    return asyncio.run(coro)


def make_handler(settings=None):
    return PodmanHandler(
        ContainerConfig(engine='podman'),
        settings,
        retry_policy=RetryPolicy(attempts=2, min_wait=0, max_wait=0),
        startup_grace=0,
    )


@pytest.fixture
def handler():
    handler = make_handler()
    handler._run = AsyncMock(return_value=(0, '', ''))
    return handler


def argv(handler, index=-1):
    return handler._run.call_args_list[index].args[0]


class TestCommandLine:
    """Test how podman invocations are built."""

    def test_base_command(self):
        assert make_handler()._base_command() == ['podman']
        socket_handler = make_handler(PodmanSettings(socket='/run/podman/podman.sock'))
        assert socket_handler._base_command() == ['podman', '--url', 'unix:///run/podman/podman.sock']

    def test_create_arguments(self, handler):
        handler._run.return_value = (0, "Trying to pull...\nabc123\n", '')
        spec = ContainerSpec(
            name='dyad-app-app-42',
            image='dyad-vite-dev:latest',
            port=4000,
            command=['sh', '-c', 'true'],
            environment={'PORT': '4000'},
            volumes=[VolumeMount(host='/srv/data', container='/data', read_only=True)],
            dependency_volume='dyad-app-app-42-node-modules',
            cpus=2,
            memory='512m',
            network_mode='preview-net',
        )

        assert run(handler._create(spec)) == 'abc123'

        args = argv(handler)
        assert args[:3] == ['create', '--name', 'dyad-app-app-42']
        assert args[args.index('--publish') + 1] == '4000:4000'
        assert args[args.index('--memory') + 1] == '512m'
        assert 'PORT=4000' in args
        assert 'dyad-app-app-42-node-modules:/app/node_modules:Z' in args
        assert '/srv/data:/data:ro' in args
        assert args[args.index('--network') + 1] == 'preview-net'
        assert args[-4:] == ['dyad-vite-dev:latest', 'sh', '-c', 'true']
        assert handler._run.call_args.kwargs['timeout'] == PULL_TIMEOUT

    def test_selinux_label_can_be_disabled(self):
        handler = make_handler(PodmanSettings(selinux_label=False))
        assert handler._mount_suffix(False) == ''
        assert handler._mount_suffix(True) == ':ro'


class TestPrimitives:
    def test_inspect_absent(self, handler):
        handler._run.return_value = (125, '', 'Error: no such container dyad-app-app-42')

        assert run(handler._inspect('dyad-app-app-42')) is None

    def test_inspect_present(self, handler):
        handler._run.return_value = (0, json.dumps([RUNNING]), '')

        assert run(handler._inspect('dyad-app-app-42')) == RUNNING
        assert argv(handler) == ['container', 'inspect', 'dyad-app-app-42']

    def test_port_conflict(self, handler):
        handler._run.return_value = (
            126, '', 'Error: rootlessport listen tcp 0.0.0.0:4000: bind: address already in use'
        )

        with pytest.raises(PortConflictError):
            run(handler._start('dyad-app-app-42'))

    def test_stop_passes_grace_period(self, handler):
        run(handler._stop('dyad-app-app-42', 10))

        assert argv(handler) == ['stop', '--time', '10', 'dyad-app-app-42']

    def test_put_archive_uses_stdin(self, handler):
        run(handler._put_archive('dyad-app-app-42', '/', b'tar-bytes'))

        assert argv(handler) == ['cp', '-', 'dyad-app-app-42:/']
        assert handler._run.call_args.kwargs['input_data'] == b'tar-bytes'

    def test_exec_returns_command_exit_code(self, handler):
        handler._run.return_value = (1, 'out', 'err')

        result = run(handler._exec('dyad-app-app-42', ['false'], 5))

        assert result.exit_code == 1
        assert result.output == 'outerr'

    def test_exec_engine_failure(self, handler):
        handler._run.return_value = (125, '', 'Error: can only create exec sessions on running containers')

        with pytest.raises(EngineCommandError):
            run(handler._exec('dyad-app-app-42', ['true'], 5))

    def test_ensure_network_creates_when_missing(self, handler):
        handler._run.side_effect = [(1, '', ''), (0, '', '')]

        run(handler._ensure_network('preview-net'))

        assert argv(handler, 0) == ['network', 'exists', 'preview-net']
        assert argv(handler, 1)[:2] == ['network', 'create']

    def test_remove_volume(self, handler):
        handler._run.return_value = (0, '', '')
        assert run(handler._remove_volume('vol')) is True

        handler._run.return_value = (1, '', 'Error: no such volume vol')
        assert run(handler._remove_volume('vol')) is False

        handler._run.return_value = (2, '', 'Error: volume vol is being used by container abc')
        with pytest.raises(EngineCommandError):
            run(handler._remove_volume('vol'))

    def test_events(self, handler):
        lines = [
            json.dumps({'Name': 'dyad-app-app-42', 'Status': 'start', 'Type': 'container',
                        'time': 1700000000, 'Attributes': {'image': 'dyad-vite-dev:latest'}}),
            'not json',
            json.dumps({'Name': 'dyad-app-app-42', 'Status': 'died', 'Type': 'container',
                        'time': 1700000100}),
        ]
        handler._run.return_value = (0, '\n'.join(lines) + '\n', '')

        events = run(handler.get_events('app-42', since=60))

        assert [event['action'] for event in events] == ['start', 'died']
        assert events[0]['attributes'] == {'image': 'dyad-vite-dev:latest'}
        assert events[1]['attributes'] == {}

    def test_engine_details(self, handler):
        handler._run.return_value = (0, json.dumps({
            'host': {'os': 'linux', 'arch': 'amd64', 'cpus': 8},
            'store': {'containerStore': {'number': 3, 'running': 1}, 'graphDriverName': 'overlay'},
            'version': {'Version': '5.2.0'},
        }), '')

        info = run(handler.get_engine_info())

        assert info['version'] == '5.2.0'
        assert info['containersRunning'] == 1
        assert info['storageDriver'] == 'overlay'

    def test_starts_stopped_machine_on_macos(self, handler, monkeypatch):
        monkeypatch.setattr(podman_handler.sys, 'platform', 'darwin')
        handler._run.side_effect = [
            (0, json.dumps([{'Name': 'podman-machine-default*', 'Running': False}]), ''),
            (0, '', ''),
            (0, '{}', ''),
        ]

        run(handler.initialize())

        assert argv(handler, 1) == ['machine', 'start', 'podman-machine-default']
        assert handler.initialized


class TestSubprocess:
    """Test running real processes in place of podman."""

    def test_missing_binary(self):
        handler = make_handler(PodmanSettings(binary='definitely-not-podman'))

        with pytest.raises(EngineUnavailableError, match="not found"):
            run(handler._run(['info']))

    def test_timeout_kills_process(self):
        handler = make_handler(PodmanSettings(binary='sleep'))

        with pytest.raises(TransientEngineError, match="timed out"):
            run(handler._run(['5'], timeout=0.2))

    def test_log_stream_reads_process_output(self):
        handler = make_handler(PodmanSettings(binary='echo'))
        handler._run = AsyncMock(return_value=(0, json.dumps([RUNNING]), ''))

        async def collect():
            stream = await handler.stream_logs(LogOptions(app_id='app-42', follow=False, tail=5))
            async with stream:
                return [line async for line in stream]

        assert run(collect()) == ['logs --tail 5 dyad-app-app-42']
