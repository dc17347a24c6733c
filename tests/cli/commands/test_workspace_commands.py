import json

from preview_container.cli.main import cli


def start_app(cli_runner, app_dir):
    result = cli_runner.invoke(cli, ['start', 'app-42', str(app_dir), '-p', '4000'])
    assert result.exit_code == 0, result.output


class TestSyncCommand:
    """Test the sync command."""

    def test_sync_requires_paths_or_full(self, cli_runner, cli_service):
        result = cli_runner.invoke(cli, ['sync', 'app-42'])

        assert result.exit_code == 2
        assert "Give one or more PATHS or use --full" in result.output

    def test_sync_changed_file(self, cli_runner, cli_service, fake_handler, app_dir):
        start_app(cli_runner, app_dir)
        (app_dir / 'src' / 'App.tsx').write_text("export default () => null;")

        result = cli_runner.invoke(cli, ['sync', 'app-42', 'src/App.tsx'])

        assert result.exit_code == 0
        assert "synced  src/App.tsx" in result.output
        assert fake_handler.calls['install'] == 0

    def test_sync_manifest_json(self, cli_runner, cli_service, fake_handler, app_dir):
        start_app(cli_runner, app_dir)

        result = cli_runner.invoke(cli, ['sync', 'app-42', 'package.json', '--json'])

        assert result.exit_code == 0
        payload = json.loads(result.output)
        assert payload['data']['installed'] is True
        assert fake_handler.calls['install'] == 1

    def test_sync_without_container(self, cli_runner, cli_service):
        result = cli_runner.invoke(cli, ['sync', 'app-42', 'src/App.tsx'])

        assert result.exit_code == 1
        assert "ContainerNotFound" in result.output


class TestExecCommand:
    def test_exec_prints_output(self, cli_runner, cli_service, app_dir):
        start_app(cli_runner, app_dir)

        result = cli_runner.invoke(cli, ['exec', 'app-42', 'echo', 'hi'])

        assert result.exit_code == 0
        assert result.output.strip() == "echo hi"

    def test_exec_failure(self, cli_runner, cli_service, app_dir):
        start_app(cli_runner, app_dir)

        result = cli_runner.invoke(cli, ['exec', 'app-42', 'sh', '-c', 'exit 3'])

        assert result.exit_code == 1
        assert "Command exited with code 3" in result.output


class TestLogsAndEventsCommands:
    def test_logs_snapshot(self, cli_runner, cli_service, app_dir):
        start_app(cli_runner, app_dir)

        result = cli_runner.invoke(cli, ['logs', 'app-42', '-n', '10'])

        assert result.exit_code == 0
        assert "Container starting for port 4000" in result.output
        assert "Local:" in result.output

    def test_logs_follow(self, cli_runner, cli_service, fake_handler, app_dir):
        start_app(cli_runner, app_dir)

        result = cli_runner.invoke(cli, ['logs', 'app-42', '--follow'])

        assert result.exit_code == 0
        assert "Container starting for port 4000" in result.output
        assert fake_handler.closed_streams == 1

    def test_logs_of_absent_app(self, cli_runner, cli_service):
        result = cli_runner.invoke(cli, ['logs', 'app-42'])

        assert result.exit_code == 1
        assert "ContainerNotFound" in result.output

    def test_events(self, cli_runner, cli_service, app_dir):
        start_app(cli_runner, app_dir)

        result = cli_runner.invoke(cli, ['events', 'app-42'])

        assert result.exit_code == 0
        assert "Action" in result.output
        assert "create" in result.output
        assert "start" in result.output

    def test_no_events(self, cli_runner, cli_service):
        result = cli_runner.invoke(cli, ['events', 'app-42'])

        assert result.exit_code == 0
        assert "No events found" in result.output
