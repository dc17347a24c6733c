import pytest

from preview_container.core.constants import DEPENDENCY_MARKER
from preview_container.core.startup_script import (
    detect_package_manager,
    get_dev_command,
    get_install_command,
    get_install_script,
    get_startup_script,
)


class TestPackageManager:
    @pytest.mark.parametrize('lockfile, expected', [
        ('pnpm-lock.yaml', 'pnpm'),
        ('yarn.lock', 'yarn'),
        ('package-lock.json', 'npm'),
    ])
    def test_detects_from_lockfile(self, tmp_path, lockfile, expected):
        (tmp_path / lockfile).write_text('')

        assert detect_package_manager(str(tmp_path)) == expected

    def test_falls_back_to_default(self, tmp_path):
        assert detect_package_manager(str(tmp_path), default='yarn') == 'yarn'
        assert detect_package_manager(None) == 'pnpm'
        assert detect_package_manager(str(tmp_path), default='bun') == 'pnpm'

    def test_commands(self):
        assert get_install_command('npm') == 'npm install --legacy-peer-deps'
        assert get_dev_command('npm', 4000) == 'npm run dev -- --host 0.0.0.0 --port 4000'
        assert get_dev_command('yarn', 4000) == 'yarn dev --host 0.0.0.0 --port 4000'


class TestScripts:
    """Test the scripts run inside containers."""

    def test_install_script_writes_marker_last(self):
        script = get_install_script('pnpm')
        lines = script.strip().splitlines()

        assert lines[0] == 'set -e'
        assert f'rm -f {DEPENDENCY_MARKER}' in lines
        assert lines.index('pnpm install') < next(
            i for i, line in enumerate(lines) if line.endswith(f'> {DEPENDENCY_MARKER}')
        )

    def test_startup_script(self):
        script = get_startup_script('pnpm', 4000)

        assert 'echo "[INFO] Container starting for port 4000..."' in script
        assert 'PREVIEW_SKIP_INSTALL' in script
        assert '    pnpm install' in script
        assert 'exec pnpm run dev --host 0.0.0.0 --port 4000' in script
        # the nested install runs inside the outer script's cwd and -e
        assert script.count('set -e') == 1
