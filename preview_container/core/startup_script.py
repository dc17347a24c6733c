"""Shell scripts run inside preview containers."""

from pathlib import Path
from typing import Optional

from .constants import CONTAINER_WORKDIR, DEPENDENCY_DIR, DEPENDENCY_MARKER, LOCKFILES, PACKAGE_MANAGERS


def detect_package_manager(app_path: Optional[str], default: str = "pnpm") -> str:
    """Pick the package manager from the lockfile present in the app source."""
    if app_path:
        root = Path(app_path)
        for lockfile, manager in LOCKFILES.items():
            if (root / lockfile).exists():
                return manager
    return default if default in PACKAGE_MANAGERS else "pnpm"


def get_install_command(package_manager: str) -> str:
    """Build the dependency install command for a package manager."""
    if package_manager == "pnpm":
        return "pnpm install"
    if package_manager == "yarn":
        return "yarn install"
    return "npm install --legacy-peer-deps"


def get_dev_command(package_manager: str, port: int) -> str:
    """Build the dev server command for a package manager."""
    if package_manager == "pnpm":
        return f"pnpm run dev --host 0.0.0.0 --port {port}"
    if package_manager == "yarn":
        return f"yarn dev --host 0.0.0.0 --port {port}"
    return f"npm run dev -- --host 0.0.0.0 --port {port}"


def get_install_script(package_manager: str) -> str:
    """Install dependencies and write the completion marker.

    The marker holds the manifest hash and is written only after the install
    command succeeds, so its presence means node_modules is complete.
    """
    install_cmd = get_install_command(package_manager)
    return f'''set -e
cd {CONTAINER_WORKDIR}
mkdir -p {DEPENDENCY_DIR}
rm -f {DEPENDENCY_MARKER}
corepack enable 2>/dev/null || true
echo "[INFO] Installing dependencies with {package_manager}..."
{install_cmd}
md5sum package.json | cut -d' ' -f1 > {DEPENDENCY_MARKER}
echo "[INFO] Dependencies installed"
'''


def get_startup_script(package_manager: str, port: int) -> str:
    """Container entrypoint: install when the manifest changed, then serve.

    Setting PREVIEW_SKIP_INSTALL=1 in the container environment skips the
    install step entirely.
    """
    dev_cmd = get_dev_command(package_manager, port)
    install_script = get_install_script(package_manager)
    return f'''set -e
cd {CONTAINER_WORKDIR}
echo "[INFO] Container starting for port {port}..."
START_TIME=$(date +%s)

if [ ! -f package.json ]; then
    echo "[ERROR] No package.json found"
    exit 1
fi

NEEDS_INSTALL=false
if [ "$PREVIEW_SKIP_INSTALL" = "1" ]; then
    echo "[INFO] Dependency install skipped by request"
elif [ ! -f {DEPENDENCY_MARKER} ]; then
    echo "[INFO] No dependency marker found, will install dependencies"
    NEEDS_INSTALL=true
else
    CURRENT_HASH=$(md5sum package.json | cut -d' ' -f1)
    STORED_HASH=$(cat {DEPENDENCY_MARKER})
    if [ "$CURRENT_HASH" != "$STORED_HASH" ]; then
        echo "[INFO] package.json changed, will reinstall dependencies"
        NEEDS_INSTALL=true
    else
        echo "[INFO] Using cached dependencies, skipping installation"
    fi
fi

if [ "$NEEDS_INSTALL" = true ]; then
{_indent(install_script)}
fi

echo "[INFO] Container ready in $(($(date +%s) - START_TIME))s, starting dev server..."
if grep -q '"dev"' package.json; then
    exec {dev_cmd}
else
    echo "[WARN] No 'dev' script found, attempting to start with node"
    exec node index.js
fi
'''


def _indent(script: str) -> str:
    # `set -e` and `cd` are already in effect in the outer script
    lines = [line for line in script.splitlines() if line and line not in ("set -e", f"cd {CONTAINER_WORKDIR}")]
    return "\n".join(f"    {line}" for line in lines)
