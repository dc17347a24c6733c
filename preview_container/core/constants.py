"""Constants used throughout the preview container core."""


# Naming
CONTAINER_PREFIX = "dyad-app-"
DEPENDENCY_VOLUME_SUFFIX = "-node-modules"
APP_ID_LABEL = "dyad.app-id"
APP_PATH_LABEL = "dyad.app-path"
MANAGED_LABEL = "dyad.managed"

# Engines
SUPPORTED_ENGINES = ("docker", "podman")
DEFAULT_ENGINE = "docker"
DEFAULT_IMAGE = "dyad-vite-dev:latest"
DEFAULT_PORT = 32100
PORT_RANGE = (32100, 32200)
RESTART_POLICIES = ("no", "always", "on-failure", "unless-stopped")
BUILTIN_NETWORKS = ("bridge", "host", "none", "default", "private", "slirp4netns", "pasta")

# Paths inside the container
CONTAINER_WORKDIR = "/app"
DEPENDENCY_DIR = "/app/node_modules"
DEPENDENCY_MARKER = "/app/node_modules/.dependency-hash"
SYNC_STAGING_PREFIX = ".preview-sync-"
# Outside the dev server's watched tree, on the same container filesystem as /app
SYNC_STAGING_ROOT = "/tmp"

# Dependency manifests; a change to any of these forces a reinstall
MANIFEST_FILES = frozenset({
    "package.json",
    "pnpm-lock.yaml",
    "package-lock.json",
    "yarn.lock",
})

PACKAGE_MANAGERS = ("pnpm", "yarn", "npm")
LOCKFILES = {
    "pnpm-lock.yaml": "pnpm",
    "yarn.lock": "yarn",
    "package-lock.json": "npm",
}

# Directories never mirrored into the container
SYNC_IGNORE = frozenset({
    "node_modules",
    ".git",
    ".next",
    "dist",
    "build",
    ".turbo",
    ".cache",
    ".pnpm-store",
    ".DS_Store",
    "__pycache__",
})

# Lowercased substrings in dev-server output that mean the app is serving
READINESS_MARKERS = (
    "local:",
    "ready in",
    "application started",
    "server running",
    "dev server running",
    "localhost:",
    "network:",
)

# Timeout values (seconds)
ENGINE_TIMEOUT = 30
PULL_TIMEOUT = 300
PING_TIMEOUT = 5
STOP_TIMEOUT = 10
INSTALL_TIMEOUT = 600
READINESS_TIMEOUT = 120
READINESS_MAX_INTERVAL = 5
STARTUP_GRACE = 2
STATUS_TTL = 2.0
IDLE_TIMEOUT = 30 * 60
EVENTS_WINDOW = 24 * 60 * 60

# Retry policy for transient engine failures
RETRY_ATTEMPTS = 3
RETRY_MIN_WAIT = 0.5
RETRY_MAX_WAIT = 4.0

# Logs
DEFAULT_LOG_LINES = 100
READINESS_LOG_LINES = 200
LOG_STREAM_BUFFER = 256
