"""Engine-neutral helpers: error classification, state derivation and sync archives."""

import io
import os
import re
import shlex
import tarfile
from datetime import datetime
from pathlib import Path, PurePosixPath
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union

from ..core.constants import CONTAINER_WORKDIR, READINESS_MARKERS, SYNC_IGNORE, SYNC_STAGING_ROOT
from ..models.container import HealthTag, StatusTag
from ..services.exceptions import (
    ConfigurationError,
    ContainerizationError,
    ContainerNotFoundError,
    EngineCommandError,
    EngineUnavailableError,
    ImagePullError,
    PortConflictError,
    ResourceLimitExceededError,
    TransientEngineError,
)

_MEMORY_RE = re.compile(r"^(\d+(?:\.\d+)?)\s*([kmgt]?)(?:i?b)?$", re.IGNORECASE)
_MEMORY_UNITS = {"": 1, "k": 1024, "m": 1024 ** 2, "g": 1024 ** 3, "t": 1024 ** 4}
_TIME_RE = re.compile(
    r"^(\d{4}-\d{2}-\d{2})[T ](\d{2}:\d{2}:\d{2})(\.\d+)?\s*(Z|[+-]\d{2}:?\d{2})?"
)
_CLEAN_EXIT_CODES = (0, 137, 143)  # normal exit, SIGKILL, SIGTERM

# Ordered: the first matching pattern decides the kind
_ERROR_PATTERNS = (
    (PortConflictError, (
        "port is already allocated",
        "address already in use",
        "ports are not available",
    )),
    (ImagePullError, (
        "pull access denied",
        "manifest unknown",
        "image not known",
        "no such image",
        "repository does not exist",
        "unable to find image",
        "initializing source",
    )),
    (ResourceLimitExceededError, (
        "minimum memory limit",
        "range of cpus",
        "memory limit",
        "cpu quota",
        "cannot set memory",
        "nanocpus",
    )),
    (ContainerNotFoundError, (
        "no such container",
        "no container with name or id",
        "no such object",
    )),
    (EngineUnavailableError, (
        "cannot connect to",
        "connection refused",
        "is the docker daemon running",
        "unable to connect to podman",
    )),
    (TransientEngineError, (
        "timed out",
        "timeout",
        "database is locked",
        "resource temporarily unavailable",
        "try again",
        "is already in progress",
    )),
)


def classify_engine_error(message: str, detail: Optional[str] = None) -> ContainerizationError:
    """Map raw engine error text to a typed failure."""
    text = f"{message} {detail or ''}".lower()
    for error_class, patterns in _ERROR_PATTERNS:
        if any(pattern in text for pattern in patterns):
            return error_class(message, detail)
    return EngineCommandError(message, detail)


def parse_memory(value: str) -> int:
    """Parse a memory size such as ``512m`` or ``1.5g`` into bytes."""
    match = _MEMORY_RE.match(str(value).strip())
    if not match:
        raise ConfigurationError(f"Invalid memory limit: {value!r}")
    number, unit = match.groups()
    return int(float(number) * _MEMORY_UNITS[unit.lower()])


def parse_engine_time(value: Optional[str]) -> Optional[datetime]:
    """Parse an engine timestamp (RFC 3339 with nanoseconds, or Go's default format)."""
    if not value:
        return None
    match = _TIME_RE.match(value.strip())
    if not match:
        return None
    day, clock, fraction, zone = match.groups()
    if day.startswith("0001-"):
        return None  # Go zero time: never started
    fraction = (fraction or "")[:7]
    if not zone or zone == "Z":
        zone = "+00:00"
    elif ":" not in zone:
        zone = f"{zone[:3]}:{zone[3:]}"
    return datetime.fromisoformat(f"{day}T{clock}{fraction}{zone}")


def derive_health(state: Dict[str, Any]) -> HealthTag:
    """Health tag from the engine's health check state, if the image has one."""
    health = state.get("Health") or state.get("Healthcheck") or {}
    try:
        return HealthTag((health.get("Status") or "none").lower())
    except ValueError:
        return HealthTag.NONE


def is_running_state(state: Dict[str, Any]) -> bool:
    return bool(state.get("Running")) and not state.get("Paused") and not state.get("Restarting")


def derive_status_tag(state: Dict[str, Any], is_ready: bool) -> StatusTag:
    """Coarse status tag from raw engine state."""
    status = (state.get("Status") or "").lower()
    if is_running_state(state):
        return StatusTag.RUNNING if is_ready else StatusTag.STARTING
    if state.get("Restarting") or status in ("created", "restarting"):
        return StatusTag.STARTING
    if status == "dead" or state.get("OOMKilled"):
        return StatusTag.ERROR
    if status == "exited" and state.get("ExitCode", 0) not in _CLEAN_EXIT_CODES:
        return StatusTag.ERROR
    return StatusTag.STOPPED


def published_port(attrs: Dict[str, Any]) -> Optional[int]:
    """First host port published by the container."""
    network = attrs.get("NetworkSettings") or {}
    host_config = attrs.get("HostConfig") or {}
    for ports in (network.get("Ports"), host_config.get("PortBindings")):
        for bindings in (ports or {}).values():
            for binding in bindings or []:
                host_port = binding.get("HostPort") if isinstance(binding, dict) else None
                if host_port:
                    return int(host_port)
    return None


def logs_indicate_ready(logs: str) -> bool:
    """Whether dev-server output shows it is accepting requests."""
    lowered = logs.lower()
    return any(marker in lowered for marker in READINESS_MARKERS)


def normalize_sync_path(path: str) -> str:
    """Turn a caller-supplied path into a safe path relative to the app root."""
    relative = PurePosixPath(str(path).replace("\\", "/").lstrip("/"))
    if not relative.parts or any(part in ("..", "") for part in relative.parts):
        raise ValueError(f"Refusing to sync path outside the app root: {path!r}")
    return relative.as_posix()


def _walk_tree(root: Path, start: Path) -> Iterable[Path]:
    for dirpath, dirnames, filenames in os.walk(start):
        dirnames[:] = sorted(d for d in dirnames if d not in SYNC_IGNORE)
        for filename in sorted(filenames):
            if filename not in SYNC_IGNORE:
                yield Path(dirpath) / filename


def build_archive(app_path: Union[str, Path], file_paths: Optional[Iterable[str]],
                  prefix: str) -> Tuple[bytes, List[str], List[str]]:
    """Pack source files into an in-memory tar rooted at ``prefix``.

    With ``file_paths`` None the whole tree (minus ignored directories) is
    packed. Returns the archive, the relative paths packed, and the requested
    paths that no longer exist on the host.
    """
    root = Path(app_path)
    if not root.is_dir():
        raise ConfigurationError(f"App source path does not exist: {root}")

    if file_paths is None:
        candidates = list(_walk_tree(root, root))
        missing: List[str] = []
    else:
        candidates, missing = [], []
        for raw in file_paths:
            relative = normalize_sync_path(raw)
            host_path = root / relative
            if host_path.is_dir():
                candidates.extend(_walk_tree(root, host_path))
            elif host_path.exists() or host_path.is_symlink():
                candidates.append(host_path)
            else:
                missing.append(relative)

    packed = []
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w") as tar:
        for host_path in candidates:
            relative = host_path.relative_to(root).as_posix()
            tar.add(str(host_path), arcname=f"{prefix}/{relative}", recursive=False)
            packed.append(relative)
    return buffer.getvalue(), packed, missing


def build_commit_script(staging: str, deleted: Iterable[str]) -> str:
    """Move staged files into place, one rename per file, then drop the staging dir."""
    stage_dir = f"{SYNC_STAGING_ROOT}/{staging}"
    lines = [
        "set -e",
        f"trap 'rm -rf {shlex.quote(stage_dir)}' EXIT",
        f"mkdir -p {shlex.quote(stage_dir)}",
        f"cd {shlex.quote(stage_dir)}",
        "find . \\( -type f -o -type l \\) | while IFS= read -r f; do",
        f"    mkdir -p \"{CONTAINER_WORKDIR}/$(dirname \"$f\")\"",
        f"    mv -f \"$f\" \"{CONTAINER_WORKDIR}/$f\"",
        "done",
    ]
    for relative in deleted:
        lines.append(f"rm -f {shlex.quote(f'{CONTAINER_WORKDIR}/{relative}')}")
    return "\n".join(lines) + "\n"
