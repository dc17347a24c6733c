"""Abstract base class for container engine handlers.

The base implements the uniform handler contract on top of a small set of
engine primitives (inspect, create, start, stop, remove, put archive, exec,
volumes, logs, events). Concrete handlers only translate those primitives to
one engine's control surface.
"""

import asyncio
import logging
import re
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple, Union

from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from ..core.constants import (
    APP_ID_LABEL,
    APP_PATH_LABEL,
    BUILTIN_NETWORKS,
    CONTAINER_PREFIX,
    CONTAINER_WORKDIR,
    DEFAULT_LOG_LINES,
    DEPENDENCY_MARKER,
    DEPENDENCY_VOLUME_SUFFIX,
    ENGINE_TIMEOUT,
    EVENTS_WINDOW,
    MANAGED_LABEL,
    READINESS_LOG_LINES,
    RETRY_ATTEMPTS,
    RETRY_MAX_WAIT,
    RETRY_MIN_WAIT,
    STARTUP_GRACE,
    STOP_TIMEOUT,
    SYNC_STAGING_PREFIX,
    SYNC_STAGING_ROOT,
)
from ..core.startup_script import detect_package_manager, get_startup_script
from ..models.config import ContainerConfig, VolumeMount
from ..models.container import (
    ContainerOperationResult,
    ContainerStatus,
    HealthTag,
    LogOptions,
    RunContainerOptions,
    StatusTag,
    SyncFilesOptions,
)
from ..services.exceptions import (
    ConfigurationError,
    ContainerInUseError,
    ContainerizationError,
    ContainerNotFoundError,
    EngineCommandError,
    EngineUnavailableError,
    OperationTimeoutError,
    ResourceLimitExceededError,
    TransientEngineError,
)
from .engine_utils import (
    build_archive,
    build_commit_script,
    derive_health,
    derive_status_tag,
    is_running_state,
    logs_indicate_ready,
    parse_engine_time,
    parse_memory,
    published_port,
)
from .log_stream import LogStream

logger = logging.getLogger(__name__)

_APP_ID_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]*$")


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded exponential backoff for transient engine failures."""
    attempts: int = RETRY_ATTEMPTS
    min_wait: float = RETRY_MIN_WAIT
    max_wait: float = RETRY_MAX_WAIT


@dataclass
class ContainerSpec:
    """Engine-neutral description of a container to create."""
    name: str
    image: str
    port: int
    command: List[str]
    environment: Dict[str, str]
    volumes: List[VolumeMount]
    dependency_volume: str
    cpus: float
    memory: str
    labels: Dict[str, str] = field(default_factory=dict)
    network_mode: Optional[str] = None
    restart_policy: str = "no"
    working_dir: str = CONTAINER_WORKDIR


@dataclass
class ExecResult:
    exit_code: int
    output: str


class AbstractContainerHandler(ABC):
    """Uniform container contract, implemented once over engine primitives."""

    engine_type = "abstract"

    def __init__(self, config: ContainerConfig, retry_policy: Optional[RetryPolicy] = None,
                 startup_grace: float = STARTUP_GRACE):
        self.config = config
        self.retry_policy = retry_policy or RetryPolicy()
        self.startup_grace = startup_grace
        self.initialized = False

    # ------------------------------------------------------------------
    # Naming
    # ------------------------------------------------------------------

    def get_container_name(self, app_id: str) -> str:
        """Get the container name for an app."""
        app_id = str(app_id)
        if not _APP_ID_RE.match(app_id):
            raise ValueError(f"Invalid app id: {app_id!r}")
        return f"{CONTAINER_PREFIX}{app_id}"

    def get_volume_name(self, app_id: str) -> str:
        """Get the dependency volume name for an app."""
        return f"{self.get_container_name(app_id)}{DEPENDENCY_VOLUME_SUFFIX}"

    # ------------------------------------------------------------------
    # Engine primitives
    # ------------------------------------------------------------------

    @abstractmethod
    async def _ping(self) -> None:
        """Raise EngineUnavailableError unless the engine answers."""

    @abstractmethod
    async def _engine_version(self) -> str: ...

    @abstractmethod
    async def _engine_details(self) -> Dict[str, Any]: ...

    @abstractmethod
    async def _ensure_network(self, name: str) -> None: ...

    @abstractmethod
    async def _inspect(self, name: str) -> Optional[Dict[str, Any]]:
        """Raw engine inspect data, or None if the container does not exist."""

    @abstractmethod
    async def _create(self, spec: ContainerSpec) -> str:
        """Create (not start) a container and return its id."""

    @abstractmethod
    async def _start(self, name: str) -> None: ...

    @abstractmethod
    async def _stop(self, name: str, timeout: int) -> None: ...

    @abstractmethod
    async def _remove(self, name: str, force: bool) -> None: ...

    @abstractmethod
    async def _put_archive(self, name: str, path: str, data: bytes) -> None: ...

    @abstractmethod
    async def _exec(self, name: str, command: List[str], timeout: float) -> ExecResult: ...

    @abstractmethod
    async def _read_logs(self, name: str, tail: Optional[int], since: Optional[str],
                         timestamps: bool) -> str: ...

    @abstractmethod
    async def _open_log_stream(self, name: str, options: LogOptions) -> LogStream: ...

    @abstractmethod
    async def _list_events(self, name: str, since: int, until: int) -> List[Dict[str, Any]]: ...

    @abstractmethod
    async def _create_volume(self, name: str) -> None: ...

    @abstractmethod
    async def _remove_volume(self, name: str) -> bool:
        """Remove a volume; False when it was already absent."""

    async def _prepare_engine(self) -> None:
        """Hook for one-time engine setup before the first ping."""

    # ------------------------------------------------------------------
    # Shared helpers
    # ------------------------------------------------------------------

    async def _with_retry(self, func, *args, **kwargs):
        """Run an idempotent engine call, retrying transient failures."""
        policy = self.retry_policy
        retrying = AsyncRetrying(
            stop=stop_after_attempt(policy.attempts),
            wait=wait_exponential(multiplier=policy.min_wait, min=policy.min_wait, max=policy.max_wait),
            retry=retry_if_exception_type((TransientEngineError, asyncio.TimeoutError)),
            reraise=True,
        )
        try:
            return await retrying(func, *args, **kwargs)
        except (TransientEngineError, asyncio.TimeoutError) as e:
            call = getattr(func, "__name__", "engine call").lstrip("_")
            raise OperationTimeoutError(
                f"{self.engine_type} {call} did not succeed after {policy.attempts} attempts",
                str(e),
            ) from e

    async def _inspect_checked(self, name: str) -> Dict[str, Any]:
        attrs = await self._with_retry(self._inspect, name)
        if attrs is None:
            raise ContainerNotFoundError(f"Container {name} does not exist")
        return attrs

    def _failure(self, message: str, error: Exception) -> ContainerOperationResult:
        if isinstance(error, TransientEngineError):
            return ContainerOperationResult.fail(message, error.detail or error.message,
                                                 OperationTimeoutError.kind)
        if isinstance(error, ContainerizationError):
            return ContainerOperationResult.fail(message, error.detail or error.message, error.kind)
        if isinstance(error, ValueError):
            return ContainerOperationResult.fail(message, str(error), "InvalidRequest")
        logger.error(f"Unexpected {self.engine_type} failure: {message}", exc_info=error)
        return ContainerOperationResult.fail(message, str(error), EngineCommandError.kind)

    def build_environment(self, port: int, options: RunContainerOptions) -> Dict[str, str]:
        """Merge base, configured and per-call environment; later layers win."""
        environment = {
            "PORT": str(port),
            "VITE_PORT": str(port),
            "CHOKIDAR_USEPOLLING": "true",
        }
        environment.update(self.config.environment)
        environment.update(options.environment)
        if options.skip_install:
            environment["PREVIEW_SKIP_INSTALL"] = "1"
        return environment

    def build_volumes(self, options: RunContainerOptions) -> List[VolumeMount]:
        """Configured mounts overlaid by per-call mounts on the same container path."""
        mounts: Dict[str, VolumeMount] = {}
        for mount in list(self.config.volumes) + list(options.volume_mounts):
            mounts[mount.container] = mount
        return list(mounts.values())

    def resolve_limits(self, options: RunContainerOptions) -> Tuple[float, str]:
        """Effective CPU and memory limits, checked against configured ceilings."""
        limits = self.config.resource_limits
        cpus = options.cpu_limit if options.cpu_limit is not None else limits.cpus
        memory = options.memory_limit or limits.memory
        if cpus <= 0:
            raise ResourceLimitExceededError(f"CPU limit must be positive, got {cpus}")
        memory_bytes = parse_memory(memory)
        if limits.max_cpus is not None and cpus > limits.max_cpus:
            raise ResourceLimitExceededError(
                f"Requested {cpus} CPUs exceeds the limit of {limits.max_cpus}"
            )
        if limits.max_memory is not None and memory_bytes > parse_memory(limits.max_memory):
            raise ResourceLimitExceededError(
                f"Requested memory {memory} exceeds the limit of {limits.max_memory}"
            )
        return cpus, memory

    def build_status(self, app_id: str, name: str, attrs: Dict[str, Any],
                     is_ready: bool, has_dependencies: bool) -> ContainerStatus:
        """Derive a full status snapshot from inspect data and probe results."""
        state = attrs.get("State") or {}
        running = is_running_state(state)
        tag = derive_status_tag(state, is_ready and running)
        uptime = None
        started_at = parse_engine_time(state.get("StartedAt"))
        if running and started_at is not None:
            uptime = max(0.0, (datetime.now(timezone.utc) - started_at).total_seconds())
        error = None
        if tag == StatusTag.ERROR:
            error = state.get("Error") or f"Container exited with code {state.get('ExitCode')}"
        return ContainerStatus(
            app_id=app_id,
            is_running=running,
            is_ready=is_ready and running,
            has_dependencies_installed=has_dependencies and running,
            container_name=name,
            port=published_port(attrs),
            status=tag,
            health=derive_health(state),
            uptime=uptime,
            error=error,
            container_id=attrs.get("Id"),
        )

    async def _ready_from_state(self, name: str, state: Dict[str, Any]) -> bool:
        if not is_running_state(state):
            return False
        health = derive_health(state)
        if health != HealthTag.NONE:
            return health == HealthTag.HEALTHY
        try:
            logs = await self._with_retry(self._read_logs, name, READINESS_LOG_LINES, None, False)
        except ContainerizationError as e:
            logger.debug(f"Readiness probe for {name} failed: {e}")
            return False
        return logs_indicate_ready(logs)

    async def _marker_present(self, name: str) -> bool:
        try:
            result = await self._exec(name, ["test", "-f", DEPENDENCY_MARKER], ENGINE_TIMEOUT)
        except ContainerizationError as e:
            logger.debug(f"Dependency marker probe for {name} failed: {e}")
            return False
        return result.exit_code == 0

    async def _discard(self, name: str) -> None:
        try:
            await self._with_retry(self._remove, name, True)
        except ContainerNotFoundError:
            pass

    # ------------------------------------------------------------------
    # Engine lifecycle
    # ------------------------------------------------------------------

    async def initialize(self) -> None:
        """Verify the engine is reachable and prepare shared engine state."""
        if self.initialized:
            logger.debug(f"{self.engine_type} already initialized")
            return
        logger.info(f"Initializing {self.engine_type} engine")
        try:
            await self._prepare_engine()
            await self._with_retry(self._ping)
            network = self.config.network_mode
            if network and network not in BUILTIN_NETWORKS:
                await self._with_retry(self._ensure_network, network)
        except EngineUnavailableError:
            raise
        except ContainerizationError as e:
            raise EngineUnavailableError(
                f"{self.engine_type} is not available: {e.message}", e.detail
            ) from e
        self.initialized = True
        logger.info(f"{self.engine_type} engine initialized successfully")

    async def is_available(self) -> bool:
        """Check whether the engine answers."""
        try:
            await self._ping()
            return True
        except ContainerizationError as e:
            logger.debug(f"{self.engine_type} not available: {e}")
            return False

    async def get_version(self) -> str:
        """Get the engine version string."""
        return await self._with_retry(self._engine_version)

    async def get_engine_info(self) -> Dict[str, Any]:
        """Get engine facts for diagnostics."""
        try:
            details = await self._with_retry(self._engine_details)
            return {"engine": self.engine_type, "image": self.config.image, **details}
        except ContainerizationError as e:
            return {"engine": self.engine_type, "error": e.message}

    # ------------------------------------------------------------------
    # Container lifecycle
    # ------------------------------------------------------------------

    async def run_container(self, options: RunContainerOptions) -> ContainerOperationResult:
        """Run a container for an application, reusing a matching one."""
        port = options.port or self.config.port
        try:
            name = self.get_container_name(options.app_id)
            cpus, memory = self.resolve_limits(options)
            attrs = await self._with_retry(self._inspect, name)
            if attrs is not None:
                if options.force_recreate:
                    logger.info(f"Recreating container {name} for app {options.app_id}")
                    await self._discard(name)
                else:
                    reused = await self._reuse(options.app_id, name, attrs, port)
                    if reused is not None:
                        return reused
            return await self._create_and_start(options, name, port, cpus, memory)
        except Exception as e:
            return self._failure("Failed to run container", e)

    async def _reuse(self, app_id: str, name: str, attrs: Dict[str, Any],
                     port: int) -> Optional[ContainerOperationResult]:
        bound = published_port(attrs)
        if bound is not None and bound != port:
            logger.info(f"Recreating {name}: published port {bound} differs from requested {port}")
            await self._discard(name)
            return None
        data = {
            "containerName": name,
            "port": port,
            "appId": app_id,
            "created": False,
            "containerId": attrs.get("Id"),
        }
        if is_running_state(attrs.get("State") or {}):
            logger.debug(f"Reusing running container {name}")
            return ContainerOperationResult.ok("Container already running", data)
        await self._with_retry(self._start, name)
        logger.info(f"Started existing container {name} on port {port}")
        return ContainerOperationResult.ok("Existing container started", data)

    async def _create_and_start(self, options: RunContainerOptions, name: str, port: int,
                                cpus: float, memory: str) -> ContainerOperationResult:
        volume = self.get_volume_name(options.app_id)
        await self._with_retry(self._create_volume, volume)
        package_manager = detect_package_manager(options.app_path, self.config.default_package_manager)
        spec = ContainerSpec(
            name=name,
            image=self.config.image,
            port=port,
            command=["sh", "-c", get_startup_script(package_manager, port)],
            environment=self.build_environment(port, options),
            volumes=self.build_volumes(options),
            dependency_volume=volume,
            cpus=cpus,
            memory=memory,
            labels={
                MANAGED_LABEL: "true",
                APP_ID_LABEL: options.app_id,
                APP_PATH_LABEL: str(options.app_path),
            },
            network_mode=self.config.network_mode,
            restart_policy=self.config.restart_policy,
        )
        container_id = await self._create(spec)
        try:
            archive, packed, _ = build_archive(options.app_path, None, prefix=CONTAINER_WORKDIR.lstrip("/"))
            await self._put_archive(name, "/", archive)
            await self._with_retry(self._start, name)
        except Exception:
            await self._discard(name)
            raise
        logger.info(f"Container {name} started on port {port} with {len(packed)} source file(s)")

        data = {
            "containerName": name,
            "port": port,
            "appId": options.app_id,
            "created": True,
            "containerId": container_id,
        }
        if self.startup_grace:
            await asyncio.sleep(self.startup_grace)
        attrs = await self._with_retry(self._inspect, name)
        if attrs is None or not is_running_state(attrs.get("State") or {}):
            logs = await self._safe_logs(name, 50)
            logger.error(f"Container {name} exited immediately after start")
            return ContainerOperationResult.fail(
                "Container exited immediately after start", logs, EngineCommandError.kind, data
            )
        if options.skip_install:
            return ContainerOperationResult.ok("Container started successfully", data)
        return ContainerOperationResult.ok(
            "Container started successfully (installing dependencies in background)", data
        )

    async def _safe_logs(self, name: str, lines: int) -> str:
        try:
            return await self._read_logs(name, lines, None, False)
        except ContainerizationError as e:
            return f"<logs unavailable: {e.message}>"

    async def stop_container(self, app_id: str) -> ContainerOperationResult:
        """Stop a running container."""
        try:
            name = self.get_container_name(app_id)
            attrs = await self._inspect_checked(name)
            if not is_running_state(attrs.get("State") or {}):
                return ContainerOperationResult.ok("Container is not running")
            await self._with_retry(self._stop, name, STOP_TIMEOUT)
            logger.info(f"Stopped container {name}")
            return ContainerOperationResult.ok("Container stopped successfully")
        except Exception as e:
            return self._failure("Failed to stop container", e)

    async def remove_container(self, app_id: str, force: bool = False) -> ContainerOperationResult:
        """Remove a container; a running one needs ``force``."""
        try:
            name = self.get_container_name(app_id)
            attrs = await self._with_retry(self._inspect, name)
            if attrs is None:
                return ContainerOperationResult.ok("Container does not exist")
            if is_running_state(attrs.get("State") or {}) and not force:
                raise ContainerInUseError(
                    f"Container {name} is running; stop it first or remove with force"
                )
            await self._with_retry(self._remove, name, force)
            logger.info(f"Removed container {name}")
            return ContainerOperationResult.ok("Container removed")
        except Exception as e:
            return self._failure("Failed to remove container", e)

    async def cleanup_volumes(self, app_id: str) -> ContainerOperationResult:
        """Remove the container (if any) and then its dependency volume."""
        try:
            name = self.get_container_name(app_id)
            volume = self.get_volume_name(app_id)
            await self._discard(name)
            removed = await self._with_retry(self._remove_volume, volume)
            logger.info(f"Cleaned up volumes for {name}")
            return ContainerOperationResult.ok(
                "Volumes cleaned up", {"volumes": [volume] if removed else []}
            )
        except Exception as e:
            return self._failure("Failed to cleanup volumes", e)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def get_container_status(self, app_id: str) -> ContainerStatus:
        """Get container status; an absent container is reported as stopped."""
        try:
            name = self.get_container_name(app_id)
        except ValueError as e:
            return ContainerStatus.stopped(app_id, error=str(e))
        try:
            attrs = await self._with_retry(self._inspect, name)
            if attrs is None:
                return ContainerStatus.stopped(app_id)
            state = attrs.get("State") or {}
            ready = False
            has_dependencies = False
            if is_running_state(state):
                ready = await self._ready_from_state(name, state)
                has_dependencies = await self._marker_present(name)
            return self.build_status(app_id, name, attrs, ready, has_dependencies)
        except ContainerizationError as e:
            return ContainerStatus(app_id=app_id, container_name=name,
                                   status=StatusTag.ERROR, error=e.message)
        except Exception as e:
            logger.exception(f"Unexpected error reading status of {name}")
            return ContainerStatus(app_id=app_id, container_name=name,
                                   status=StatusTag.ERROR, error=str(e))

    async def container_exists(self, app_id: str) -> bool:
        """Check if a container exists."""
        name = self.get_container_name(app_id)
        return await self._with_retry(self._inspect, name) is not None

    async def is_container_running(self, app_id: str) -> bool:
        """Check if a container is running."""
        name = self.get_container_name(app_id)
        attrs = await self._with_retry(self._inspect, name)
        return attrs is not None and is_running_state(attrs.get("State") or {})

    async def is_container_ready(self, app_id: str) -> bool:
        """Check if a container is running and serving the app."""
        name = self.get_container_name(app_id)
        try:
            attrs = await self._with_retry(self._inspect, name)
            if attrs is None:
                return False
            return await self._ready_from_state(name, attrs.get("State") or {})
        except ContainerizationError as e:
            logger.debug(f"Readiness probe for {name} failed: {e}")
            return False

    async def has_dependencies_installed(self, app_id: str) -> bool:
        """Check for the dependency install completion marker."""
        name = self.get_container_name(app_id)
        try:
            if not await self.is_container_running(app_id):
                return False
            return await self._marker_present(name)
        except ContainerizationError as e:
            logger.debug(f"Dependency marker probe for {name} failed: {e}")
            return False

    # ------------------------------------------------------------------
    # Files and commands
    # ------------------------------------------------------------------

    async def sync_files_to_container(self, options: SyncFilesOptions) -> ContainerOperationResult:
        """Push source files into a running container without restarting it."""
        try:
            name = self.get_container_name(options.app_id)
            attrs = await self._inspect_checked(name)
            if not is_running_state(attrs.get("State") or {}):
                return ContainerOperationResult.fail(
                    "Container is not running", f"Container {name} is not running", "ContainerNotRunning"
                )
            if not options.full_sync and not options.file_paths:
                return ContainerOperationResult.ok("Nothing to sync", {"files": [], "deleted": []})

            labels = (attrs.get("Config") or {}).get("Labels") or {}
            app_path = options.app_path or labels.get(APP_PATH_LABEL)
            if not app_path:
                raise ConfigurationError(f"No source path known for container {name}")

            staging = f"{SYNC_STAGING_PREFIX}{uuid.uuid4().hex[:12]}"
            file_paths = None if options.full_sync else options.file_paths
            archive, packed, missing = build_archive(
                app_path, file_paths, prefix=f"{SYNC_STAGING_ROOT.lstrip('/')}/{staging}"
            )
            await self._put_archive(name, "/", archive)
            result = await self._exec(name, ["sh", "-c", build_commit_script(staging, missing)],
                                      ENGINE_TIMEOUT)
            if result.exit_code != 0:
                raise EngineCommandError(f"Failed to apply synced files in {name}", result.output)
            logger.info(f"Synced {len(packed)} file(s) into {name}, deleted {len(missing)}")
            return ContainerOperationResult.ok(
                f"Synced {len(packed)} file(s)", {"files": packed, "deleted": missing}
            )
        except Exception as e:
            return self._failure("Failed to sync files", e)

    async def exec_in_container(self, app_id: str, command: Union[str, List[str]],
                                timeout: Optional[float] = None) -> ContainerOperationResult:
        """Execute a command in a running container."""
        argv = ["sh", "-c", command] if isinstance(command, str) else list(command)
        try:
            name = self.get_container_name(app_id)
            attrs = await self._inspect_checked(name)
            if not is_running_state(attrs.get("State") or {}):
                return ContainerOperationResult.fail(
                    "Container is not running", f"Container {name} is not running", "ContainerNotRunning"
                )
            result = await self._exec(name, argv, timeout or ENGINE_TIMEOUT)
            data = {"output": result.output, "exitCode": result.exit_code}
            if result.exit_code != 0:
                return ContainerOperationResult.fail(
                    f"Command exited with code {result.exit_code}", result.output, "CommandFailed", data
                )
            return ContainerOperationResult.ok("Command executed", data)
        except Exception as e:
            return self._failure("Failed to execute command", e)

    # ------------------------------------------------------------------
    # Logs and events
    # ------------------------------------------------------------------

    async def get_container_logs(self, app_id: str, lines: int = DEFAULT_LOG_LINES) -> str:
        """Get the last ``lines`` log lines."""
        return await self.get_logs(LogOptions(app_id=app_id, follow=False, tail=lines))

    async def get_logs(self, options: LogOptions) -> str:
        """Get a finite log snapshot."""
        name = self.get_container_name(options.app_id)
        await self._inspect_checked(name)
        return await self._with_retry(self._read_logs, name, options.tail, options.since,
                                      options.timestamps)

    async def stream_logs(self, options: LogOptions) -> LogStream:
        """Open a live log subscription."""
        name = self.get_container_name(options.app_id)
        await self._inspect_checked(name)
        logger.debug(f"Opening log stream for {name}")
        return await self._open_log_stream(name, options)

    async def get_events(self, app_id: str, since: int = EVENTS_WINDOW) -> List[Dict[str, Any]]:
        """Get engine lifecycle events for the container from the last ``since`` seconds."""
        name = self.get_container_name(app_id)
        until = int(datetime.now(timezone.utc).timestamp())
        return await self._with_retry(self._list_events, name, until - since, until)
