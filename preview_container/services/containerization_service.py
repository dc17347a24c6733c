"""Orchestration facade over the selected container engine handler."""

import asyncio
import logging
import shlex
from dataclasses import replace
from enum import Enum
from pathlib import PurePosixPath
from typing import Any, Dict, Iterable, List, Optional, Set, Union

from tenacity import AsyncRetrying, RetryError, retry_if_result, stop_after_delay, wait_exponential

from ..core.constants import (
    CONTAINER_WORKDIR,
    DEFAULT_LOG_LINES,
    DEPENDENCY_MARKER,
    EVENTS_WINDOW,
    MANIFEST_FILES,
)
from ..core.container_factory import create_container_factory
from ..core.startup_script import detect_package_manager, get_install_script
from ..core.status_cache import StatusCache
from ..handlers.base import AbstractContainerHandler
from ..handlers.log_stream import LogStream
from ..models.config import ContainerizationConfig
from ..models.container import (
    ContainerOperationResult,
    ContainerStatus,
    LogOptions,
    RunContainerOptions,
    StatusTag,
    SyncFilesOptions,
)
from .exceptions import (
    ContainerInUseError,
    ContainerizationDisabledError,
    ContainerizationError,
    ContainerNotFoundError,
    EngineCommandError,
    ReadinessTimeoutError,
)
from .lifecycle import ActivityTracker

logger = logging.getLogger(__name__)

DISABLED_MESSAGE = "Containerization is disabled"


class LifecycleState(str, Enum):
    """Per-application lifecycle as seen by the service."""
    ABSENT = "absent"
    STARTING = "starting"
    RUNNING = "running"
    READY = "ready"
    STOPPING = "stopping"
    ERROR = "error"


class ContainerizationService:
    """Single entry point callers use to manage application containers.

    Operations that change a container (create, start, sync, install, stop,
    remove) run under a per-application lock, so racing requests for one app
    are serialised while different apps proceed independently. Status reads
    are served from a short-lived cache unless a fresh probe is requested.
    """

    def __init__(self, config: ContainerizationConfig,
                 handler: Optional[AbstractContainerHandler] = None,
                 tracker: Optional[ActivityTracker] = None):
        """Initialize the service.

        Args:
            config: Configuration snapshot for this process
            handler: Engine handler; selected by the container factory when omitted
            tracker: Activity tracker; a fresh one when omitted

        Raises:
            ConfigurationError: If the configured engine is not supported
        """
        self.config = config
        self._handler = handler
        if self._handler is None and config.enabled:
            self._handler = create_container_factory(config).handler
        self.tracker = tracker or ActivityTracker()
        self._cache = StatusCache(config.status_ttl)
        self._locks: Dict[str, asyncio.Lock] = {}
        self._states: Dict[str, LifecycleState] = {}
        self._errors: Dict[str, str] = {}
        self._dependency_memo: Dict[str, str] = {}  # app id -> container id seen with the marker
        self._app_paths: Dict[str, str] = {}
        self._streams: Set[LogStream] = set()

    @property
    def enabled(self) -> bool:
        return self.config.enabled

    @property
    def handler(self) -> AbstractContainerHandler:
        if not self.enabled or self._handler is None:
            raise ContainerizationDisabledError(DISABLED_MESSAGE)
        return self._handler

    # ------------------------------------------------------------------
    # Internal state
    # ------------------------------------------------------------------

    def _lock(self, app_id: str) -> asyncio.Lock:
        return self._locks.setdefault(app_id, asyncio.Lock())

    def get_lifecycle_state(self, app_id: str) -> LifecycleState:
        return self._states.get(app_id, LifecycleState.ABSENT)

    def _set_state(self, app_id: str, state: LifecycleState) -> None:
        previous = self._states.get(app_id, LifecycleState.ABSENT)
        if previous != state:
            logger.info(f"App {app_id}: {previous.value} -> {state.value}")
        self._states[app_id] = state
        if state != LifecycleState.ERROR:
            self._errors.pop(app_id, None)

    def _record_failure(self, app_id: str, message: str) -> None:
        self._set_state(app_id, LifecycleState.ERROR)
        self._errors[app_id] = message
        self._cache.invalidate(app_id)

    def _forget(self, app_id: str) -> None:
        self._cache.invalidate(app_id)
        self._dependency_memo.pop(app_id, None)
        self._errors.pop(app_id, None)
        self.tracker.forget(app_id)

    def _disabled_result(self) -> ContainerOperationResult:
        return ContainerOperationResult.fail(
            DISABLED_MESSAGE,
            "Set CONTAINERIZATION_ENABLED=true to enable.",
            ContainerizationDisabledError.kind,
        )

    def _failure(self, message: str, error: Exception) -> ContainerOperationResult:
        if isinstance(error, ContainerizationError):
            return ContainerOperationResult.fail(message, error.detail or error.message, error.kind)
        logger.exception(f"Unexpected error: {message}")
        return ContainerOperationResult.fail(message, str(error), EngineCommandError.kind)

    def _overlay(self, status: ContainerStatus) -> ContainerStatus:
        """Apply the dependency memo and the last recorded error to a fresh probe."""
        app_id = status.app_id
        if status.container_id is None or not status.is_running:
            self._dependency_memo.pop(app_id, None)
        elif status.has_dependencies_installed:
            self._dependency_memo[app_id] = status.container_id
        elif self._dependency_memo.get(app_id) == status.container_id:
            status = replace(status, has_dependencies_installed=True)
        else:
            self._dependency_memo.pop(app_id, None)

        state = self._states.get(app_id)
        if state == LifecycleState.ERROR:
            if status.is_ready and status.has_dependencies_installed:
                self._set_state(app_id, LifecycleState.READY)
            else:
                status = replace(status, status=StatusTag.ERROR,
                                 error=status.error or self._errors.get(app_id))
        elif state not in (LifecycleState.STARTING, LifecycleState.STOPPING):
            if status.is_ready:
                self._set_state(app_id, LifecycleState.READY)
            elif status.is_running:
                self._set_state(app_id, LifecycleState.RUNNING)
            elif status.status == StatusTag.ERROR:
                self._states[app_id] = LifecycleState.ERROR
            else:
                self._set_state(app_id, LifecycleState.ABSENT)
        return status

    async def _probe(self, app_id: str) -> ContainerStatus:
        generation = self._cache.generation(app_id)
        status = await self.handler.get_container_status(app_id)
        if generation != self._cache.generation(app_id):
            # a mutation invalidated the app while this probe was in flight
            return status
        status = self._overlay(status)
        self._cache.put(status, generation)
        return status

    async def _refresh(self, app_id: str) -> ContainerStatus:
        """Drop the cached entry and probe the engine again after a mutation."""
        self._cache.invalidate(app_id)
        return await self._probe(app_id)

    async def _probe_ready(self, app_id: str) -> bool:
        if not await self.handler.is_container_running(app_id):
            raise EngineCommandError(f"Container for app {app_id} stopped before becoming ready")
        return await self.handler.is_container_ready(app_id)

    async def _wait_until_ready(self, app_id: str) -> None:
        """Poll readiness with exponential backoff until the readiness timeout.

        Raises:
            ReadinessTimeoutError: If the container is not ready in time
        """
        timeout = self.config.readiness_timeout
        retrying = AsyncRetrying(
            retry=retry_if_result(lambda ready: not ready),
            wait=wait_exponential(multiplier=0.5, max=self.config.readiness_max_interval),
            stop=stop_after_delay(timeout),
        )
        try:
            await retrying(self._probe_ready, app_id)
        except RetryError as e:
            raise ReadinessTimeoutError(
                f"Container for app {app_id} did not become ready within {timeout:g}s"
            ) from e

    async def _resolve_port(self, options: RunContainerOptions) -> RunContainerOptions:
        if options.port is not None:
            self.tracker.adopt_port(options.app_id, options.port)
            return options
        port = self.tracker.get_port(options.app_id)
        if port is None:
            current = await self.handler.get_container_status(options.app_id)
            if current.port is not None:
                self.tracker.adopt_port(options.app_id, current.port)
                port = current.port
            else:
                port = self.tracker.allocate_port(options.app_id)
        return replace(options, port=port)

    # ------------------------------------------------------------------
    # Lifecycle orchestration
    # ------------------------------------------------------------------

    async def initialize(self) -> None:
        """Initialize the engine handler.

        Raises:
            EngineUnavailableError: If the engine cannot be reached
        """
        if not self.enabled:
            logger.warning(DISABLED_MESSAGE)
            return
        await self.handler.initialize()

    async def ensure_running(self, app_id: str, options: RunContainerOptions) -> ContainerOperationResult:
        """Make sure the app's container is running and ready.

        Returns a result whose data is the resulting ContainerStatus.
        """
        if not self.enabled:
            return self._disabled_result()
        if options.app_id != app_id:
            options = replace(options, app_id=app_id)

        async with self._lock(app_id):
            if not options.force_recreate:
                cached = self._cache.get(app_id)
                if (cached is not None and cached.is_ready
                        and (options.port is None or cached.port == options.port)):
                    self.tracker.record_activity(app_id)
                    return ContainerOperationResult.ok("Container already running", cached)

            try:
                options = await self._resolve_port(options)
                self._app_paths[app_id] = str(options.app_path)
                self._set_state(app_id, LifecycleState.STARTING)
                self._cache.invalidate(app_id)

                result = await self.handler.run_container(options)
                if not result.success:
                    self._record_failure(app_id, result.error or result.message)
                    return result
                self._set_state(app_id, LifecycleState.RUNNING)
                self.tracker.record_activity(app_id)

                await self._wait_until_ready(app_id)
                self._set_state(app_id, LifecycleState.READY)
                status = await self._probe(app_id)
                return ContainerOperationResult.ok(result.message, status)
            except ContainerizationError as e:
                logger.error(f"Failed to bring up container for app {app_id}: {e.message}")
                self._record_failure(app_id, e.message)
                status = await self._probe(app_id)
                return ContainerOperationResult.fail(e.message, e.detail or e.message, e.kind, status)
            except Exception as e:
                self._record_failure(app_id, str(e))
                return self._failure("Failed to start container", e)

    async def sync_and_maybe_install(self, app_id: str, changed_paths: Optional[Iterable[str]] = None,
                                     full_sync: bool = False,
                                     app_path: Optional[str] = None) -> ContainerOperationResult:
        """Push changed files, then install dependencies only when needed.

        Install runs when the dependency marker is missing or a dependency
        manifest is among the changed paths. A full sync compares the
        manifest with the hash stored in the marker instead.
        """
        if not self.enabled:
            return self._disabled_result()
        paths = list(changed_paths or [])

        async with self._lock(app_id):
            try:
                sync = await self.handler.sync_files_to_container(
                    SyncFilesOptions(app_id=app_id, file_paths=paths or None,
                                     full_sync=full_sync, app_path=app_path)
                )
                if not sync.success:
                    if sync.error_kind not in (ContainerNotFoundError.kind, "ContainerNotRunning"):
                        self._record_failure(app_id, sync.error or sync.message)
                    return sync
                data = dict(sync.data or {})

                manifest_changed = any(PurePosixPath(p).name in MANIFEST_FILES for p in paths)
                installed = await self.has_dependencies_installed(app_id)
                if installed and full_sync and not manifest_changed:
                    manifest_changed = not await self._manifest_matches_marker(app_id)
                if installed and not manifest_changed:
                    data.update(installed=False, dependenciesInstalled=True)
                    return ContainerOperationResult.ok(sync.message, data)

                logger.info(f"Installing dependencies for app {app_id}")
                self._cache.invalidate(app_id)
                self._dependency_memo.pop(app_id, None)
                package_manager = detect_package_manager(
                    app_path or self._app_paths.get(app_id), self.config.container.default_package_manager
                )
                install = await self.handler.exec_in_container(
                    app_id, ["sh", "-c", get_install_script(package_manager)],
                    timeout=self.config.install_timeout,
                )
                if not install.success:
                    logger.error(f"Dependency install failed for app {app_id}: {install.message}")
                    self._record_failure(app_id, f"Dependency install failed: {install.error or install.message}")
                    return ContainerOperationResult.fail(
                        "Dependency install failed", install.error, install.error_kind,
                        {**data, "installed": False, "output": (install.data or {}).get("output")},
                    )
                status = await self._probe(app_id)
                data.update(installed=True, dependenciesInstalled=status.has_dependencies_installed)
                self.tracker.record_activity(app_id)
                return ContainerOperationResult.ok(f"{sync.message}; dependencies installed", data)
            except Exception as e:
                self._record_failure(app_id, e.message if isinstance(e, ContainerizationError) else str(e))
                return self._failure("Failed to sync files", e)

    async def _manifest_matches_marker(self, app_id: str) -> bool:
        manifest = shlex.quote(f"{CONTAINER_WORKDIR}/package.json")
        check = (
            f'[ "$(md5sum {manifest} | cut -d" " -f1)" = "$(cat {DEPENDENCY_MARKER})" ]'
        )
        result = await self.handler.exec_in_container(app_id, ["sh", "-c", check])
        return result.success

    async def stop(self, app_id: str) -> ContainerOperationResult:
        """Stop the app's container."""
        if not self.enabled:
            return self._disabled_result()
        async with self._lock(app_id):
            self._set_state(app_id, LifecycleState.STOPPING)
            self._cache.invalidate(app_id)
            result = await self.handler.stop_container(app_id)
            if result.success:
                self._set_state(app_id, LifecycleState.ABSENT)
                self.tracker.forget(app_id)
                await self._refresh(app_id)
            else:
                self._record_failure(app_id, result.error or result.message)
            return result

    async def remove(self, app_id: str, force: bool = True, volumes: bool = False) -> ContainerOperationResult:
        """Remove the app's container, and its dependency volume when asked."""
        if not self.enabled:
            return self._disabled_result()
        async with self._lock(app_id):
            previous = self.get_lifecycle_state(app_id)
            self._set_state(app_id, LifecycleState.STOPPING)
            self._cache.invalidate(app_id)
            result = await self.handler.remove_container(app_id, force=force)
            if result.success and volumes:
                result = await self.handler.cleanup_volumes(app_id)
            if result.success:
                self._set_state(app_id, LifecycleState.ABSENT)
                self._forget(app_id)
                self.tracker.release_port(app_id)
                await self._refresh(app_id)
            elif result.error_kind == ContainerInUseError.kind:
                self._states[app_id] = previous
                await self._refresh(app_id)
            else:
                self._record_failure(app_id, result.error or result.message)
            return result

    async def get_status(self, app_id: str, fresh: bool = False) -> ContainerStatus:
        """Get the app's status, served from the cache unless ``fresh``."""
        if not self.enabled:
            return ContainerStatus.stopped(app_id, error=DISABLED_MESSAGE)
        if not fresh:
            cached = self._cache.get(app_id)
            if cached is not None:
                return cached
        status = await self._probe(app_id)
        if status.is_running:
            self.tracker.record_activity(app_id)
        return status

    async def get_service_status(self) -> Dict[str, Any]:
        """Report whether containerization is enabled and the engine usable."""
        if not self.enabled:
            return {
                "enabled": False,
                "engine": self.config.engine,
                "available": False,
                "version": None,
                "message": DISABLED_MESSAGE,
            }
        available = await self.handler.is_available()
        version = None
        if available:
            try:
                version = await self.handler.get_version()
            except ContainerizationError as e:
                logger.warning(f"Could not read {self.config.engine} version: {e}")
        return {
            "enabled": True,
            "engine": self.config.engine,
            "available": available,
            "version": version,
            **self.tracker.stats(),
        }

    async def reap_idle(self) -> List[str]:
        """Stop containers with no activity for longer than the idle timeout."""
        if not self.enabled:
            return []
        stopped = []
        for app_id in self.tracker.idle_apps(self.config.idle_timeout):
            logger.info(f"Stopping idle container for app {app_id}")
            result = await self.stop(app_id)
            if result.success:
                stopped.append(app_id)
            else:
                logger.warning(f"Failed to stop idle container for app {app_id}: {result.error}")
            self.tracker.forget(app_id)
        return stopped

    async def shutdown(self) -> None:
        """Close open log streams and drop all in-memory state."""
        for stream in list(self._streams):
            await stream.aclose()
        self._streams.clear()
        self._cache.clear()
        self._states.clear()
        self._errors.clear()
        self._dependency_memo.clear()
        self._app_paths.clear()
        self.tracker.clear()
        logger.info("Containerization service shut down")

    # ------------------------------------------------------------------
    # Handler contract pass-throughs
    # ------------------------------------------------------------------

    def get_container_name(self, app_id: str) -> str:
        return self.handler.get_container_name(app_id)

    async def is_available(self) -> bool:
        return self.enabled and await self.handler.is_available()

    async def get_version(self) -> Optional[str]:
        if not self.enabled:
            return None
        return await self.handler.get_version()

    async def get_engine_info(self) -> Dict[str, Any]:
        if not self.enabled:
            return {"enabled": False, "message": DISABLED_MESSAGE}
        return {"enabled": True, **await self.handler.get_engine_info()}

    async def run_container(self, options: RunContainerOptions) -> ContainerOperationResult:
        """Run the container without waiting for readiness."""
        if not self.enabled:
            return self._disabled_result()
        async with self._lock(options.app_id):
            self._cache.invalidate(options.app_id)
            self._app_paths[options.app_id] = str(options.app_path)
            self._set_state(options.app_id, LifecycleState.STARTING)
            result = await self.handler.run_container(options)
            if result.success:
                self._set_state(options.app_id, LifecycleState.RUNNING)
                self.tracker.record_activity(options.app_id)
                if options.port is not None:
                    self.tracker.adopt_port(options.app_id, options.port)
                # readiness is not probed here; the next status read goes to the engine
                self._cache.invalidate(options.app_id)
            else:
                self._record_failure(options.app_id, result.error or result.message)
            return result

    async def stop_container(self, app_id: str) -> ContainerOperationResult:
        return await self.stop(app_id)

    async def remove_container(self, app_id: str, force: bool = False) -> ContainerOperationResult:
        return await self.remove(app_id, force=force)

    async def cleanup_volumes(self, app_id: str) -> ContainerOperationResult:
        if not self.enabled:
            return self._disabled_result()
        async with self._lock(app_id):
            result = await self.handler.cleanup_volumes(app_id)
            if result.success:
                self._set_state(app_id, LifecycleState.ABSENT)
                self._forget(app_id)
                await self._refresh(app_id)
            else:
                self._record_failure(app_id, result.error or result.message)
            return result

    async def get_container_status(self, app_id: str) -> ContainerStatus:
        return await self.get_status(app_id, fresh=True)

    async def container_exists(self, app_id: str) -> bool:
        return self.enabled and await self.handler.container_exists(app_id)

    async def is_container_running(self, app_id: str) -> bool:
        return self.enabled and await self.handler.is_container_running(app_id)

    async def is_container_ready(self, app_id: str) -> bool:
        return self.enabled and await self.handler.is_container_ready(app_id)

    async def has_dependencies_installed(self, app_id: str) -> bool:
        """Dependency marker check, remembered per container instance."""
        if not self.enabled:
            return False
        status = self._cache.get(app_id)
        memo = self._dependency_memo.get(app_id)
        if status is not None and memo is not None and status.container_id == memo:
            return True
        installed = await self.handler.has_dependencies_installed(app_id)
        if installed:
            self._cache.invalidate(app_id)
            await self._probe(app_id)
        return installed

    async def sync_files_to_container(self, options: SyncFilesOptions) -> ContainerOperationResult:
        if not self.enabled:
            return self._disabled_result()
        async with self._lock(options.app_id):
            return await self.handler.sync_files_to_container(options)

    async def exec_in_container(self, app_id: str, command: Union[str, List[str]],
                                timeout: Optional[float] = None) -> ContainerOperationResult:
        if not self.enabled:
            return self._disabled_result()
        result = await self.handler.exec_in_container(app_id, command, timeout)
        if result.success:
            self.tracker.record_activity(app_id)
        return result

    async def get_container_logs(self, app_id: str, lines: int = DEFAULT_LOG_LINES) -> str:
        """Raises ContainerizationDisabledError when disabled."""
        logs = await self.handler.get_container_logs(app_id, lines)
        self.tracker.record_activity(app_id)
        return logs

    async def get_logs(self, options: LogOptions) -> str:
        logs = await self.handler.get_logs(options)
        self.tracker.record_activity(options.app_id)
        return logs

    async def stream_logs(self, options: LogOptions) -> LogStream:
        """Open a live log subscription; it is closed on shutdown if still open."""
        stream = await self.handler.stream_logs(options)
        self._streams.add(stream)
        stream.add_close_callback(self._streams.discard)
        self.tracker.record_activity(options.app_id)
        return stream

    async def get_events(self, app_id: str, since: int = EVENTS_WINDOW) -> List[Dict[str, Any]]:
        return await self.handler.get_events(app_id, since)
