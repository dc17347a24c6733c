"""Docker engine handler built on the Docker SDK."""

import asyncio
import concurrent.futures
import logging
import re
import threading
import time
from typing import Any, Dict, List, Optional, Union

import docker
import docker.errors

from ..core.constants import (
    DEPENDENCY_DIR,
    ENGINE_TIMEOUT,
    LOG_STREAM_BUFFER,
    MANAGED_LABEL,
    PING_TIMEOUT,
    PULL_TIMEOUT,
)
from ..models.config import ContainerConfig, DockerSettings
from ..models.container import LogOptions
from ..services.exceptions import (
    ContainerizationError,
    ContainerNotFoundError,
    EngineCommandError,
    EngineUnavailableError,
    ImagePullError,
    TransientEngineError,
)
from .base import AbstractContainerHandler, ContainerSpec, ExecResult
from .engine_utils import classify_engine_error, parse_engine_time
from .log_stream import LogStream, iter_lines

logger = logging.getLogger(__name__)

_DURATION_RE = re.compile(r"^(\d+)([smhd])$")
_DURATION_SECONDS = {"s": 1, "m": 60, "h": 3600, "d": 86400}


def parse_since(value: Optional[str]) -> Optional[int]:
    """Convert ``10m``, a unix timestamp or an RFC 3339 time to epoch seconds."""
    if not value:
        return None
    value = value.strip()
    match = _DURATION_RE.match(value)
    if match:
        amount, unit = match.groups()
        return int(time.time()) - int(amount) * _DURATION_SECONDS[unit]
    if value.isdigit():
        return int(value)
    parsed = parse_engine_time(value)
    if parsed is None:
        raise ValueError(f"Invalid since value: {value!r}")
    return int(parsed.timestamp())


def _explain(error: Exception) -> str:
    explanation = getattr(error, "explanation", None)
    return str(explanation or error)


class DockerHandler(AbstractContainerHandler):
    """Handler for the Docker engine.

    The SDK is blocking, so every call runs in a worker thread under a
    timeout. SDK exceptions are translated into the containerization error
    kinds at that single boundary.
    """

    engine_type = "docker"

    def __init__(self, config: ContainerConfig, settings: Optional[DockerSettings] = None,
                 client: Optional[docker.DockerClient] = None, **kwargs):
        super().__init__(config, **kwargs)
        self.settings = settings or DockerSettings()
        self._client = client

    @property
    def client(self) -> docker.DockerClient:
        """Docker client, connected on first use."""
        if self._client is None:
            self._client = self._connect()
        return self._client

    def _connect(self) -> docker.DockerClient:
        try:
            if self.settings.host:
                return docker.DockerClient(base_url=self.settings.host, timeout=self.settings.timeout)
            if self.settings.socket:
                return docker.DockerClient(
                    base_url=f"unix://{self.settings.socket}", timeout=self.settings.timeout
                )
            return docker.from_env(timeout=self.settings.timeout)
        except docker.errors.DockerException as e:
            if "connection refused" in str(e).lower() or "cannot connect" in str(e).lower():
                raise EngineUnavailableError(
                    "Docker daemon is not running. Please start Docker Desktop or the Docker service."
                ) from e
            raise EngineUnavailableError(f"Failed to connect to Docker: {e}") from e

    async def _call(self, func, *args, timeout: float = ENGINE_TIMEOUT, **kwargs):
        """Run a blocking SDK call off the event loop and translate its errors."""
        try:
            return await asyncio.wait_for(asyncio.to_thread(func, *args, **kwargs), timeout)
        except ContainerizationError:
            raise
        except asyncio.TimeoutError as e:
            raise TransientEngineError(f"Docker call timed out after {timeout}s") from e
        except docker.errors.ImageNotFound as e:
            raise ImagePullError(f"Image '{self.config.image}' not found", _explain(e)) from e
        except docker.errors.NotFound as e:
            raise ContainerNotFoundError("Container not found", _explain(e)) from e
        except docker.errors.APIError as e:
            raise classify_engine_error(f"Docker API error: {_explain(e)}", _explain(e)) from e
        except docker.errors.DockerException as e:
            raise EngineUnavailableError(f"Failed to reach Docker: {e}") from e
        except OSError as e:
            # requests raises OSError subclasses for socket failures
            error = classify_engine_error(f"Docker connection error: {e}", str(e))
            if type(error) is EngineCommandError:
                error = EngineUnavailableError(f"Docker connection error: {e}", str(e))
            raise error from e

    # ------------------------------------------------------------------
    # Blocking SDK calls, run by _call
    # ------------------------------------------------------------------

    def _create_sync(self, kwargs: Dict[str, Any]) -> str:
        try:
            return self.client.containers.create(**kwargs).id
        except docker.errors.ImageNotFound:
            image = kwargs["image"]
            logger.info(f"Image {image} not present locally, pulling")
            try:
                self.client.images.pull(image)
            except docker.errors.APIError as e:
                raise ImagePullError(f"Failed to pull image '{image}'", _explain(e)) from e
            return self.client.containers.create(**kwargs).id

    def _exec_sync(self, name: str, command: List[str]) -> ExecResult:
        container = self.client.containers.get(name)
        exit_code, output = container.exec_run(command, stdout=True, stderr=True)
        text = output.decode("utf-8", errors="replace") if isinstance(output, bytes) else str(output or "")
        return ExecResult(exit_code=exit_code or 0, output=text)

    def _ensure_network_sync(self, name: str) -> None:
        if not self.client.networks.list(names=[name]):
            logger.info(f"Creating network {name}")
            self.client.networks.create(name, driver="bridge", labels={MANAGED_LABEL: "true"})

    def _create_volume_sync(self, name: str) -> None:
        try:
            self.client.volumes.get(name)
        except docker.errors.NotFound:
            logger.debug(f"Creating volume {name}")
            self.client.volumes.create(name, labels={MANAGED_LABEL: "true"})

    def _remove_volume_sync(self, name: str) -> bool:
        try:
            self.client.api.remove_volume(name)
            return True
        except docker.errors.NotFound:
            return False

    def _inspect_sync(self, name: str) -> Optional[Dict[str, Any]]:
        try:
            return self.client.api.inspect_container(name)
        except docker.errors.NotFound:
            return None

    # ------------------------------------------------------------------
    # Engine primitives
    # ------------------------------------------------------------------

    async def _ping(self) -> None:
        try:
            await self._call(lambda: self.client.ping(), timeout=PING_TIMEOUT)
        except (EngineUnavailableError, TransientEngineError):
            raise
        except ContainerizationError as e:
            raise EngineUnavailableError(f"Docker is not responding: {e.message}", e.detail) from e

    async def _engine_version(self) -> str:
        version = await self._call(lambda: self.client.version())
        return f"Docker version {version.get('Version', 'unknown')}, API {version.get('ApiVersion', 'unknown')}"

    async def _engine_details(self) -> Dict[str, Any]:
        info = await self._call(lambda: self.client.info())
        return {
            "version": info.get("ServerVersion"),
            "operatingSystem": info.get("OperatingSystem"),
            "architecture": info.get("Architecture"),
            "cpus": info.get("NCPU"),
            "memory": info.get("MemTotal"),
            "containers": info.get("Containers"),
            "containersRunning": info.get("ContainersRunning"),
            "images": info.get("Images"),
            "storageDriver": info.get("Driver"),
        }

    async def _ensure_network(self, name: str) -> None:
        await self._call(self._ensure_network_sync, name)

    async def _inspect(self, name: str) -> Optional[Dict[str, Any]]:
        return await self._call(self._inspect_sync, name)

    async def _create(self, spec: ContainerSpec) -> str:
        volumes = {spec.dependency_volume: {"bind": DEPENDENCY_DIR, "mode": "rw"}}
        for mount in spec.volumes:
            volumes[mount.host] = {"bind": mount.container, "mode": "ro" if mount.read_only else "rw"}
        kwargs = {
            "image": spec.image,
            "name": spec.name,
            "command": spec.command,
            "detach": True,
            "environment": spec.environment,
            "working_dir": spec.working_dir,
            "labels": spec.labels,
            "ports": {f"{spec.port}/tcp": spec.port},
            "volumes": volumes,
            "nano_cpus": int(spec.cpus * 1e9),
            "mem_limit": spec.memory,
        }
        if spec.restart_policy != "no":
            kwargs["restart_policy"] = {"Name": spec.restart_policy}
        if spec.network_mode in ("host", "none", "bridge"):
            kwargs["network_mode"] = spec.network_mode
        elif spec.network_mode:
            kwargs["network"] = spec.network_mode
        container_id = await self._call(self._create_sync, kwargs, timeout=PULL_TIMEOUT)
        logger.debug(f"Created container {spec.name} ({container_id[:12]})")
        return container_id

    async def _start(self, name: str) -> None:
        await self._call(lambda: self.client.api.start(name))

    async def _stop(self, name: str, timeout: int) -> None:
        await self._call(lambda: self.client.api.stop(name, timeout=timeout), timeout=timeout + ENGINE_TIMEOUT)

    async def _remove(self, name: str, force: bool) -> None:
        await self._call(lambda: self.client.api.remove_container(name, force=force))

    async def _put_archive(self, name: str, path: str, data: bytes) -> None:
        accepted = await self._call(lambda: self.client.api.put_archive(name, path, data))
        if not accepted:
            raise EngineCommandError(f"Docker rejected the archive for {name}:{path}")

    async def _exec(self, name: str, command: List[str], timeout: float) -> ExecResult:
        return await self._call(self._exec_sync, name, command, timeout=timeout)

    async def _read_logs(self, name: str, tail: Optional[int], since: Optional[str],
                         timestamps: bool) -> str:
        output = await self._call(
            lambda: self.client.api.logs(
                name,
                stdout=True,
                stderr=True,
                tail=tail if tail is not None else "all",
                since=parse_since(since),
                timestamps=timestamps,
            )
        )
        return output.decode("utf-8", errors="replace") if isinstance(output, bytes) else str(output)

    async def _open_log_stream(self, name: str, options: LogOptions) -> LogStream:
        since = parse_since(options.since)
        raw = await self._call(
            lambda: self.client.api.logs(
                name,
                stdout=True,
                stderr=True,
                stream=True,
                follow=options.follow,
                tail=options.tail if options.tail is not None else "all",
                since=since,
                timestamps=options.timestamps,
            )
        )
        loop = asyncio.get_running_loop()
        queue: asyncio.Queue = asyncio.Queue(maxsize=LOG_STREAM_BUFFER)
        stop = threading.Event()

        def pump():
            try:
                for chunk in raw:
                    if not _offer(loop, queue, chunk, stop):
                        return
            except Exception as e:
                # closing the stream from another thread surfaces here
                if not stop.is_set():
                    logger.warning(f"Log stream for {name} ended with error: {e}")
            finally:
                _offer(loop, queue, None, stop)

        thread = threading.Thread(target=pump, name=f"logs-{name}", daemon=True)
        thread.start()

        async def chunks():
            while True:
                chunk = await queue.get()
                if chunk is None:
                    return
                yield chunk

        async def close():
            stop.set()
            await asyncio.to_thread(raw.close)
            while not queue.empty():
                queue.get_nowait()
            await asyncio.to_thread(thread.join, 5)

        return LogStream(options.app_id, iter_lines(chunks()), close)

    async def _list_events(self, name: str, since: int, until: int) -> List[Dict[str, Any]]:
        raw_events = await self._call(
            lambda: list(self.client.events(
                since=since, until=until, filters={"container": name}, decode=True
            ))
        )
        return [
            {
                "time": event.get("time"),
                "type": event.get("Type", "container"),
                "action": event.get("Action") or event.get("status"),
                "container": name,
                "attributes": (event.get("Actor") or {}).get("Attributes", {}),
            }
            for event in raw_events
        ]

    async def _create_volume(self, name: str) -> None:
        await self._call(self._create_volume_sync, name)

    async def _remove_volume(self, name: str) -> bool:
        return await self._call(self._remove_volume_sync, name)


def _offer(loop: asyncio.AbstractEventLoop, queue: asyncio.Queue,
           item: Union[bytes, None], stop: threading.Event) -> bool:
    """Hand an item from the pump thread to the loop, giving up once stopped."""
    while not stop.is_set():
        try:
            future = asyncio.run_coroutine_threadsafe(queue.put(item), loop)
        except RuntimeError:
            return False  # loop closed
        try:
            future.result(timeout=0.5)
            return True
        except concurrent.futures.TimeoutError:
            if not future.cancel():
                return True  # the put completed while timing out
    return False
