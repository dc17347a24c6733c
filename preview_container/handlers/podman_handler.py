"""Podman engine handler driving the podman CLI."""

import asyncio
import json
import logging
import sys
from typing import Any, Dict, List, Optional, Tuple

from ..core.constants import (
    DEPENDENCY_DIR,
    ENGINE_TIMEOUT,
    MANAGED_LABEL,
    PING_TIMEOUT,
    PULL_TIMEOUT,
)
from ..models.config import ContainerConfig, PodmanSettings
from ..models.container import LogOptions
from ..services.exceptions import (
    ContainerizationError,
    ContainerNotFoundError,
    EngineUnavailableError,
    TransientEngineError,
)
from .base import AbstractContainerHandler, ContainerSpec, ExecResult
from .engine_utils import classify_engine_error
from .log_stream import LogStream, iter_lines

logger = logging.getLogger(__name__)

# podman exec reserves these exit codes for its own failures
_EXEC_ENGINE_EXIT_CODES = (125,)
_MISSING_VOLUME_MARKERS = ("no such volume", "no volume with name")


class PodmanHandler(AbstractContainerHandler):
    """Handler for the Podman engine.

    Every operation is one podman CLI invocation with a timeout. A run that
    outlives its timeout or its caller is killed.
    """

    engine_type = "podman"

    def __init__(self, config: ContainerConfig, settings: Optional[PodmanSettings] = None, **kwargs):
        super().__init__(config, **kwargs)
        self.settings = settings or PodmanSettings()

    def _base_command(self) -> List[str]:
        command = [self.settings.binary]
        if self.settings.socket:
            command += ["--url", f"unix://{self.settings.socket}"]
        return command

    async def _run(self, args: List[str], timeout: float = ENGINE_TIMEOUT,
                   input_data: Optional[bytes] = None,
                   merge_stderr: bool = False) -> Tuple[int, str, str]:
        """Run one podman command and return (exit code, stdout, stderr)."""
        command = self._base_command() + args
        logger.debug(f"Running podman {args[0]}")
        try:
            proc = await asyncio.create_subprocess_exec(
                *command,
                stdin=asyncio.subprocess.PIPE if input_data is not None else asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT if merge_stderr else asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as e:
            raise EngineUnavailableError(
                f"Podman executable '{self.settings.binary}' not found", str(e)
            ) from e
        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(input=input_data), timeout=timeout)
        except asyncio.TimeoutError as e:
            await _kill(proc)
            raise TransientEngineError(f"podman {args[0]} timed out after {timeout}s") from e
        except asyncio.CancelledError:
            await asyncio.shield(_kill(proc))
            raise
        return (
            proc.returncode or 0,
            stdout.decode(errors="replace") if stdout else "",
            stderr.decode(errors="replace") if stderr else "",
        )

    async def _check(self, args: List[str], **kwargs) -> str:
        """Run a podman command and raise a typed error on non-zero exit."""
        code, stdout, stderr = await self._run(args, **kwargs)
        if code != 0:
            detail = stderr.strip() or stdout.strip() or f"exit code {code}"
            raise classify_engine_error(f"podman {args[0]} failed: {detail}", detail)
        return stdout

    async def _prepare_engine(self) -> None:
        if sys.platform != "darwin":
            return
        # On macOS podman runs inside a VM that must be started first
        output = await self._check(["machine", "list", "--format", "json"])
        machines = json.loads(output or "[]")
        if not machines:
            raise EngineUnavailableError(
                "No Podman machine found. Run 'podman machine init' to create one."
            )
        if any(machine.get("Running") for machine in machines):
            return
        name = machines[0].get("Name", "").rstrip("*")
        logger.info(f"Starting Podman machine {name}")
        await self._check(["machine", "start", name], timeout=PULL_TIMEOUT)

    # ------------------------------------------------------------------
    # Engine primitives
    # ------------------------------------------------------------------

    async def _ping(self) -> None:
        try:
            await self._check(["info", "--format", "json"], timeout=PING_TIMEOUT)
        except (EngineUnavailableError, TransientEngineError):
            raise
        except ContainerizationError as e:
            raise EngineUnavailableError(f"Podman is not responding: {e.message}", e.detail) from e

    async def _engine_version(self) -> str:
        return (await self._check(["--version"])).strip()

    async def _engine_details(self) -> Dict[str, Any]:
        info = json.loads(await self._check(["info", "--format", "json"]))
        host = info.get("host") or {}
        store = info.get("store") or {}
        containers = store.get("containerStore") or {}
        return {
            "version": (info.get("version") or {}).get("Version"),
            "operatingSystem": host.get("os"),
            "architecture": host.get("arch"),
            "cpus": host.get("cpus"),
            "memory": host.get("memTotal"),
            "containers": containers.get("number"),
            "containersRunning": containers.get("running"),
            "images": (store.get("imageStore") or {}).get("number"),
            "storageDriver": store.get("graphDriverName"),
        }

    async def _ensure_network(self, name: str) -> None:
        code, _, _ = await self._run(["network", "exists", name])
        if code != 0:
            logger.info(f"Creating network {name}")
            await self._check(["network", "create", "--label", f"{MANAGED_LABEL}=true", name])

    async def _inspect(self, name: str) -> Optional[Dict[str, Any]]:
        try:
            output = await self._check(["container", "inspect", name])
        except ContainerNotFoundError:
            return None
        data = json.loads(output or "[]")
        if isinstance(data, list):
            return data[0] if data else None
        return data

    def _mount_suffix(self, read_only: bool) -> str:
        if read_only:
            return ":ro"
        return ":Z" if self.settings.selinux_label else ""

    async def _create(self, spec: ContainerSpec) -> str:
        args = [
            "create",
            "--name", spec.name,
            "--publish", f"{spec.port}:{spec.port}",
            "--cpus", str(spec.cpus),
            "--memory", spec.memory,
            "--workdir", spec.working_dir,
            "--restart", spec.restart_policy,
        ]
        for key, value in spec.environment.items():
            args += ["--env", f"{key}={value}"]
        for key, value in spec.labels.items():
            args += ["--label", f"{key}={value}"]
        args += ["--volume", f"{spec.dependency_volume}:{DEPENDENCY_DIR}{self._mount_suffix(False)}"]
        for mount in spec.volumes:
            args += ["--volume", f"{mount.host}:{mount.container}{self._mount_suffix(mount.read_only)}"]
        if spec.network_mode:
            args += ["--network", spec.network_mode]
        args += [spec.image] + spec.command

        container_id = (await self._check(args, timeout=PULL_TIMEOUT)).strip().splitlines()[-1]
        logger.debug(f"Created container {spec.name} ({container_id[:12]})")
        return container_id

    async def _start(self, name: str) -> None:
        await self._check(["start", name])

    async def _stop(self, name: str, timeout: int) -> None:
        await self._check(["stop", "--time", str(timeout), name], timeout=timeout + ENGINE_TIMEOUT)

    async def _remove(self, name: str, force: bool) -> None:
        await self._check(["rm"] + (["--force"] if force else []) + [name])

    async def _put_archive(self, name: str, path: str, data: bytes) -> None:
        await self._check(["cp", "-", f"{name}:{path}"], input_data=data)

    async def _exec(self, name: str, command: List[str], timeout: float) -> ExecResult:
        code, stdout, stderr = await self._run(["exec", name] + command, timeout=timeout)
        if code in _EXEC_ENGINE_EXIT_CODES:
            detail = stderr.strip() or f"exit code {code}"
            raise classify_engine_error(f"podman exec failed: {detail}", detail)
        return ExecResult(exit_code=code, output=stdout + stderr)

    def _log_args(self, tail: Optional[int], since: Optional[str], timestamps: bool) -> List[str]:
        args = []
        if tail is not None:
            args += ["--tail", str(tail)]
        if since:
            args += ["--since", since]
        if timestamps:
            args.append("--timestamps")
        return args

    async def _read_logs(self, name: str, tail: Optional[int], since: Optional[str],
                         timestamps: bool) -> str:
        args = ["logs"] + self._log_args(tail, since, timestamps) + [name]
        code, output, _ = await self._run(args, merge_stderr=True)
        if code != 0:
            detail = output.strip() or f"exit code {code}"
            raise classify_engine_error(f"podman logs failed: {detail}", detail)
        return output

    async def _open_log_stream(self, name: str, options: LogOptions) -> LogStream:
        args = ["logs"] + (["--follow"] if options.follow else [])
        args += self._log_args(options.tail, options.since, options.timestamps) + [name]
        proc = await asyncio.create_subprocess_exec(
            *(self._base_command() + args),
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
        )

        async def chunks():
            while True:
                chunk = await proc.stdout.read(4096)
                if not chunk:
                    break
                yield chunk

        async def close():
            await _kill(proc)

        return LogStream(options.app_id, iter_lines(chunks()), close)

    async def _list_events(self, name: str, since: int, until: int) -> List[Dict[str, Any]]:
        output = await self._check([
            "events",
            "--stream=false",
            "--filter", f"container={name}",
            "--since", str(since),
            "--until", str(until),
            "--format", "json",
        ])
        events = []
        for line in output.splitlines():
            if not line.strip():
                continue
            try:
                event = json.loads(line)
            except json.JSONDecodeError:
                logger.debug(f"Skipping unparseable podman event: {line[:200]}")
                continue
            events.append({
                "time": event.get("time") or event.get("Time"),
                "type": event.get("Type", "container"),
                "action": event.get("Status"),
                "container": event.get("Name", name),
                "attributes": event.get("Attributes") or {},
            })
        return events

    async def _create_volume(self, name: str) -> None:
        code, _, _ = await self._run(["volume", "exists", name])
        if code != 0:
            logger.debug(f"Creating volume {name}")
            await self._check(["volume", "create", "--label", f"{MANAGED_LABEL}=true", name])

    async def _remove_volume(self, name: str) -> bool:
        code, stdout, stderr = await self._run(["volume", "rm", name])
        if code == 0:
            return True
        detail = stderr.strip() or stdout.strip()
        if any(marker in detail.lower() for marker in _MISSING_VOLUME_MARKERS):
            return False
        raise classify_engine_error(f"podman volume rm failed: {detail}", detail)


async def _kill(proc: asyncio.subprocess.Process) -> None:
    """Terminate a podman process, escalating to SIGKILL."""
    if proc.returncode is not None:
        return
    try:
        proc.terminate()
        await asyncio.wait_for(proc.wait(), timeout=5)
    except asyncio.TimeoutError:
        proc.kill()
        await proc.wait()
    except ProcessLookupError:
        pass
