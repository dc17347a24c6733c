import asyncio
import io
import re
import shlex
import tarfile
from collections import Counter
from datetime import datetime, timezone
from pathlib import Path

import pytest
from click.testing import CliRunner

from preview_container.core.constants import DEPENDENCY_MARKER
from preview_container.handlers.base import AbstractContainerHandler, ExecResult, RetryPolicy
from preview_container.handlers.log_stream import LogStream
from preview_container.models.config import ContainerConfig, ContainerizationConfig
from preview_container.services.exceptions import (
    ContainerNotFoundError,
    EngineCommandError,
    EngineUnavailableError,
)
from preview_container.services.lifecycle import ActivityTracker

_STAGING_RE = re.compile(r"^cd '?/tmp/(\.preview-sync-[0-9a-f]+)'?$", re.MULTILINE)


class FakeEngineHandler(AbstractContainerHandler):
    """In-memory engine: containers are dicts shaped like engine inspect output."""

    engine_type = "fake"

    def __init__(self, config=None, ready_after=0):
        super().__init__(
            config or ContainerConfig(),
            retry_policy=RetryPolicy(attempts=3, min_wait=0, max_wait=0),
            startup_grace=0,
        )
        self.containers = {}
        self.volumes = set()
        self.networks = set()
        self.calls = Counter()
        self.failures = {}
        self.archives = []
        self.ready_after = ready_after
        self.available = True
        self.exit_on_start = False
        self.manifest_matches = True
        self.install_exit_code = 0
        self.stop_delay = 0
        self.closed_streams = 0
        self._next_id = 0

    def fail(self, op, *errors):
        """Make the next calls of a primitive raise the given errors in order."""
        self.failures[op] = list(errors)

    def _enter(self, op):
        self.calls[op] += 1
        pending = self.failures.get(op)
        if pending:
            raise pending.pop(0)

    def _get(self, name):
        if name not in self.containers:
            raise ContainerNotFoundError(f"no such container {name}")
        return self.containers[name]

    def files(self, app_id):
        return self.containers[self.get_container_name(app_id)]["files"]

    async def _ping(self):
        self._enter("ping")
        if not self.available:
            raise EngineUnavailableError("fake engine is down")

    async def _engine_version(self):
        self._enter("version")
        return "Fake version 1.0"

    async def _engine_details(self):
        return {"version": "1.0", "cpus": 4}

    async def _ensure_network(self, name):
        self.networks.add(name)

    async def _inspect(self, name):
        self._enter("inspect")
        return self.containers.get(name)

    async def _create(self, spec):
        self._enter("create")
        if spec.name in self.containers:
            raise EngineCommandError(f"container name {spec.name} is already in use")
        self._next_id += 1
        binding = {f"{spec.port}/tcp": [{"HostIp": "0.0.0.0", "HostPort": str(spec.port)}]}
        self.containers[spec.name] = {
            "Id": f"container-{self._next_id}",
            "Name": spec.name,
            "State": {"Status": "created", "Running": False, "ExitCode": 0},
            "NetworkSettings": {"Ports": {}},
            "HostConfig": {"PortBindings": binding},
            "Config": {"Labels": dict(spec.labels)},
            "spec": spec,
            "files": {},
            "logs": [],
            "events": [{"time": 1700000000, "type": "container", "action": "create"}],
            "log_reads": 0,
        }
        return f"container-{self._next_id}"

    async def _start(self, name):
        self._enter("start")
        record = self._get(name)
        if self.exit_on_start:
            record["State"] = {"Status": "exited", "Running": False, "ExitCode": 1}
            record["logs"].append("[ERROR] No package.json found")
            return
        record["State"] = {
            "Status": "running",
            "Running": True,
            "ExitCode": 0,
            "StartedAt": datetime.now(timezone.utc).isoformat(),
        }
        record["NetworkSettings"]["Ports"] = record["HostConfig"]["PortBindings"]
        record["log_reads"] = 0
        record["logs"].append(f"[INFO] Container starting for port {record['spec'].port}...")
        if record["spec"].environment.get("PREVIEW_SKIP_INSTALL") != "1":
            record["files"][DEPENDENCY_MARKER] = b"d41d8cd98f00b204e9800998ecf8427e"
        record["events"].append({"time": 1700000001, "type": "container", "action": "start"})

    async def _stop(self, name, timeout):
        self._enter("stop")
        if self.stop_delay:
            await asyncio.sleep(self.stop_delay)
        record = self._get(name)
        record["State"] = {"Status": "exited", "Running": False, "ExitCode": 143}
        record["NetworkSettings"]["Ports"] = {}
        record["events"].append({"time": 1700000002, "type": "container", "action": "stop"})

    async def _remove(self, name, force):
        self._enter("remove")
        record = self._get(name)
        if record["State"].get("Running") and not force:
            raise EngineCommandError(f"cannot remove running container {name}")
        del self.containers[name]

    async def _put_archive(self, name, path, data):
        self._enter("put_archive")
        record = self._get(name)
        with tarfile.open(fileobj=io.BytesIO(data)) as tar:
            members = [m for m in tar.getmembers() if m.isfile()]
            self.archives.append((name, path, [m.name for m in members]))
            for member in members:
                record["files"][f"/{member.name}"] = tar.extractfile(member).read()

    async def _exec(self, name, command, timeout):
        self._enter("exec")
        record = self._get(name)
        if not record["State"].get("Running"):
            raise EngineCommandError(f"container {name} is not running")
        files = record["files"]
        if command[:2] == ["test", "-f"]:
            return ExecResult(0 if command[2] in files else 1, "")
        if command[:2] != ["sh", "-c"]:
            return ExecResult(0, " ".join(command))
        script = command[2]
        if "preview-sync" in script:
            return self._commit(files, script)
        if "Installing dependencies" in script:
            self.calls["install"] += 1
            if self.install_exit_code:
                files.pop(DEPENDENCY_MARKER, None)
                return ExecResult(self.install_exit_code, "ERR_PNPM_FETCH_404 GET https://registry.npmjs.org/left-pad")
            files[DEPENDENCY_MARKER] = b"new-hash"
            return ExecResult(0, "[INFO] Dependencies installed")
        if "md5sum /app/package.json" in script:
            return ExecResult(0 if self.manifest_matches else 1, "")
        if script.startswith("exit "):
            return ExecResult(int(script.split()[1]), "failed")
        return ExecResult(0, script)

    def _commit(self, files, script):
        staging = _STAGING_RE.search(script).group(1)
        prefix = f"/tmp/{staging}/"
        for path in [p for p in files if p.startswith(prefix)]:
            files["/app/" + path[len(prefix):]] = files.pop(path)
        for line in script.splitlines():
            if line.startswith("rm -f "):
                files.pop(shlex.split(line)[2], None)
        return ExecResult(0, "")

    async def _read_logs(self, name, tail, since, timestamps):
        self._enter("logs")
        record = self._get(name)
        if record["State"].get("Running"):
            record["log_reads"] += 1
            if record["log_reads"] > self.ready_after and not any("Local:" in line for line in record["logs"]):
                record["logs"].append(f"  ➜  Local:   http://localhost:{record['spec'].port}/")
        lines = record["logs"] if tail is None else record["logs"][-tail:]
        return "\n".join(lines)

    async def _open_log_stream(self, name, options):
        lines = list(self._get(name)["logs"])

        async def source():
            for line in lines:
                yield line

        async def close():
            self.closed_streams += 1

        return LogStream(options.app_id, source(), close)

    async def _list_events(self, name, since, until):
        record = self.containers.get(name)
        return list(record["events"]) if record else []

    async def _create_volume(self, name):
        self._enter("create_volume")
        self.volumes.add(name)

    async def _remove_volume(self, name):
        self._enter("remove_volume")
        if name in self.volumes:
            self.volumes.remove(name)
            return True
        return False


class FakeClock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


@pytest.fixture
def cli_runner():
    """Provides a Click CLI runner for testing commands."""
    return CliRunner()


@pytest.fixture
def fake_handler():
    """Provides an in-memory engine handler."""
    return FakeEngineHandler()


@pytest.fixture
def make_handler():
    """Factory for fake handlers with a custom container config."""
    return FakeEngineHandler


@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture
def tracker(fake_clock):
    """Activity tracker that treats every host port as free."""
    return ActivityTracker(clock=fake_clock, port_checker=lambda port: True)


@pytest.fixture
def service_config():
    """Configuration with short readiness polling for tests."""
    return ContainerizationConfig(
        status_ttl=60,
        readiness_timeout=2,
        readiness_max_interval=0.01,
        idle_timeout=300,
    )


@pytest.fixture
def app_dir(tmp_path):
    """Creates a small Vite-style app source tree."""
    app = tmp_path / "app-42"
    (app / "src").mkdir(parents=True)
    (app / "node_modules" / "react").mkdir(parents=True)
    (app / "package.json").write_text('{"name": "app-42", "scripts": {"dev": "vite"}}')
    (app / "pnpm-lock.yaml").write_text("lockfileVersion: '9.0'\n")
    (app / "index.html").write_text("<div id=root></div>")
    (app / "src" / "App.tsx").write_text("export default () => <h1>Hello</h1>;")
    (app / "src" / "main.tsx").write_text("import App from './App';")
    (app / "node_modules" / "react" / "index.js").write_text("module.exports = {};")
    return Path(app)
