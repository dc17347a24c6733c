"""Activity tracking, idle detection and host port allocation."""

import logging
import socket
import time
from typing import Callable, Dict, List, Optional, Tuple

from ..core.constants import PORT_RANGE
from .exceptions import PortConflictError

logger = logging.getLogger(__name__)


def is_port_free(port: int, host: str = "0.0.0.0") -> bool:
    """Check whether a TCP port can be bound on the host."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        try:
            sock.bind((host, port))
            return True
        except OSError:
            return False


class ActivityTracker:
    """Remembers when each app was last used and which host port it holds.

    State lives in memory only and is owned by one ContainerizationService.
    """

    def __init__(self, port_range: Tuple[int, int] = PORT_RANGE,
                 clock: Callable[[], float] = time.monotonic,
                 port_checker: Callable[[int], bool] = is_port_free):
        self.port_range = port_range
        self._clock = clock
        self._port_checker = port_checker
        self._last_activity: Dict[str, float] = {}
        self._ports: Dict[str, int] = {}

    def record_activity(self, app_id: str) -> None:
        self._last_activity[app_id] = self._clock()

    def last_activity(self, app_id: str) -> Optional[float]:
        return self._last_activity.get(app_id)

    def idle_apps(self, timeout: float) -> List[str]:
        """Apps with no recorded activity for at least ``timeout`` seconds."""
        now = self._clock()
        return sorted(
            app_id for app_id, seen in self._last_activity.items()
            if now - seen >= timeout
        )

    def forget(self, app_id: str) -> None:
        """Drop activity for an app; its port stays reserved for a restart."""
        self._last_activity.pop(app_id, None)

    def get_port(self, app_id: str) -> Optional[int]:
        return self._ports.get(app_id)

    def adopt_port(self, app_id: str, port: int) -> None:
        """Record a port an existing container already publishes."""
        self._ports[app_id] = port

    def allocate_port(self, app_id: str, force_new: bool = False) -> int:
        """Get the app's reserved port, or reserve the first free one.

        Raises:
            PortConflictError: If every port in the range is taken
        """
        existing = self._ports.get(app_id)
        if existing is not None and not force_new:
            logger.debug(f"Reusing port {existing} for app {app_id}")
            return existing
        if existing is not None:
            self.release_port(app_id)

        reserved = set(self._ports.values())
        start, end = self.port_range
        for port in range(start, end):
            if port in reserved or port == existing:
                continue
            if not self._port_checker(port):
                logger.debug(f"Port {port} is bound on the host, skipping")
                continue
            self._ports[app_id] = port
            logger.info(f"Allocated port {port} for app {app_id}")
            return port
        raise PortConflictError(f"No available ports in range {start}-{end - 1}")

    def release_port(self, app_id: str) -> None:
        port = self._ports.pop(app_id, None)
        if port is not None:
            logger.info(f"Released port {port} for app {app_id}")

    def stats(self) -> Dict[str, int]:
        return {"trackedApps": len(self._last_activity), "allocatedPorts": len(self._ports)}

    def clear(self) -> None:
        self._last_activity.clear()
        self._ports.clear()
