"""Short-lived memo of the last computed status per application."""

import time
from typing import Callable, Dict, Optional, Tuple

from cachetools import TTLCache

from ..models.container import ContainerStatus

Generation = Tuple[int, int]


class StatusCache:
    """TTL-bounded map of app id to its most recent ContainerStatus.

    Owned by one ContainerizationService. Writers hold the app's lock; readers
    may see an entry up to ``ttl`` seconds old. Nothing survives a restart.

    Every invalidation bumps the app's generation. A probe that read the
    generation before an invalidation cannot store its result afterwards.
    """

    def __init__(self, ttl: float, maxsize: int = 1024,
                 timer: Callable[[], float] = time.monotonic):
        self.ttl = ttl
        self._entries = TTLCache(maxsize=maxsize, ttl=ttl, timer=timer) if ttl > 0 else None
        self._generations: Dict[str, int] = {}
        self._epoch = 0

    def get(self, app_id: str) -> Optional[ContainerStatus]:
        if self._entries is None:
            return None
        return self._entries.get(app_id)

    def generation(self, app_id: str) -> Generation:
        return self._epoch, self._generations.get(app_id, 0)

    def put(self, status: ContainerStatus, generation: Optional[Generation] = None) -> bool:
        """Store a status; returns False if it was computed before an invalidation."""
        if generation is not None and generation != self.generation(status.app_id):
            return False
        if self._entries is not None:
            self._entries[status.app_id] = status
        return True

    def invalidate(self, app_id: str) -> None:
        self._generations[app_id] = self._generations.get(app_id, 0) + 1
        if self._entries is not None:
            self._entries.pop(app_id, None)

    def clear(self) -> None:
        self._epoch += 1
        self._generations.clear()
        if self._entries is not None:
            self._entries.clear()

    def __contains__(self, app_id: str) -> bool:
        return self.get(app_id) is not None

    def __len__(self) -> int:
        return 0 if self._entries is None else len(self._entries)
