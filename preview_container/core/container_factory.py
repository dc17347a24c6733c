"""Selects the container engine handler for a configuration."""

import logging
from typing import Callable, Dict, List, Optional

from ..handlers.base import AbstractContainerHandler
from ..handlers.docker_handler import DockerHandler
from ..handlers.podman_handler import PodmanHandler
from ..models.config import ContainerizationConfig
from ..services.exceptions import ConfigurationError

logger = logging.getLogger(__name__)

HandlerBuilder = Callable[[ContainerizationConfig], AbstractContainerHandler]


def _build_docker(config: ContainerizationConfig) -> AbstractContainerHandler:
    return DockerHandler(config.container, config.docker)


def _build_podman(config: ContainerizationConfig) -> AbstractContainerHandler:
    return PodmanHandler(config.container, config.podman)


_HANDLER_REGISTRY: Dict[str, HandlerBuilder] = {
    "docker": _build_docker,
    "podman": _build_podman,
}


def register_handler(engine: str, builder: HandlerBuilder) -> None:
    """Register a handler builder for a custom engine name."""
    engine = engine.strip().lower()
    if engine in _HANDLER_REGISTRY:
        logger.warning(f"Replacing registered handler for engine {engine}")
    _HANDLER_REGISTRY[engine] = builder


def get_supported_engines() -> List[str]:
    """Engine names that can be configured."""
    return sorted(_HANDLER_REGISTRY)


class ContainerFactory:
    """Owns the one handler selected for this process."""

    def __init__(self, config: ContainerizationConfig,
                 registry: Optional[Dict[str, HandlerBuilder]] = None):
        """Resolve the handler for the configured engine.

        Args:
            config: Containerization configuration snapshot
            registry: Engine name to builder mapping; defaults to the module registry

        Raises:
            ConfigurationError: If the engine has no registered handler
        """
        self.config = config
        self._registry = dict(_HANDLER_REGISTRY if registry is None else registry)
        builder = self._registry.get(config.engine)
        if builder is None:
            raise ConfigurationError(
                f"Unsupported container engine: {config.engine}. "
                f"Supported engines: {', '.join(self.supported_engines())}"
            )
        self._handler = builder(config)
        logger.debug(f"Selected {config.engine} container handler")

    @property
    def handler(self) -> AbstractContainerHandler:
        return self._handler

    @property
    def engine_type(self) -> str:
        return self.config.engine

    def supported_engines(self) -> List[str]:
        return sorted(self._registry)

    def is_engine_supported(self, engine: str) -> bool:
        return engine.strip().lower() in self._registry


def create_container_factory(config: ContainerizationConfig) -> ContainerFactory:
    """Create the container factory for a configuration."""
    return ContainerFactory(config)
