"""Builds the containerization configuration from YAML and the environment."""

import copy
import logging
import os
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Union

import yaml
from pydantic import ValidationError

from ..models.config import ContainerizationConfig
from ..services.exceptions import ConfigurationError

logger = logging.getLogger(__name__)

CONFIG_FILE_ENV = "PREVIEW_CONTAINER_CONFIG"
CONTAINER_ENV_PREFIX = "CONTAINER_ENV_"

# Environment variable -> (section, key); section None means top level
_ENV_FIELDS = {
    "CONTAINERIZATION_ENABLED": (None, "enabled"),
    "CONTAINERIZATION_ENGINE": ("container", "engine"),
    "DOCKER_SOCKET": ("docker", "socket"),
    "DOCKER_HOST": ("docker", "host"),
    "PODMAN_SOCKET": ("podman", "socket"),
    "CONTAINER_NETWORK": ("container", "network_mode"),
    "CONTAINER_RESTART_POLICY": ("container", "restart_policy"),
    "DEFAULT_PACKAGE_MANAGER": ("container", "default_package_manager"),
    "CONTAINER_IDLE_TIMEOUT": (None, "idle_timeout"),
}

_LIMIT_FIELDS = {
    "CONTAINER_CPU_LIMIT": "cpus",
    "CONTAINER_MEMORY_LIMIT": "memory",
    "CONTAINER_MAX_CPU_LIMIT": "max_cpus",
    "CONTAINER_MAX_MEMORY_LIMIT": "max_memory",
}


def load_containerization_config(env: Optional[Mapping[str, str]] = None,
                                 config_file: Optional[Union[str, Path]] = None) -> ContainerizationConfig:
    """Load the configuration snapshot for this process.

    Args:
        env: Environment mapping; defaults to ``os.environ``
        config_file: YAML file path; defaults to ``$PREVIEW_CONTAINER_CONFIG``

    Returns:
        Frozen configuration snapshot

    Raises:
        ConfigurationError: If the file cannot be read or a value is invalid
    """
    env = os.environ if env is None else env
    path = config_file or env.get(CONFIG_FILE_ENV)
    data = _read_config_file(Path(path)) if path else {}
    data = apply_env_overrides(data, env)
    try:
        config = ContainerizationConfig.model_validate(data)
    except ValidationError as e:
        raise ConfigurationError(
            f"Invalid containerization configuration ({e.error_count()} error(s))", str(e)
        ) from e
    logger.debug(f"Loaded containerization config: engine={config.engine}, enabled={config.enabled}")
    return config


def _read_config_file(path: Path) -> Dict[str, Any]:
    if not path.is_file():
        raise ConfigurationError(f"Config file not found: {path}")
    try:
        data = yaml.safe_load(path.read_text())
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML in {path}", str(e)) from e
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigurationError(f"Config file {path} must contain a mapping")
    return data


def _section(data: Dict[str, Any], name: str) -> Dict[str, Any]:
    section = data.setdefault(name, {})
    if section is None:
        section = data[name] = {}
    if not isinstance(section, dict):
        raise ConfigurationError(f"Config section '{name}' must be a mapping")
    return section


def apply_env_overrides(data: Dict[str, Any], env: Mapping[str, str]) -> Dict[str, Any]:
    """Overlay environment variables onto raw config data.

    Values stay strings; pydantic coerces and validates them.
    """
    data = copy.deepcopy(data)
    container = _section(data, "container")

    for variable, (section, key) in _ENV_FIELDS.items():
        value = env.get(variable)
        if value is None or value == "":
            continue
        target = data if section is None else _section(data, section)
        target[key] = value

    # Image and port come from the variables of the selected engine
    engine = str(container.get("engine") or "docker").strip().lower()
    prefix = engine.upper()
    if env.get(f"{prefix}_IMAGE"):
        container["image"] = env[f"{prefix}_IMAGE"]
    if env.get(f"{prefix}_DEFAULT_PORT"):
        container["port"] = env[f"{prefix}_DEFAULT_PORT"]

    limits = None
    for variable, key in _LIMIT_FIELDS.items():
        if env.get(variable):
            limits = limits if limits is not None else _section(container, "resource_limits")
            limits[key] = env[variable]

    overlay = {
        name[len(CONTAINER_ENV_PREFIX):]: value
        for name, value in env.items()
        if name.startswith(CONTAINER_ENV_PREFIX) and len(name) > len(CONTAINER_ENV_PREFIX)
    }
    if overlay or container.get("environment"):
        environment = _section(container, "environment")
        environment.update(overlay)
        # YAML scalars such as `DEBUG: 1` arrive as numbers
        container["environment"] = {str(k): str(v) for k, v in environment.items()}
    return data
