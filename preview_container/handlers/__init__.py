"""Container engine handlers."""

from .base import AbstractContainerHandler, ContainerSpec, ExecResult, RetryPolicy
from .docker_handler import DockerHandler
from .log_stream import LogStream
from .podman_handler import PodmanHandler

__all__ = [
    'AbstractContainerHandler',
    'ContainerSpec',
    'ExecResult',
    'RetryPolicy',
    'DockerHandler',
    'LogStream',
    'PodmanHandler',
]
