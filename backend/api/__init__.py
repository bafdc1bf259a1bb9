# api/__init__.py
from api.container import (
    Container,
    ServerConfig,
    build_container,
    build_in_memory_container,
)
from api.server import create_app

__all__ = [
    "Container",
    "ServerConfig",
    "build_container",
    "build_in_memory_container",
    "create_app",
]
