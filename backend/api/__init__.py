# api/__init__.py
from api.server import app, create_app
from api.dependencies import ServiceContainer, build_container

__all__ = [
    "app",
    "create_app",
    "ServiceContainer",
    "build_container",
]
