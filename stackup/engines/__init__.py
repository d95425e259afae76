"""
Container engines.
"""

from typing import Optional

from ..state import get_engine_name
from .base import Container, ContainerSpec, Engine, Image
from .docker import DockerEngine
from .local import BaseImage, LocalContainer, LocalEngine, inspect_binary

ENGINES = {
    "docker": DockerEngine,
    "local": LocalEngine,
}


def get_engine(name: Optional[str] = None) -> Engine:
    """
    Instantiate an engine by name (defaults to STACKUP_ENGINE).

    Raises:
        ValueError: If the engine name is unknown
    """
    name = (name or get_engine_name()).lower()
    try:
        return ENGINES[name]()
    except KeyError:
        raise ValueError(f"Unknown engine '{name}'. Expected one of: {', '.join(ENGINES)}") from None


__all__ = [
    "BaseImage",
    "Container",
    "ContainerSpec",
    "DockerEngine",
    "Engine",
    "Image",
    "LocalContainer",
    "LocalEngine",
    "get_engine",
    "inspect_binary",
]
