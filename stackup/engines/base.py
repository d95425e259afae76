"""
Base engine interface and the records engines hand back.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Optional

from ..manifest.models import PortMapping, VolumeMount
from ..recipes.base import BuildRecipe

StageCallback = Callable[[int, str, str], None]     # (index, stage name, base image)
LineCallback = Callable[[str], None]


@dataclass
class Image:
    """A materialized runtime image: only the final stage survives."""
    ref: str
    digest: str
    env: Dict[str, str] = field(default_factory=dict)
    workdir: str = "/"
    cmd: Optional[List[str]] = None
    entrypoint: Optional[List[str]] = None
    exposed_ports: List[str] = field(default_factory=list)
    build_args: Dict[str, str] = field(default_factory=dict)    # values frozen in at build time
    filesystem: Dict[str, bytes] = field(default_factory=dict)  # populated by engines that can see it

    @property
    def default_command(self) -> List[str]:
        return list(self.entrypoint or []) + list(self.cmd or [])


@dataclass
class ContainerSpec:
    name: str
    service: str
    image: str
    network: Optional[str] = None
    aliases: List[str] = field(default_factory=list)
    ports: List[PortMapping] = field(default_factory=list)
    mounts: List[VolumeMount] = field(default_factory=list)
    environment: Dict[str, str] = field(default_factory=dict)
    labels: Dict[str, str] = field(default_factory=dict)
    command: Optional[List[str]] = None


@dataclass
class Container:
    name: str
    service: str
    image: str
    status: str = "running"
    launch_seq: int = 0
    started_at: float = 0.0
    id: Optional[str] = None
    labels: Dict[str, str] = field(default_factory=dict)
    ports: List[PortMapping] = field(default_factory=list)

    @property
    def is_running(self) -> bool:
        return self.status == "running"


class Engine(ABC):
    """Abstract container engine."""

    name: str = ""

    @abstractmethod
    def build(self, recipe: BuildRecipe, context: Path, build_args: Dict[str, str], tag: str,
              target: Optional[str] = None, on_stage: Optional[StageCallback] = None,
              on_line: Optional[LineCallback] = None) -> Image:
        """
        Run every stage in order and tag the final stage as ``tag``.

        Raises:
            BuildError: If any stage fails; no image is recorded
        """

    @abstractmethod
    def ensure_image(self, ref: str) -> None:
        """
        Make a prebuilt image available locally.

        Raises:
            ImageNotFoundError: If the image cannot be resolved or pulled
        """

    @abstractmethod
    def create_network(self, name: str, labels: Optional[Dict[str, str]] = None) -> None:
        """Create the network services use for name-based addressing (idempotent)."""

    @abstractmethod
    def volume_exists(self, name: str) -> bool:
        pass

    @abstractmethod
    def create_volume(self, name: str, labels: Optional[Dict[str, str]] = None) -> bool:
        """Create an empty named volume; returns False when it already existed."""

    @abstractmethod
    def remove_volume(self, name: str) -> None:
        """Destroy a named volume and its data."""

    @abstractmethod
    def start_container(self, spec: ContainerSpec) -> Container:
        """
        Launch a container.

        Raises:
            PortConflictError: If a published host port is taken
            VolumeMountError: If a named volume cannot be attached
            StartError: For any other launch failure
        """

    @abstractmethod
    def remove_container(self, name: str) -> bool:
        """Stop and remove a container; returns False when it did not exist."""

    @abstractmethod
    def list_containers(self, project: Optional[str] = None) -> List[Container]:
        pass
