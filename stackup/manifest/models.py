from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional


@dataclass(frozen=True)
class PortMapping:
    """A fixed host:container port publication."""
    host_port: Optional[int]        # None: container port only, nothing published
    container_port: int
    protocol: str = "tcp"
    host_ip: Optional[str] = None

    @property
    def published(self) -> bool:
        return self.host_port is not None

    def to_short(self) -> str:
        if self.host_port is None:
            base = str(self.container_port)
        elif self.host_ip:
            base = f"{self.host_ip}:{self.host_port}:{self.container_port}"
        else:
            base = f"{self.host_port}:{self.container_port}"
        if self.protocol != "tcp":
            base += f"/{self.protocol}"
        return base


@dataclass(frozen=True)
class VolumeMount:
    source: str
    target: str
    read_only: bool = False

    @property
    def is_bind(self) -> bool:
        """Host path mounts carry no named-volume lifecycle."""
        return self.source.startswith((".", "/", "~"))

    def to_short(self) -> str:
        suffix = ":ro" if self.read_only else ""
        return f"{self.source}:{self.target}{suffix}"


@dataclass
class BuildConfig:
    context: str
    dockerfile: str = "Dockerfile"
    args: Dict[str, str] = field(default_factory=dict)
    target: Optional[str] = None    # build up to this stage instead of the last one

    def recipe_path(self, base_dir: Optional[Path] = None) -> Path:
        context = Path(self.context)
        if base_dir is not None and not context.is_absolute():
            context = base_dir / context
        return context / self.dockerfile

    def context_path(self, base_dir: Optional[Path] = None) -> Path:
        context = Path(self.context)
        if base_dir is not None and not context.is_absolute():
            context = base_dir / context
        return context


@dataclass
class ServiceSpec:
    name: str
    container_name: Optional[str] = None
    image: Optional[str] = None                 # prebuilt image, or tag for the built one
    build: Optional[BuildConfig] = None
    ports: List[PortMapping] = field(default_factory=list)
    depends_on: List[str] = field(default_factory=list)
    environment: Dict[str, str] = field(default_factory=dict)
    volumes: List[VolumeMount] = field(default_factory=list)
    command: Optional[List[str]] = None

    def image_ref(self, project: str) -> str:
        """Image the container runs: explicit tag, else <project>-<service>."""
        if self.image:
            return self.image
        return f"{project}-{self.name}:latest"

    def named_volumes(self) -> List[VolumeMount]:
        return [v for v in self.volumes if not v.is_bind]


@dataclass
class VolumeSpec:
    name: str
    driver: str = "local"
    external: bool = False


@dataclass
class Manifest:
    project: str
    services: Dict[str, ServiceSpec]
    volumes: Dict[str, VolumeSpec] = field(default_factory=dict)
    path: Optional[str] = None

    @property
    def base_dir(self) -> Path:
        if self.path:
            return Path(self.path).resolve().parent
        return Path.cwd()

    @property
    def network_name(self) -> str:
        return f"{self.project}_default"

    def service(self, name: str) -> ServiceSpec:
        try:
            return self.services[name]
        except KeyError:
            raise KeyError(f"Unknown service: {name}") from None

    def container_name(self, service: str) -> str:
        """Explicit container_name, else <project>-<service>-1."""
        svc = self.service(service)
        return svc.container_name or f"{self.project}-{svc.name}-1"

    def volume_name(self, key: str) -> str:
        """Engine-side name of a declared volume; project-scoped unless external or renamed."""
        vol = self.volumes.get(key)
        if vol is None:
            return f"{self.project}_{key}"
        if vol.external or vol.name != key:
            return vol.name
        return f"{self.project}_{key}"

    def dependents_of(self, name: str) -> List[str]:
        return [s.name for s in self.services.values() if name in s.depends_on]

    def mounters_of(self, volume: str) -> List[str]:
        return [s.name for s in self.services.values()
                if any(v.source == volume for v in s.named_volumes())]
