from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from ..errors import ManifestError
from .models import BuildConfig, Manifest, PortMapping, ServiceSpec, VolumeMount, VolumeSpec

logger = logging.getLogger(__name__)

DEFAULT_MANIFEST_NAMES = ("compose.yaml", "compose.yml", "docker-compose.yaml", "docker-compose.yml")


class ManifestLoader(yaml.SafeLoader):
    """SafeLoader without YAML 1.1 base-60 integers, so ``22:22`` stays a string."""


ManifestLoader.yaml_implicit_resolvers = {
    first: [(tag, regexp) for tag, regexp in resolvers if tag != "tag:yaml.org,2002:int"]
    for first, resolvers in yaml.SafeLoader.yaml_implicit_resolvers.items()
}
ManifestLoader.add_implicit_resolver(
    "tag:yaml.org,2002:int",
    re.compile(r"""^(?:[-+]?0b[0-1_]+
                |[-+]?0[0-7_]+
                |[-+]?(?:0|[1-9][0-9_]*)
                |[-+]?0x[0-9a-fA-F_]+)$""", re.X),
    list("-+0123456789"),
)


def load_yaml(text: str) -> Any:
    """Parse manifest YAML text."""
    return yaml.load(text, Loader=ManifestLoader)


def find_manifest(directory: str = ".") -> Path:
    """Locate the manifest in a directory using the usual compose file names."""
    root = Path(directory)
    for name in DEFAULT_MANIFEST_NAMES:
        candidate = root / name
        if candidate.exists():
            return candidate
    raise ManifestError(
        f"No manifest found in {root.resolve()}",
        hint=f"Expected one of: {', '.join(DEFAULT_MANIFEST_NAMES)}"
    )


def load_manifest(path: str | Path, project: Optional[str] = None) -> Manifest:
    """
    Read a compose-style manifest from disk.

    Args:
        path: Manifest file, or a directory containing one
        project: Project name override (defaults to the top-level ``name``
            key, then the manifest directory name)

    Raises:
        ManifestError: If the file is missing or not a valid manifest
    """
    manifest_path = Path(path)
    if manifest_path.is_dir():
        manifest_path = find_manifest(str(manifest_path))
    if not manifest_path.exists():
        raise ManifestError(f"Manifest not found: {manifest_path}")

    try:
        data = load_yaml(manifest_path.read_text()) or {}
    except yaml.YAMLError as e:
        raise ManifestError(f"Invalid YAML in {manifest_path}: {e}") from e

    default_project = manifest_path.resolve().parent.name
    return parse_manifest(data, path=str(manifest_path), project=project, default_project=default_project)


def parse_manifest(data: Dict[str, Any], path: Optional[str] = None, project: Optional[str] = None,
                   default_project: str = "default") -> Manifest:
    """Turn already-loaded YAML data into a Manifest."""
    if not isinstance(data, dict):
        raise ManifestError("Manifest top level must be a mapping")

    services_raw = data.get("services")
    if not isinstance(services_raw, dict) or not services_raw:
        raise ManifestError("Manifest must declare at least one service under 'services'")

    services: Dict[str, ServiceSpec] = {}
    for name, raw in services_raw.items():
        services[str(name)] = _parse_service(str(name), raw or {})

    volumes: Dict[str, VolumeSpec] = {}
    for name, raw in (data.get("volumes") or {}).items():
        raw = raw or {}
        if not isinstance(raw, dict):
            raise ManifestError(f"Volume '{name}' must be a mapping")
        volumes[str(name)] = VolumeSpec(
            name=str(raw.get("name", name)),
            driver=str(raw.get("driver", "local")),
            external=bool(raw.get("external", False)),
        )

    project_name = project or data.get("name") or default_project
    return Manifest(project=_normalize_project(str(project_name)), services=services,
                    volumes=volumes, path=path)


def _normalize_project(name: str) -> str:
    cleaned = "".join(ch if ch.isalnum() or ch in "-_" else "" for ch in name.lower())
    return cleaned or "default"


def _parse_service(name: str, raw: Dict[str, Any]) -> ServiceSpec:
    if not isinstance(raw, dict):
        raise ManifestError(f"Service '{name}' must be a mapping")

    build = None
    if "build" in raw:
        build = _parse_build(name, raw["build"])

    command = raw.get("command")
    if isinstance(command, str):
        command = command.split()
    elif command is not None:
        command = [str(c) for c in command]

    return ServiceSpec(
        name=name,
        container_name=raw.get("container_name"),
        image=raw.get("image"),
        build=build,
        ports=[parse_port(name, p) for p in _list_field(name, raw, "ports")],
        depends_on=_parse_depends_on(name, raw.get("depends_on")),
        environment=_parse_environment(name, raw.get("environment")),
        volumes=[parse_volume_mount(name, v) for v in _list_field(name, raw, "volumes")],
        command=command,
    )


def _list_field(service: str, raw: Dict[str, Any], key: str) -> List[Any]:
    value = raw.get(key)
    if value is None:
        return []
    if not isinstance(value, list):
        raise ManifestError(f"Service '{service}': {key} must be a list")
    return value


def _parse_build(service: str, raw: Any) -> BuildConfig:
    if isinstance(raw, str):
        return BuildConfig(context=raw)
    if not isinstance(raw, dict):
        raise ManifestError(f"Service '{service}': build must be a path or a mapping")

    args = raw.get("args") or {}
    if isinstance(args, list):
        args = _pairs_to_dict(service, args, "build.args")
    elif not isinstance(args, dict):
        raise ManifestError(f"Service '{service}': build.args must be a mapping or a list")

    return BuildConfig(
        context=str(raw.get("context", ".")),
        dockerfile=str(raw.get("dockerfile", "Dockerfile")),
        args={str(k): "" if v is None else str(v) for k, v in args.items()},
        target=raw.get("target"),
    )


def _parse_depends_on(service: str, raw: Any) -> List[str]:
    if raw is None:
        return []
    if isinstance(raw, str):
        return [raw]
    if isinstance(raw, list):
        return [str(d) for d in raw]
    if isinstance(raw, dict):
        # Long syntax: conditions are accepted but only launch order is honoured.
        for dep, opts in raw.items():
            condition = (opts or {}).get("condition") if isinstance(opts, dict) else None
            if condition and condition != "service_started":
                logger.warning(f"Service '{service}': depends_on condition '{condition}' "
                               f"for '{dep}' is treated as service_started")
        return [str(d) for d in raw]
    raise ManifestError(f"Service '{service}': depends_on must be a list or a mapping")


def _parse_environment(service: str, raw: Any) -> Dict[str, str]:
    if raw is None:
        return {}
    if isinstance(raw, dict):
        return {str(k): "" if v is None else str(v) for k, v in raw.items()}
    if isinstance(raw, list):
        return _pairs_to_dict(service, raw, "environment")
    raise ManifestError(f"Service '{service}': environment must be a mapping or a list")


def _pairs_to_dict(service: str, items: List[Any], what: str) -> Dict[str, str]:
    result = {}
    for item in items:
        item = str(item)
        if "=" in item:
            key, value = item.split("=", 1)
        else:
            key, value = item, ""
        if not key:
            raise ManifestError(f"Service '{service}': invalid {what} entry '{item}'")
        result[key] = value
    return result


def parse_port(service: str, raw: Any) -> PortMapping:
    """
    Parse one ports entry.

    Accepts "8080:8080", "127.0.0.1:8080:8080", "8080:8080/udp", a bare
    container port, or the long {published, target, protocol} form.
    """
    if isinstance(raw, bool):
        raise ManifestError(f"Service '{service}': invalid port entry {raw!r}")

    if isinstance(raw, int):
        return PortMapping(host_port=None, container_port=_check_port(service, raw))

    if isinstance(raw, dict):
        target = raw.get("target")
        if target is None:
            raise ManifestError(f"Service '{service}': long port syntax needs 'target'")
        published = raw.get("published")
        return PortMapping(
            host_port=_check_port(service, published) if published is not None else None,
            container_port=_check_port(service, target),
            protocol=str(raw.get("protocol", "tcp")),
            host_ip=raw.get("host_ip"),
        )

    text = str(raw).strip()
    protocol = "tcp"
    if "/" in text:
        text, protocol = text.rsplit("/", 1)

    if "-" in text:
        raise ManifestError(f"Service '{service}': port ranges are not supported ('{raw}')")

    parts = text.split(":")
    host_ip = None
    if len(parts) == 1:
        host_port, container_port = None, parts[0]
    elif len(parts) == 2:
        host_port, container_port = parts
    elif len(parts) == 3:
        host_ip, host_port, container_port = parts
    else:
        raise ManifestError(f"Service '{service}': cannot parse port '{raw}'")

    return PortMapping(
        host_port=_check_port(service, host_port) if host_port else None,
        container_port=_check_port(service, container_port),
        protocol=protocol,
        host_ip=host_ip or None,
    )


def _check_port(service: str, value: Any) -> int:
    try:
        port = int(value)
    except (TypeError, ValueError):
        raise ManifestError(f"Service '{service}': invalid port '{value}'") from None
    if not 0 < port <= 65535:
        raise ManifestError(f"Service '{service}': port {port} is out of range")
    return port


def parse_volume_mount(service: str, raw: Any) -> VolumeMount:
    if isinstance(raw, dict):
        source = raw.get("source")
        target = raw.get("target")
        if not source or not target:
            raise ManifestError(f"Service '{service}': volume entries need source and target")
        return VolumeMount(source=str(source), target=str(target), read_only=bool(raw.get("read_only")))

    parts = str(raw).split(":")
    if len(parts) == 2:
        return VolumeMount(source=parts[0], target=parts[1])
    if len(parts) == 3 and parts[2] in ("ro", "rw"):
        return VolumeMount(source=parts[0], target=parts[1], read_only=parts[2] == "ro")
    raise ManifestError(
        f"Service '{service}': cannot parse volume '{raw}'",
        hint="Use <volume>:<path> or <host-path>:<path>[:ro]"
    )
