"""
Write a Manifest back out as compose-style YAML.
"""

from typing import Any, Dict

import yaml

from .models import Manifest, ServiceSpec


def manifest_to_dict(manifest: Manifest) -> Dict[str, Any]:
    data: Dict[str, Any] = {
        "name": manifest.project,
        "services": {name: _service_to_dict(svc) for name, svc in manifest.services.items()},
    }
    if manifest.volumes:
        volumes: Dict[str, Any] = {}
        for name, vol in manifest.volumes.items():
            entry: Dict[str, Any] = {}
            if vol.driver != "local":
                entry["driver"] = vol.driver
            if vol.external:
                entry["external"] = True
            if vol.name != name:
                entry["name"] = vol.name
            volumes[name] = entry
        data["volumes"] = volumes
    return data


def _service_to_dict(svc: ServiceSpec) -> Dict[str, Any]:
    out: Dict[str, Any] = {}
    if svc.container_name:
        out["container_name"] = svc.container_name
    if svc.image:
        out["image"] = svc.image
    if svc.build:
        build: Dict[str, Any] = {"context": svc.build.context, "dockerfile": svc.build.dockerfile}
        if svc.build.args:
            build["args"] = dict(svc.build.args)
        if svc.build.target:
            build["target"] = svc.build.target
        out["build"] = build
    if svc.command:
        out["command"] = list(svc.command)
    if svc.environment:
        out["environment"] = dict(svc.environment)
    if svc.ports:
        out["ports"] = [p.to_short() for p in svc.ports]
    if svc.depends_on:
        out["depends_on"] = list(svc.depends_on)
    if svc.volumes:
        out["volumes"] = [v.to_short() for v in svc.volumes]
    return out


def render_manifest(manifest: Manifest) -> str:
    """Canonical YAML; PyYAML quotes port pairs that YAML 1.1 would read as numbers."""
    return yaml.safe_dump(manifest_to_dict(manifest), sort_keys=False, default_flow_style=False)
