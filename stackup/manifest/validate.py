"""
Manifest validation: hard errors block bring-up, warnings are advisory.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from ..errors import CycleError, ManifestError, RecipeError
from .connection import looks_like_connection_string, parse_connection_string
from .graph import dependency_graph, find_cycle
from .models import Manifest

logger = logging.getLogger(__name__)


@dataclass
class ValidationReport:
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors

    def raise_for_errors(self) -> None:
        if self.errors:
            raise ManifestError(
                f"Manifest has {len(self.errors)} error(s): {self.errors[0]}",
                errors=list(self.errors)
            )

    def to_dict(self) -> Dict[str, object]:
        return {"ok": self.ok, "errors": list(self.errors), "warnings": list(self.warnings)}


def validate_manifest(manifest: Manifest, check_recipes: bool = True) -> ValidationReport:
    """
    Check a manifest for problems that would break bring-up.

    Args:
        manifest: Parsed manifest
        check_recipes: Also read and check each service's build recipe

    Returns:
        ValidationReport with errors and warnings
    """
    report = ValidationReport()

    _check_image_sources(manifest, report)
    _check_dependencies(manifest, report)
    _check_volumes(manifest, report)
    _check_ports(manifest, report)
    _check_connection_strings(manifest, report)
    if check_recipes:
        _check_recipes(manifest, report)

    for error in report.errors:
        logger.debug(f"validation error: {error}")
    return report


def _check_image_sources(manifest: Manifest, report: ValidationReport) -> None:
    names: Dict[str, str] = {}
    for svc in manifest.services.values():
        if not svc.image and not svc.build:
            report.errors.append(f"Service '{svc.name}' has neither 'image' nor 'build'")
        container = manifest.container_name(svc.name)
        if container in names:
            report.errors.append(
                f"Services '{names[container]}' and '{svc.name}' share container name '{container}'"
            )
        names[container] = svc.name


def _check_dependencies(manifest: Manifest, report: ValidationReport) -> None:
    for svc in manifest.services.values():
        for dep in svc.depends_on:
            if dep == svc.name:
                report.errors.append(f"Service '{svc.name}' depends on itself")
            elif dep not in manifest.services:
                report.errors.append(f"Service '{svc.name}' depends on undeclared service '{dep}'")

    cycle = find_cycle(dependency_graph(manifest))
    if cycle and len(cycle) > 2:
        report.errors.append(str(CycleError(cycle)))


def _check_volumes(manifest: Manifest, report: ValidationReport) -> None:
    for svc in manifest.services.values():
        for mount in svc.named_volumes():
            if mount.source not in manifest.volumes:
                report.errors.append(
                    f"Service '{svc.name}' mounts undeclared volume '{mount.source}'"
                )

    for name in manifest.volumes:
        mounters = manifest.mounters_of(name)
        if len(mounters) > 1:
            report.errors.append(
                f"Volume '{name}' is mounted by more than one service: {', '.join(mounters)}"
            )
        elif not mounters:
            report.warnings.append(f"Volume '{name}' is declared but not mounted by any service")


def _check_ports(manifest: Manifest, report: ValidationReport) -> None:
    seen: Dict[tuple, str] = {}
    for svc in manifest.services.values():
        for port in svc.ports:
            if not port.published:
                continue
            host_ip = _bind_ip(port.host_ip)
            clash = next(
                (owner for (ip, num, proto), owner in seen.items()
                 if num == port.host_port and proto == port.protocol
                 and (ip is None or host_ip is None or ip == host_ip)),
                None,
            )
            if clash is not None:
                report.errors.append(
                    f"Host port {port.host_port}/{port.protocol} is published by both "
                    f"'{clash}' and '{svc.name}'"
                )
            else:
                seen[(host_ip, port.host_port, port.protocol)] = svc.name


def _bind_ip(host_ip: Optional[str]) -> Optional[str]:
    # None means every interface
    if not host_ip or host_ip in ("0.0.0.0", "::"):
        return None
    return host_ip


def _check_connection_strings(manifest: Manifest, report: ValidationReport) -> None:
    for svc in manifest.services.values():
        values = []
        if svc.build:
            values.extend((f"build arg {k}", v) for k, v in svc.build.args.items())
        values.extend((f"environment {k}", v) for k, v in svc.environment.items())

        for where, value in values:
            if not looks_like_connection_string(value):
                continue
            try:
                conn = parse_connection_string(value)
            except ValueError as e:
                report.warnings.append(f"Service '{svc.name}' {where}: {e}")
                continue

            if conn.is_loopback or conn.is_literal_ip:
                report.warnings.append(
                    f"Service '{svc.name}' {where} points at '{conn.host}'; "
                    f"use a service name so it resolves inside the network"
                )
                continue

            target = manifest.services.get(conn.host)
            if target is None:
                report.warnings.append(
                    f"Service '{svc.name}' {where} host '{conn.host}' is not a declared service"
                )
                continue

            port = conn.effective_port
            container_ports = {p.container_port for p in target.ports}
            if port and container_ports and port not in container_ports:
                report.warnings.append(
                    f"Service '{svc.name}' {where} uses port {port} but '{target.name}' "
                    f"only declares {sorted(container_ports)}"
                )

            if conn.host not in svc.depends_on:
                report.warnings.append(
                    f"Service '{svc.name}' connects to '{conn.host}' without depending on it"
                )


def _check_recipes(manifest: Manifest, report: ValidationReport) -> None:
    from ..recipes import check_recipe, parse_recipe

    for svc in manifest.services.values():
        if not svc.build:
            continue
        recipe_path = svc.build.recipe_path(manifest.base_dir)
        if not recipe_path.exists():
            report.errors.append(f"Service '{svc.name}': build recipe not found at {recipe_path}")
            continue
        try:
            recipe = parse_recipe(recipe_path.read_text())
            check_recipe(recipe, target=svc.build.target)
        except RecipeError as e:
            report.errors.append(f"Service '{svc.name}': {e.message}")
            continue

        declared = recipe.declared_args()
        for arg in svc.build.args:
            if arg not in declared:
                report.warnings.append(
                    f"Service '{svc.name}': build arg '{arg}' is not declared by any ARG in {recipe_path.name}"
                )
