"""
Docker CLI engine.
"""

import json
import logging
import os
import subprocess
import tempfile
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from ..errors import (
    BuildError, EngineError, ImageNotFoundError, PortConflictError, StartError, VolumeMountError,
)
from ..obs.classify import FailureClassifier
from ..recipes.base import BuildRecipe
from ..recipes.dockerfile import render_recipe
from ..labels import project_filter
from ..state import get_docker_bin
from .base import Container, ContainerSpec, Engine, Image, LineCallback, StageCallback

logger = logging.getLogger(__name__)


class DockerEngine(Engine):
    """Drives the docker CLI through subprocess."""

    name = "docker"

    def __init__(self, docker_bin: Optional[str] = None):
        self.docker_bin = docker_bin or get_docker_bin()
        self.classifier = FailureClassifier()

    def _run(self, args: List[str], on_line: Optional[LineCallback] = None) -> Tuple[int, str]:
        """
        Run a docker command, streaming merged stdout/stderr lines.

        Returns:
            Tuple of (returncode, output)
        """
        command = [self.docker_bin] + args
        logger.debug(f"$ {' '.join(command)}")
        try:
            process = subprocess.Popen(
                command,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                bufsize=1,
            )
        except FileNotFoundError as e:
            raise EngineError(
                f"Docker CLI not found: {self.docker_bin}",
                command=command,
                hint="Install docker or set STACKUP_ENGINE=local"
            ) from e
        except OSError as e:
            raise EngineError(
                f"Could not run {self.docker_bin}: {e}",
                command=command,
                hint="Check that the docker CLI is executable and the daemon socket is reachable"
            ) from e

        output_lines = []
        for line in process.stdout:
            line = line.rstrip()
            output_lines.append(line)
            if on_line and line.strip():
                on_line(line)

        process.wait()
        return process.returncode, "\n".join(output_lines)

    def _check(self, args: List[str], on_line: Optional[LineCallback] = None) -> str:
        rc, output = self._run(args, on_line)
        if rc != 0:
            rule = self.classifier.classify_message(output)
            raise EngineError(
                f"docker {args[0]} failed: {_tail(output)}",
                command=[self.docker_bin] + args,
                output=output,
                hint=rule.hint if rule else None
            )
        return output

    # Images

    def build(self, recipe: BuildRecipe, context: Path, build_args: Dict[str, str], tag: str,
              target: Optional[str] = None, on_stage: Optional[StageCallback] = None,
              on_line: Optional[LineCallback] = None) -> Image:
        stage_by_header = {f"FROM {s.base_image}".lower(): s for s in recipe.stages}

        def watch(line: str) -> None:
            if on_stage:
                lowered = line.lower()
                for header, stage in stage_by_header.items():
                    if header in lowered:
                        on_stage(stage.index, stage.name, stage.base_image)
                        break
            if on_line:
                on_line(line)

        fd, dockerfile = tempfile.mkstemp(prefix="stackup-", suffix=".dockerfile")
        try:
            with os.fdopen(fd, "w") as f:
                f.write(render_recipe(recipe))

            args = ["build", "--progress=plain", "-f", dockerfile, "-t", tag]
            if target:
                args += ["--target", target]
            for key, value in sorted(build_args.items()):
                args += ["--build-arg", f"{key}={value}"]
            args.append(str(context))

            rc, output = self._run(args, watch)
        finally:
            os.unlink(dockerfile)

        if rc != 0:
            rule = self.classifier.classify_message(output, phase="build")
            error_cls = ImageNotFoundError if rule and rule.id == "base_image_not_found" else BuildError
            raise error_cls(
                f"docker build failed for {tag}: {_tail(output)}",
                hint=rule.hint if rule else "See the build output above"
            )

        return self.inspect_image(tag, build_args)

    def inspect_image(self, ref: str, build_args: Optional[Dict[str, str]] = None) -> Image:
        output = self._check(["image", "inspect", "--format", "{{json .}}", ref])
        try:
            data = json.loads(output.splitlines()[-1]) if output.strip() else {}
        except json.JSONDecodeError as e:
            raise EngineError(
                f"Unreadable image inspect output for {ref}: {_tail(output)}",
                command=[self.docker_bin, "image", "inspect", ref],
            ) from e
        config = data.get("Config") or {}
        env = dict(item.split("=", 1) for item in config.get("Env") or [] if "=" in item)
        return Image(
            ref=ref,
            digest=data.get("Id", ""),
            env=env,
            workdir=config.get("WorkingDir") or "/",
            cmd=config.get("Cmd"),
            entrypoint=config.get("Entrypoint"),
            exposed_ports=sorted((config.get("ExposedPorts") or {}).keys()),
            build_args=dict(build_args or {}),
        )

    def ensure_image(self, ref: str) -> None:
        rc, _ = self._run(["image", "inspect", ref])
        if rc == 0:
            return
        rc, output = self._run(["pull", ref])
        if rc != 0:
            rule = self.classifier.classify_message(output)
            raise ImageNotFoundError(
                f"Failed to pull {ref}: {_tail(output)}",
                hint=rule.hint if rule else "Check the image reference and registry access"
            )

    # Networks and volumes

    def create_network(self, name: str, labels: Optional[Dict[str, str]] = None) -> None:
        rc, _ = self._run(["network", "inspect", name])
        if rc == 0:
            return
        args = ["network", "create"]
        for key, value in (labels or {}).items():
            args += ["--label", f"{key}={value}"]
        self._check(args + [name])

    def volume_exists(self, name: str) -> bool:
        rc, _ = self._run(["volume", "inspect", name])
        return rc == 0

    def create_volume(self, name: str, labels: Optional[Dict[str, str]] = None) -> bool:
        if self.volume_exists(name):
            return False
        args = ["volume", "create"]
        for key, value in (labels or {}).items():
            args += ["--label", f"{key}={value}"]
        try:
            self._check(args + [name])
        except EngineError as e:
            raise VolumeMountError(e.message, hint=e.hint) from e
        return True

    def remove_volume(self, name: str) -> None:
        self._check(["volume", "rm", name])

    # Containers

    def start_container(self, spec: ContainerSpec) -> Container:
        args = ["run", "-d", "--name", spec.name]
        if spec.network:
            args += ["--network", spec.network]
            for alias in sorted({spec.service, *spec.aliases}):
                args += ["--network-alias", alias]
        for port in spec.ports:
            args += ["-p", port.to_short()]
        for mount in spec.mounts:
            source = str(Path(mount.source).expanduser().resolve()) if mount.is_bind else mount.source
            args += ["-v", f"{source}:{mount.target}" + (":ro" if mount.read_only else "")]
        for key, value in spec.environment.items():
            args += ["-e", f"{key}={value}"]
        for key, value in spec.labels.items():
            args += ["--label", f"{key}={value}"]
        args.append(spec.image)
        if spec.command:
            args += list(spec.command)

        rc, output = self._run(args)
        if rc != 0:
            # docker leaves a created-but-not-started container behind on bind failures
            self._run(["rm", "-f", spec.name])
            rule = self.classifier.classify_message(output, phase="start")
            if rule and rule.id == "address_in_use":
                host_port = next((p.host_port for p in spec.ports if p.published
                                  and str(p.host_port) in output), None)
                raise PortConflictError(host_port or 0, service=spec.service)
            if rule and rule.id == "volume_mount_failed":
                raise VolumeMountError(_tail(output), service=spec.service, hint=rule.hint)
            raise StartError(
                f"docker run failed for {spec.name}: {_tail(output)}",
                service=spec.service,
                hint=rule.hint if rule else None
            )

        container_id = output.strip().splitlines()[-1] if output.strip() else None
        return Container(
            name=spec.name,
            service=spec.service,
            image=spec.image,
            status="running",
            id=container_id,
            labels=dict(spec.labels),
            ports=list(spec.ports),
        )

    def remove_container(self, name: str) -> bool:
        rc, _ = self._run(["container", "inspect", name])
        if rc != 0:
            return False
        self._check(["rm", "-f", name])
        return True

    def list_containers(self, project: Optional[str] = None) -> List[Container]:
        args = ["ps", "-a", "--format", "{{json .}}"]
        if project is not None:
            args += ["--filter", project_filter(project)]
        output = self._check(args)

        containers = []
        for line in output.splitlines():
            line = line.strip()
            if not line:
                continue
            try:
                row = json.loads(line)
            except json.JSONDecodeError:
                continue
            labels = _parse_label_string(row.get("Labels", ""))
            containers.append(Container(
                name=row.get("Names", ""),
                service=labels.get("stackup.service", ""),
                image=row.get("Image", ""),
                status="running" if row.get("State") == "running" else row.get("State", "unknown"),
                id=row.get("ID"),
                labels=labels,
            ))
        return containers


def _parse_label_string(raw: str) -> Dict[str, str]:
    labels = {}
    for item in raw.split(","):
        if "=" in item:
            key, value = item.split("=", 1)
            labels[key.strip()] = value.strip()
    return labels


def _tail(output: str, lines: int = 3) -> str:
    kept = [line for line in output.splitlines() if line.strip()][-lines:]
    return " | ".join(kept) if kept else "no output"
