"""
In-process engine.

Runs recipe stages over in-memory filesystems and keeps volumes, networks,
containers and host port bindings in memory. Build commands are executed
by registered handlers; a handler only runs when its program is available
in the stage's base image, so toolchains matter the same way they do in a
real build.
"""

import fnmatch
import hashlib
import itertools
import json
import logging
import posixpath
import re
import shlex
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Optional, Set

from ..errors import (
    BuildError, EngineError, ImageNotFoundError, MissingStageError, PortConflictError,
    StartError, VolumeMountError,
)
from ..recipes.base import BuildRecipe, CopyOp, Stage
from ..recipes.dockerfile import expand_vars
from .base import Container, ContainerSpec, Engine, Image, LineCallback, StageCallback

logger = logging.getLogger(__name__)

BINARY_MAGIC = b"\x7fELF"
SHELL_BUILTINS = {"true", ":", "echo", "mkdir", "rm", "cd"}
DEFAULT_PATH = "/usr/local/sbin:/usr/local/bin:/usr/sbin:/usr/bin:/sbin:/bin"


@dataclass
class BaseImage:
    """A pullable image: its filesystem plus the programs RUN can use."""
    ref: str
    filesystem: Dict[str, bytes] = field(default_factory=dict)
    env: Dict[str, str] = field(default_factory=dict)
    tools: Set[str] = field(default_factory=set)
    workdir: str = "/"
    cmd: Optional[List[str]] = None


@dataclass
class StageContext:
    stage: Stage
    filesystem: Dict[str, bytes]
    env: Dict[str, str]
    tools: Set[str]
    workdir: str = "/"
    declared_env: Dict[str, str] = field(default_factory=dict)
    on_line: Optional[LineCallback] = None

    def resolve(self, path: str) -> str:
        return _resolve(path, self.workdir)

    def exists(self, path: str) -> bool:
        return path in self.filesystem or bool(self.files_under(path))

    def read(self, path: str) -> Optional[bytes]:
        return self.filesystem.get(path)

    def write(self, path: str, data: bytes) -> None:
        self.filesystem[path] = data

    def files_under(self, directory: str) -> Dict[str, bytes]:
        prefix = directory.rstrip("/") + "/"
        if prefix == "//":
            prefix = "/"
        return {p: d for p, d in self.filesystem.items() if p.startswith(prefix)}

    def log(self, line: str) -> None:
        if self.on_line:
            self.on_line(line)


CommandHandler = Callable[[StageContext, List[str]], None]


def _resolve(path: str, workdir: str) -> str:
    if not path.startswith("/"):
        path = posixpath.join(workdir, path)
    resolved = posixpath.normpath(path)
    return "/" if resolved in ("", ".") else resolved


def _digest(items) -> str:
    h = hashlib.sha256()
    h.update(json.dumps(items, sort_keys=True).encode())
    return "sha256:" + h.hexdigest()


def make_binary(artifact: str, toolchain: str, sources: Dict[str, bytes], embedded_env: Dict[str, str]) -> bytes:
    """Deterministic stand-in for a compiled artifact."""
    source_digest = hashlib.sha256()
    for path in sorted(sources):
        source_digest.update(path.encode())
        source_digest.update(sources[path])
    payload = {
        "artifact": artifact,
        "toolchain": toolchain,
        "source_digest": source_digest.hexdigest(),
        "embedded_env": dict(sorted(embedded_env.items())),
    }
    return BINARY_MAGIC + json.dumps(payload, sort_keys=True).encode()


def inspect_binary(blob: bytes) -> Dict[str, object]:
    """Read back what a local-engine binary was compiled with."""
    if not blob or not blob.startswith(BINARY_MAGIC):
        raise ValueError("Not a compiled artifact")
    return json.loads(blob[len(BINARY_MAGIC):].decode())


# Build command handlers

def _cargo(ctx: StageContext, argv: List[str]) -> None:
    if argv[1:2] != ["build"]:
        raise BuildError(f"cargo {' '.join(argv[1:])}: unsupported subcommand")
    profile = "release" if "--release" in argv else "debug"

    manifest = ctx.read(ctx.resolve("Cargo.toml"))
    if manifest is None:
        raise BuildError(f"error: could not find `Cargo.toml` in `{ctx.workdir}`")

    match = re.search(r'\[package\][^\[]*?\bname\s*=\s*"([^"]+)"', manifest.decode(errors="ignore"), re.S)
    if not match:
        raise BuildError("error: failed to parse manifest: missing package name")
    name = match.group(1)

    sources = {p: d for p, d in ctx.files_under(ctx.resolve("src")).items() if p.endswith(".rs")}
    if ctx.resolve("src/main.rs") not in sources:
        raise BuildError(f"error: no targets specified in the manifest for `{name}`")
    for path, data in sorted(sources.items()):
        if b"compile_error!" in data:
            raise BuildError(f"error: could not compile `{name}` ({path})")

    ctx.log(f"   Compiling {name} v0.1.0 ({ctx.workdir})")
    target_dir = ctx.resolve(f"target/{profile}")
    ctx.write(f"{target_dir}/deps/{name}.d", b"dep-info")
    ctx.write(f"{target_dir}/build/.fingerprint", b"fingerprint")
    ctx.write(f"{target_dir}/{name}", make_binary(name, "cargo", sources, ctx.declared_env))
    ctx.log(f"    Finished {profile} target(s)")


def _go(ctx: StageContext, argv: List[str]) -> None:
    if argv[1:2] != ["build"]:
        raise BuildError(f"go {' '.join(argv[1:])}: unsupported subcommand")
    if ctx.read(ctx.resolve("go.mod")) is None:
        raise BuildError("go: go.mod file not found in current directory or any parent directory")

    sources = {p: d for p, d in ctx.files_under(ctx.workdir).items() if p.endswith(".go")}
    if not sources:
        raise BuildError(f"no Go files in {ctx.workdir}")

    output = None
    if "-o" in argv:
        idx = argv.index("-o")
        if idx + 1 >= len(argv):
            raise BuildError("flag needs an argument: -o")
        output = argv[idx + 1]
    name = posixpath.basename(output) if output else posixpath.basename(ctx.workdir) or "app"
    ctx.write(ctx.resolve(output or name), make_binary(name, "go", sources, ctx.declared_env))
    ctx.write(ctx.resolve(".cache/go-build/index"), b"cache")


def _builtin(ctx: StageContext, argv: List[str]) -> None:
    program = argv[0]
    if program == "echo":
        ctx.log(" ".join(argv[1:]))
    elif program == "rm":
        for target in (a for a in argv[1:] if not a.startswith("-")):
            path = ctx.resolve(target)
            for victim in list(ctx.files_under(path)) + ([path] if path in ctx.filesystem else []):
                ctx.filesystem.pop(victim, None)
    elif program == "cd":
        ctx.workdir = ctx.resolve(argv[1] if len(argv) > 1 else "/")
    # true, :, mkdir: directories are implicit


DEFAULT_HANDLERS: Dict[str, CommandHandler] = {
    "cargo": _cargo,
    "go": _go,
    **{name: _builtin for name in SHELL_BUILTINS},
}


def default_base_images() -> Dict[str, BaseImage]:
    os_files = {"/bin/sh": b"sh", "/etc/os-release": b"ID=debian"}
    return {
        "rust:1.69-buster": BaseImage(
            ref="rust:1.69-buster",
            filesystem={
                **os_files,
                "/usr/local/cargo/bin/cargo": b"cargo",
                "/usr/local/cargo/bin/rustc": b"rustc",
                "/usr/local/rustup/toolchains/1.69-x86_64/lib/librustc_driver.so": b"rustc-driver",
            },
            env={"PATH": "/usr/local/cargo/bin:" + DEFAULT_PATH,
                 "CARGO_HOME": "/usr/local/cargo", "RUSTUP_HOME": "/usr/local/rustup"},
            tools={"sh", "cargo", "rustc"},
        ),
        "golang:1.21-bookworm": BaseImage(
            ref="golang:1.21-bookworm",
            filesystem={**os_files, "/usr/local/go/bin/go": b"go"},
            env={"PATH": "/usr/local/go/bin:" + DEFAULT_PATH, "GOPATH": "/go"},
            tools={"sh", "go"},
        ),
        "debian:buster-slim": BaseImage(
            ref="debian:buster-slim", filesystem=dict(os_files), env={"PATH": DEFAULT_PATH}, tools={"sh"},
        ),
        "debian:bookworm-slim": BaseImage(
            ref="debian:bookworm-slim", filesystem=dict(os_files), env={"PATH": DEFAULT_PATH}, tools={"sh"},
        ),
        "postgres:13": BaseImage(
            ref="postgres:13",
            filesystem={**os_files, "/usr/lib/postgresql/13/bin/postgres": b"postgres"},
            env={"PATH": "/usr/lib/postgresql/13/bin:" + DEFAULT_PATH, "PGDATA": "/var/lib/postgresql/data"},
            tools={"sh", "postgres"},
            cmd=["postgres"],
        ),
    }


@dataclass
class LocalContainer(Container):
    filesystem: Dict[str, bytes] = field(default_factory=dict)
    environment: Dict[str, str] = field(default_factory=dict)
    command: List[str] = field(default_factory=list)
    network: Optional[str] = None
    mounts: Dict[str, Dict[str, bytes]] = field(default_factory=dict)    # mount target -> volume data

    def _mount_for(self, path: str):
        for target in sorted(self.mounts, key=len, reverse=True):
            if path == target or path.startswith(target.rstrip("/") + "/"):
                return target, self.mounts[target]
        return None, None

    def write(self, path: str, data: bytes) -> None:
        target, volume = self._mount_for(path)
        if volume is not None:
            volume[posixpath.relpath(path, target)] = data
        else:
            self.filesystem[path] = data

    def read(self, path: str) -> Optional[bytes]:
        target, volume = self._mount_for(path)
        if volume is not None:
            return volume.get(posixpath.relpath(path, target))
        return self.filesystem.get(path)


class LocalEngine(Engine):
    """Engine that keeps everything in process memory."""

    name = "local"

    def __init__(self, base_images: Optional[Dict[str, BaseImage]] = None,
                 handlers: Optional[Dict[str, CommandHandler]] = None):
        self.base_images: Dict[str, BaseImage] = base_images if base_images is not None else default_base_images()
        self.handlers: Dict[str, CommandHandler] = dict(DEFAULT_HANDLERS)
        if handlers:
            self.handlers.update(handlers)
        self.images: Dict[str, Image] = {}
        self.volumes: Dict[str, Dict[str, bytes]] = {}
        self.networks: Dict[str, Dict[str, str]] = {}       # network -> alias -> container name
        self.containers: Dict[str, LocalContainer] = {}
        self._bound_ports: Dict[tuple, str] = {}            # (host port, protocol) -> holder
        self._seq = itertools.count(1)
        self._lock = threading.RLock()

    # Images

    def ensure_image(self, ref: str) -> None:
        with self._lock:
            if ref in self.images:
                return
            base = self.base_images.get(ref)
            if base is None:
                raise ImageNotFoundError(
                    f"pull access denied for {ref}, repository does not exist",
                    hint="Check the image name or registry reachability"
                )
            self.images[ref] = Image(
                ref=ref,
                digest=_digest([sorted((p, hashlib.sha256(d).hexdigest()) for p, d in base.filesystem.items()),
                                base.env]),
                env=dict(base.env),
                workdir=base.workdir,
                cmd=list(base.cmd) if base.cmd else None,
                filesystem=dict(base.filesystem),
            )

    def _base_for_stage(self, ref: str) -> BaseImage:
        with self._lock:
            if ref in self.base_images:
                return self.base_images[ref]
            built = self.images.get(ref)
        if built is not None:
            return BaseImage(ref=ref, filesystem=dict(built.filesystem), env=dict(built.env),
                             tools={"sh"}, workdir=built.workdir, cmd=built.cmd)
        raise ImageNotFoundError(
            f"failed to resolve source metadata for {ref}: not found",
            hint="Base image is unknown or its registry is unreachable"
        )

    def build(self, recipe: BuildRecipe, context: Path, build_args: Dict[str, str], tag: str,
              target: Optional[str] = None, on_stage: Optional[StageCallback] = None,
              on_line: Optional[LineCallback] = None) -> Image:
        stages = recipe.stages_up_to(target)
        if not stages:
            raise BuildError(f"target stage '{target}' could not be found")

        global_args = {
            name: build_args.get(name, default if default is not None else "")
            for name, default in recipe.global_args.items()
        }
        ignore = _dockerignore(Path(context))
        finished: Dict[int, StageContext] = {}
        frozen: Dict[str, str] = {}

        for stage in stages:
            if on_stage:
                on_stage(stage.index, stage.name, stage.base_image)
            finished[stage.index] = self._run_stage(
                recipe, stage, Path(context), ignore, build_args, global_args, finished, frozen, on_line
            )

        final_stage = stages[-1]
        final = finished[final_stage.index]
        fs_items = sorted((p, hashlib.sha256(d).hexdigest()) for p, d in final.filesystem.items())
        image = Image(
            ref=tag,
            digest=_digest([fs_items, final.env, final.workdir, final_stage.cmd, final_stage.entrypoint]),
            env=dict(final.env),
            workdir=final.workdir,
            cmd=final_stage.cmd,
            entrypoint=final_stage.entrypoint,
            exposed_ports=final_stage.exposed_ports,
            build_args=frozen,
            filesystem=dict(final.filesystem),
        )
        finished.clear()

        with self._lock:
            self.images[tag] = image
        logger.info(f"Built {tag} ({image.digest[:19]}) from {len(stages)} stage(s)")
        return image

    def _run_stage(self, recipe: BuildRecipe, stage: Stage, context: Path, ignore: List[str],
                   build_args: Dict[str, str], global_args: Dict[str, str],
                   finished: Dict[int, StageContext], frozen: Dict[str, str],
                   on_line: Optional[LineCallback]) -> StageContext:
        base_ref = expand_vars(stage.base_image, global_args)
        prior = recipe.find_stage(base_ref, before=stage.index)
        if prior is not None:
            parent = finished[prior.index]
            ctx = StageContext(stage=stage, filesystem=dict(parent.filesystem), env=dict(parent.env),
                               tools=set(parent.tools), workdir=parent.workdir,
                               declared_env=dict(parent.declared_env), on_line=on_line)
        else:
            base = self._base_for_stage(base_ref)
            ctx = StageContext(stage=stage, filesystem=dict(base.filesystem), env=dict(base.env),
                               tools=set(base.tools), workdir=base.workdir, on_line=on_line)

        arg_values: Dict[str, str] = {}
        total = len(stage.steps) + 1
        for number, step in enumerate(stage.steps, start=2):
            scope = {**arg_values, **ctx.env}
            if step.kind not in ("ARG", "ENV", "WORKDIR", "COPY", "RUN"):
                continue
            ctx.log(f"Step {number}/{total} : {step.kind} {_describe(step.value)}")

            if step.kind == "ARG":
                name, default = step.value
                if name in build_args:
                    value = build_args[name]
                elif default is not None:
                    value = expand_vars(default, scope)
                else:
                    value = global_args.get(name, "")
                arg_values[name] = value
                frozen[name] = value
            elif step.kind == "ENV":
                key, raw = step.value
                value = expand_vars(raw, scope)
                ctx.env[key] = value
                ctx.declared_env[key] = value
            elif step.kind == "WORKDIR":
                ctx.workdir = ctx.resolve(expand_vars(step.value, scope))
            elif step.kind == "COPY":
                self._copy(recipe, stage, ctx, step.value, context, ignore, finished, scope)
            elif step.kind == "RUN":
                self._run_command(ctx, expand_vars(step.value, scope), {**arg_values, **ctx.env})

        return ctx

    def _copy(self, recipe: BuildRecipe, stage: Stage, ctx: StageContext, op: CopyOp, context: Path,
              ignore: List[str], finished: Dict[int, StageContext], scope: Dict[str, str]) -> None:
        dest = expand_vars(op.dest, scope)
        sources = [expand_vars(s, scope) for s in op.sources]
        into_dir = dest.endswith("/") or dest in (".", "./") or len(sources) > 1
        dest_path = ctx.resolve(dest)

        if op.from_stage is not None:
            source_stage = recipe.find_stage(op.from_stage, before=stage.index)
            if source_stage is None or source_stage.index not in finished:
                raise MissingStageError(op.from_stage, stage.index)
            source_fs = finished[source_stage.index].filesystem
            for src in sources:
                path = _resolve(src, "/")
                if path in source_fs:
                    target = posixpath.join(dest_path, posixpath.basename(path)) if into_dir else dest_path
                    ctx.write(target, source_fs[path])
                    continue
                prefix = path.rstrip("/") + "/"
                tree = {p: d for p, d in source_fs.items() if p.startswith(prefix)}
                if not tree:
                    raise BuildError(
                        f"COPY --from={op.from_stage} {src}: not found in stage '{source_stage.name}'",
                        stage=stage.name,
                        hint="Check the artifact path produced by the earlier stage"
                    )
                for p, d in tree.items():
                    ctx.write(posixpath.join(dest_path, p[len(prefix):]), d)
            return

        for src in sources:
            host = (context / src).resolve()
            try:
                host.relative_to(context.resolve())
            except ValueError:
                raise BuildError(f"COPY {src}: path outside the build context", stage=stage.name) from None
            if host.is_file():
                target = posixpath.join(dest_path, host.name) if into_dir else dest_path
                ctx.write(target, host.read_bytes())
            elif host.is_dir():
                for file in sorted(host.rglob("*")):
                    if not file.is_file():
                        continue
                    rel = file.relative_to(host).as_posix()
                    if _ignored(file.relative_to(context.resolve()).as_posix(), ignore):
                        continue
                    ctx.write(posixpath.join(dest_path, rel), file.read_bytes())
            else:
                raise BuildError(
                    f"COPY {src}: file not found in build context",
                    stage=stage.name,
                    hint="Paths are relative to the build context directory"
                )

    def _run_command(self, ctx: StageContext, command: str, env: Dict[str, str]) -> None:
        saved_env, saved_workdir = ctx.env, ctx.workdir
        ctx.env = env
        try:
            for part in command.split("&&"):
                try:
                    argv = shlex.split(part)
                except ValueError as e:
                    raise BuildError(f"/bin/sh: syntax error: {e}") from e
                if not argv:
                    continue
                program = argv[0]
                if program not in SHELL_BUILTINS and program not in ctx.tools:
                    raise BuildError(
                        f"/bin/sh: 1: {program}: not found",
                        stage=ctx.stage.name,
                        hint="The stage's base image does not provide this program"
                    )
                handler = self.handlers.get(program)
                if handler is None:
                    raise BuildError(
                        f"'{program}' has no handler in the local engine",
                        stage=ctx.stage.name
                    )
                try:
                    handler(ctx, argv)
                except BuildError as e:
                    e.stage = e.stage or ctx.stage.name
                    raise
        finally:
            ctx.env = saved_env
            ctx.workdir = saved_workdir

    # Networks and volumes

    def create_network(self, name: str, labels: Optional[Dict[str, str]] = None) -> None:
        with self._lock:
            self.networks.setdefault(name, {})

    def volume_exists(self, name: str) -> bool:
        with self._lock:
            return name in self.volumes

    def create_volume(self, name: str, labels: Optional[Dict[str, str]] = None) -> bool:
        with self._lock:
            if name in self.volumes:
                return False
            self.volumes[name] = {}
            return True

    def remove_volume(self, name: str) -> None:
        with self._lock:
            if name not in self.volumes:
                raise EngineError(f"no such volume: {name}")
            users = [c.name for c in self.containers.values()
                     if any(v is self.volumes[name] for v in c.mounts.values())]
            if users:
                raise EngineError(f"volume is in use by {', '.join(users)}: {name}")
            del self.volumes[name]

    # Containers

    def occupy_port(self, host_port: int, holder: str = "external", protocol: str = "tcp") -> None:
        """Mark a host port as bound by something outside the engine."""
        with self._lock:
            self._bound_ports[(host_port, protocol)] = holder

    def accepts_connections(self, host_port: int, protocol: str = "tcp") -> bool:
        with self._lock:
            holder = self._bound_ports.get((host_port, protocol))
            container = self.containers.get(holder) if holder else None
            return bool(container and container.is_running)

    def start_container(self, spec: ContainerSpec) -> LocalContainer:
        with self._lock:
            image = self.images.get(spec.image)
            if image is None:
                raise StartError(f"No such image: {spec.image}", service=spec.service)
            if spec.name in self.containers:
                raise StartError(
                    f"Conflict. The container name \"/{spec.name}\" is already in use",
                    service=spec.service,
                    hint="Remove the old container first"
                )
            if spec.network and spec.network not in self.networks:
                raise StartError(f"network {spec.network} not found", service=spec.service)

            for port in spec.ports:
                if not port.published:
                    continue
                holder = self._bound_ports.get((port.host_port, port.protocol))
                if holder is not None:
                    raise PortConflictError(port.host_port, service=spec.service, holder=holder)

            mounts: Dict[str, Dict[str, bytes]] = {}
            for mount in spec.mounts:
                if mount.is_bind:
                    if not Path(mount.source).expanduser().exists():
                        raise VolumeMountError(
                            f"bind source path does not exist: {mount.source}", service=spec.service
                        )
                    continue
                if mount.source not in self.volumes:
                    raise VolumeMountError(f"volume {mount.source} not found", service=spec.service)
                mounts[mount.target] = self.volumes[mount.source]

            command = spec.command or image.default_command
            container = LocalContainer(
                name=spec.name,
                service=spec.service,
                image=spec.image,
                status="running",
                launch_seq=next(self._seq),
                started_at=time.monotonic(),
                id=hashlib.sha256(f"{spec.name}-{time.time_ns()}".encode()).hexdigest()[:12],
                labels=dict(spec.labels),
                ports=list(spec.ports),
                filesystem=dict(image.filesystem),
                environment={**image.env, **spec.environment},
                command=list(command),
                network=spec.network,
                mounts=mounts,
            )

            for port in spec.ports:
                if port.published:
                    self._bound_ports[(port.host_port, port.protocol)] = spec.name
            if spec.network:
                for alias in {spec.service, spec.name, *spec.aliases}:
                    self.networks[spec.network][alias] = spec.name
            self.containers[spec.name] = container

        logger.info(f"Started {spec.name} (seq {container.launch_seq})")
        return container

    def remove_container(self, name: str) -> bool:
        with self._lock:
            container = self.containers.pop(name, None)
            if container is None:
                return False
            container.status = "removed"
            for key, holder in list(self._bound_ports.items()):
                if holder == name:
                    del self._bound_ports[key]
            if container.network in self.networks:
                aliases = self.networks[container.network]
                for alias, target in list(aliases.items()):
                    if target == name:
                        del aliases[alias]
        return True

    def list_containers(self, project: Optional[str] = None) -> List[Container]:
        with self._lock:
            containers = list(self.containers.values())
        if project is not None:
            containers = [c for c in containers if c.labels.get("stackup.project") == project]
        return sorted(containers, key=lambda c: c.launch_seq)

    def resolve(self, network: str, host: str) -> Optional[LocalContainer]:
        """Name-based lookup of a container on a network."""
        with self._lock:
            name = self.networks.get(network, {}).get(host)
            return self.containers.get(name) if name else None


def _describe(value) -> str:
    if isinstance(value, CopyOp):
        flag = f"--from={value.from_stage} " if value.from_stage is not None else ""
        return f"{flag}{' '.join(value.sources)} {value.dest}"
    if isinstance(value, tuple):
        key, val = value
        return f"{key}={val}" if val is not None else key
    return str(value)


def _dockerignore(context: Path) -> List[str]:
    ignore_file = context / ".dockerignore"
    if not ignore_file.exists():
        return []
    patterns = []
    for line in ignore_file.read_text().splitlines():
        line = line.strip()
        if line and not line.startswith("#"):
            patterns.append(line.rstrip("/"))
    return patterns


def _ignored(rel_path: str, patterns: List[str]) -> bool:
    for pattern in patterns:
        if fnmatch.fnmatch(rel_path, pattern) or rel_path.startswith(pattern + "/"):
            return True
    return False
