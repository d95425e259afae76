"""
Topology Manager: build images and start services in dependency order.

Services start batch by batch. A service launches only once every service
it depends on has launched; launch is not readiness, nothing probes a
dependency before its dependents start. Services whose dependencies never
launch stay waiting.
"""

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from .builder import Builder
from .engines.base import Container, ContainerSpec, Engine
from .errors import BuildError, StackupError, StartError, StateError, VolumeMountError
from .events import emit_event, EventTypes
from .labels import base_labels
from .manifest.graph import plan_batches, start_order
from .manifest.models import Manifest, VolumeMount
from .manifest.validate import validate_manifest
from .state import write_outputs_json

logger = logging.getLogger(__name__)


class ServiceState(Enum):
    """Per-service bring-up states."""
    DECLARED = "declared"
    BUILDING = "building"
    WAITING = "waiting"
    STARTING = "starting"
    RUNNING = "running"
    FAILED = "failed"


TRANSITIONS = {
    ServiceState.DECLARED: {ServiceState.BUILDING, ServiceState.WAITING},
    ServiceState.BUILDING: {ServiceState.WAITING, ServiceState.FAILED},
    ServiceState.WAITING: {ServiceState.STARTING},
    ServiceState.STARTING: {ServiceState.RUNNING, ServiceState.FAILED},
    ServiceState.RUNNING: set(),
    ServiceState.FAILED: set(),
}

LAUNCHED = (ServiceState.STARTING, ServiceState.RUNNING)


@dataclass
class ServiceStatus:
    name: str
    state: ServiceState = ServiceState.DECLARED
    error: Optional[StackupError] = None
    container: Optional[Container] = None
    image_digest: Optional[str] = None
    blocked_by: List[str] = field(default_factory=list)
    history: List[tuple] = field(default_factory=list)   # (state value, monotonic time)


@dataclass
class BringUpResult:
    project: str
    run_id: Optional[str]
    states: Dict[str, ServiceState]
    launch_order: List[str] = field(default_factory=list)
    errors: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    blocked: Dict[str, List[str]] = field(default_factory=dict)
    warnings: List[str] = field(default_factory=list)
    endpoints: Dict[str, List[str]] = field(default_factory=dict)
    cancelled: bool = False

    @property
    def ok(self) -> bool:
        return not self.cancelled and all(s == ServiceState.RUNNING for s in self.states.values())

    @property
    def failed(self) -> List[str]:
        return [n for n, s in self.states.items() if s == ServiceState.FAILED]

    @property
    def waiting(self) -> List[str]:
        return [n for n, s in self.states.items() if s == ServiceState.WAITING]

    @property
    def running(self) -> List[str]:
        return [n for n, s in self.states.items() if s == ServiceState.RUNNING]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "project": self.project,
            "run_id": self.run_id,
            "ok": self.ok,
            "states": {n: s.value for n, s in self.states.items()},
            "launch_order": list(self.launch_order),
            "errors": dict(self.errors),
            "blocked": dict(self.blocked),
            "warnings": list(self.warnings),
            "endpoints": dict(self.endpoints),
            "cancelled": self.cancelled,
        }


class TopologyManager:
    """Brings a manifest's services up against an engine."""

    def __init__(self, manifest: Manifest, engine: Engine, run_id: Optional[str] = None,
                 max_workers: int = 4, extra_labels: Optional[Dict[str, str]] = None):
        self.manifest = manifest
        self.engine = engine
        self.run_id = run_id
        self.max_workers = max(1, max_workers)
        self.extra_labels = extra_labels or {}
        self.builder = Builder(engine, run_id=run_id)
        self.status: Dict[str, ServiceStatus] = {
            name: ServiceStatus(name=name) for name in manifest.services
        }
        self.launch_order: List[str] = []
        self._lock = threading.Lock()
        self._cancel = threading.Event()

    def _emit(self, event_type: str, data: Dict[str, Any]) -> None:
        if self.run_id:
            emit_event(self.run_id, event_type, data)

    # State machine

    def state(self, name: str) -> ServiceState:
        return self.status[name].state

    def _transition(self, name: str, new_state: ServiceState, **data: Any) -> None:
        with self._lock:
            status = self.status[name]
            if new_state not in TRANSITIONS[status.state]:
                raise StateError(f"Service '{name}': illegal transition {status.state.value} -> {new_state.value}")
            status.state = new_state
            status.history.append((new_state.value, time.monotonic()))
        logger.info(f"{name}: {new_state.value}")
        self._emit(EventTypes.SERVICE_STATE, {"service": name, "state": new_state.value, **data})

    def _fail(self, name: str, error: StackupError) -> None:
        self.status[name].error = error
        self._transition(name, ServiceState.FAILED, reason=error.code)
        self._emit(EventTypes.SERVICE_FAILED, {"service": name, **error.to_dict()})
        logger.error(f"{name} failed: {error.message}")

    def cancel(self) -> None:
        """Stop launching further services; started ones keep running."""
        self._cancel.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    # Planning

    def plan(self) -> List[List[str]]:
        """
        Start batches for the manifest.

        Raises:
            CycleError: If depends_on has a cycle
            ManifestError: On undeclared dependencies
        """
        return plan_batches(self.manifest)

    # Bring-up

    def up(self, build: bool = True) -> BringUpResult:
        """
        Build and start every service.

        Args:
            build: Build services that declare ``build`` (otherwise their
                image must already exist)

        Raises:
            ManifestError: If the manifest is invalid; nothing is started
        """
        batches = self.plan()
        report = validate_manifest(self.manifest)
        report.raise_for_errors()
        for warning in report.warnings:
            logger.warning(warning)

        self._emit(EventTypes.PLAN, {"batches": batches, "warnings": report.warnings})

        try:
            self.engine.create_network(self.manifest.network_name, self._labels())
            self._emit(EventTypes.NETWORK_CREATED, {"network": self.manifest.network_name})

            for name in [n for batch in batches for n in batch]:
                if self.cancelled:
                    break
                self._prepare_image(name, build)

            for batch in batches:
                if self.cancelled:
                    break
                self._start_batch(batch)
        except KeyboardInterrupt:
            self.cancel()

        result = self._result(report.warnings)
        if result.cancelled:
            self._emit(EventTypes.CANCELLED, {"running": result.running, "waiting": result.waiting})
        else:
            self._emit(EventTypes.DONE, {
                "running": result.running,
                "failed": result.failed,
                "waiting": result.waiting,
            })
        if self.run_id:
            write_outputs_json(self.run_id, result.to_dict())
        return result

    def _prepare_image(self, name: str, build: bool) -> None:
        svc = self.manifest.service(name)
        if svc.build is not None and build:
            self._transition(name, ServiceState.BUILDING)
            try:
                image = self.builder.build_service(self.manifest, svc)
            except StackupError as e:
                self._fail(name, e)
                return
            except Exception as e:
                logger.exception(f"Unexpected error building {name}")
                self._fail(name, BuildError(f"Build of {name} failed: {e}", service=name))
                return
            self.status[name].image_digest = image.digest
        self._transition(name, ServiceState.WAITING)

    def _start_batch(self, batch: List[str]) -> None:
        eligible = []
        for name in batch:
            if self.state(name) != ServiceState.WAITING:
                continue
            blocked = [d for d in self.manifest.service(name).depends_on if self.state(d) not in LAUNCHED]
            if blocked:
                self.status[name].blocked_by = blocked
                logger.warning(f"{name} stays waiting on {', '.join(blocked)}")
                continue
            eligible.append(name)

        if not eligible:
            return

        with ThreadPoolExecutor(max_workers=min(len(eligible), self.max_workers)) as pool:
            futures = {pool.submit(self._start_service, name): name for name in eligible}
            for future in as_completed(futures):
                future.result()

    def _start_service(self, name: str) -> None:
        svc = self.manifest.service(name)
        self._transition(name, ServiceState.STARTING)
        try:
            image_ref = svc.image_ref(self.manifest.project)
            if self.status[name].image_digest is None:
                self.engine.ensure_image(image_ref)

            mounts = []
            for mount in svc.volumes:
                if mount.is_bind:
                    mounts.append(mount)
                    continue
                mounts.append(VolumeMount(
                    source=self._attach_volume(mount.source),
                    target=mount.target,
                    read_only=mount.read_only,
                ))

            container_name = self.manifest.container_name(name)
            if self.engine.remove_container(container_name):
                logger.info(f"Recreating {container_name}")

            container = self.engine.start_container(ContainerSpec(
                name=container_name,
                service=name,
                image=image_ref,
                network=self.manifest.network_name,
                aliases=[name],
                ports=list(svc.ports),
                mounts=mounts,
                environment=dict(svc.environment),
                labels=self._labels(name),
                command=svc.command,
            ))
        except StackupError as e:
            self._fail(name, e)
            return
        except Exception as e:
            logger.exception(f"Unexpected error starting {name}")
            self._fail(name, StartError(f"Start of {name} failed: {e}", service=name))
            return

        with self._lock:
            self.launch_order.append(name)
            self.status[name].container = container
        self._transition(name, ServiceState.RUNNING, container=container.name)

    def _attach_volume(self, key: str) -> str:
        volume = self.manifest.volumes.get(key)
        engine_name = self.manifest.volume_name(key)
        if volume is not None and volume.external:
            if not self.engine.volume_exists(engine_name):
                raise VolumeMountError(f"External volume '{engine_name}' does not exist")
            return engine_name
        if self.engine.create_volume(engine_name, self._labels()):
            self._emit(EventTypes.VOLUME_CREATED, {"volume": engine_name})
        return engine_name

    def _labels(self, service: Optional[str] = None) -> Dict[str, str]:
        labels = base_labels(self.manifest.project, service or "", self.run_id, self.extra_labels)
        if service is None:
            labels.pop("stackup.service", None)
        return labels

    def _result(self, warnings: List[str]) -> BringUpResult:
        states = {name: status.state for name, status in self.status.items()}
        errors = {name: status.error.to_dict() for name, status in self.status.items() if status.error}
        blocked = {name: list(status.blocked_by) for name, status in self.status.items()
                   if status.state == ServiceState.WAITING and status.blocked_by}
        endpoints = {}
        for name, status in self.status.items():
            if status.state == ServiceState.RUNNING:
                published = [f"localhost:{p.host_port}" for p in self.manifest.service(name).ports if p.published]
                if published:
                    endpoints[name] = published
        return BringUpResult(
            project=self.manifest.project,
            run_id=self.run_id,
            states=states,
            launch_order=list(self.launch_order),
            errors=errors,
            blocked=blocked,
            warnings=list(warnings),
            endpoints=endpoints,
            cancelled=self.cancelled,
        )

    # Teardown

    def down(self, remove_volumes: bool = False) -> Dict[str, Any]:
        """
        Remove the project's containers in reverse start order.

        Named volumes survive unless ``remove_volumes`` is set.
        """
        self._emit(EventTypes.DOWN_START, {"remove_volumes": remove_volumes})
        try:
            order = start_order(self.manifest)
        except StackupError:
            order = sorted(self.manifest.services)

        removed = []
        for name in reversed(order):
            container_name = self.manifest.container_name(name)
            if self.engine.remove_container(container_name):
                removed.append(container_name)
                logger.info(f"Removed {container_name}")

        volumes_removed = []
        if remove_volumes:
            for key, volume in self.manifest.volumes.items():
                if volume.external:
                    continue
                engine_name = self.manifest.volume_name(key)
                if self.engine.volume_exists(engine_name):
                    self.remove_volume(key)
                    volumes_removed.append(engine_name)

        self._emit(EventTypes.DOWN_DONE, {"removed": removed, "volumes_removed": volumes_removed})
        return {"removed": removed, "volumes_removed": volumes_removed}

    def remove_volume(self, key: str) -> str:
        """Explicitly destroy a declared volume and its data."""
        engine_name = self.manifest.volume_name(key)
        self.engine.remove_volume(engine_name)
        self._emit(EventTypes.VOLUME_REMOVED, {"volume": engine_name})
        logger.info(f"Removed volume {engine_name}")
        return engine_name
