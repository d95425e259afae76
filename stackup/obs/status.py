"""
Status derivation from run events.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from ..events import service_states


class RunStatus(Enum):
    """Run-level status states."""
    QUEUED = "queued"
    PLANNED = "planned"
    BUILDING = "building"
    STARTING = "starting"
    UP = "up"
    DEGRADED = "degraded"
    FAILED = "failed"
    CANCELLED = "cancelled"
    STOPPING = "stopping"
    DOWN = "down"


@dataclass
class StatusInfo:
    """Everything ``stackup status`` reports about a run."""
    status: RunStatus
    message: str
    services: Dict[str, str] = field(default_factory=dict)
    last_event: Optional[Dict[str, Any]] = None
    failure_reason: Optional[str] = None
    failure_hint: Optional[str] = None
    endpoints: Dict[str, List[str]] = field(default_factory=dict)
    timestamp: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "message": self.message,
            "services": dict(self.services),
            "failure_reason": self.failure_reason,
            "failure_hint": self.failure_hint,
            "endpoints": dict(self.endpoints),
            "timestamp": self.timestamp,
        }


EVENT_TO_STATUS = {
    "INIT": RunStatus.QUEUED,
    "PLAN": RunStatus.PLANNED,
    "NETWORK_CREATED": RunStatus.BUILDING,
    "BUILD_START": RunStatus.BUILDING,
    "BUILD_DONE": RunStatus.BUILDING,
    "VOLUME_CREATED": RunStatus.STARTING,
    "SERVICE_STATE": RunStatus.STARTING,
    "SMOKE_OK": RunStatus.UP,
    "SMOKE_FAIL": RunStatus.DEGRADED,
    "DONE": RunStatus.UP,
    "ERROR": RunStatus.FAILED,
    "CANCELLED": RunStatus.CANCELLED,
    "DOWN_START": RunStatus.STOPPING,
    "DOWN_DONE": RunStatus.DOWN,
}


class StatusDeriver:
    """Derives run and per-service status from events and outputs."""

    def derive_status(self, events: List[Dict[str, Any]],
                      outputs: Optional[Dict[str, Any]] = None) -> StatusInfo:
        if not events:
            return StatusInfo(status=RunStatus.QUEUED, message="No events found")

        last_event = events[-1]
        services = service_states(events)
        status = self._derive_from_events(events)

        failure = self._last_failure(events)
        if status == RunStatus.UP and (failure or any(s == "failed" for s in services.values())):
            status = RunStatus.DEGRADED
        if status == RunStatus.UP and any(s == "waiting" for s in services.values()):
            status = RunStatus.DEGRADED
        if status == RunStatus.UP and any(e.get("type") == "SMOKE_FAIL" for e in events):
            status = RunStatus.DEGRADED

        endpoints = {}
        if outputs:
            endpoints = dict(outputs.get("endpoints") or {})

        return StatusInfo(
            status=status,
            message=self._get_status_message(status, services),
            services=services,
            last_event=last_event,
            failure_reason=failure.get("code") if failure else None,
            failure_hint=failure.get("hint") if failure else None,
            endpoints=endpoints,
            timestamp=last_event.get("ts"),
        )

    def _derive_from_events(self, events: List[Dict[str, Any]]) -> RunStatus:
        for event in reversed(events):
            status = EVENT_TO_STATUS.get(event.get("type", ""))
            if status is not None:
                return status
        return RunStatus.QUEUED

    def _last_failure(self, events: List[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
        for event in reversed(events):
            if event.get("type") in ("SERVICE_FAILED", "BUILD_FAILED", "ERROR"):
                return event.get("data", {})
            if event.get("type") in ("PLAN", "DOWN_START"):
                break
        return None

    def _get_status_message(self, status: RunStatus, services: Dict[str, str]) -> str:
        messages = {
            RunStatus.QUEUED: "Run queued",
            RunStatus.PLANNED: "Start order planned",
            RunStatus.BUILDING: "Building images",
            RunStatus.STARTING: "Starting services",
            RunStatus.UP: "All services running",
            RunStatus.DEGRADED: "Some services are not running",
            RunStatus.FAILED: "Run failed",
            RunStatus.CANCELLED: "Run cancelled",
            RunStatus.STOPPING: "Stopping services",
            RunStatus.DOWN: "Topology removed",
        }
        message = messages[status]
        if services and status in (RunStatus.STARTING, RunStatus.DEGRADED):
            running = sum(1 for s in services.values() if s == "running")
            message += f" ({running}/{len(services)} running)"
        return message
