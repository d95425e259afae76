"""
Event logging utilities for NDJSON format.
"""

import json
import time
from datetime import datetime
from typing import Any, Dict

from .state import get_run_dir


def emit_event(run_id: str, event_type: str, data: Dict[str, Any]) -> None:
    """
    Emit an event to the run's logs.ndjson file.

    Args:
        run_id: Run ID
        event_type: Event type (e.g., "INIT", "BUILD_STAGE", "ERROR")
        data: Event data
    """
    logs_file = get_run_dir(run_id) / "logs.ndjson"

    event = {
        "ts": datetime.now().isoformat(),
        "type": event_type,
        "data": data
    }

    with open(logs_file, "a") as f:
        f.write(json.dumps(event) + "\n")
        f.flush()


def read_events(run_id: str) -> list[Dict[str, Any]]:
    """
    Read all events from a run's logs.ndjson file.
    """
    logs_file = get_run_dir(run_id) / "logs.ndjson"

    if not logs_file.exists():
        return []

    events = []
    with open(logs_file, "r") as f:
        for line in f:
            line = line.strip()
            if line:
                try:
                    events.append(json.loads(line))
                except json.JSONDecodeError:
                    continue  # Skip malformed lines

    return events


def service_states(events: list[Dict[str, Any]]) -> Dict[str, str]:
    """
    Replay SERVICE_STATE events into the latest state per service.
    """
    states: Dict[str, str] = {}
    for event in events:
        if event.get("type") == EventTypes.SERVICE_STATE:
            data = event.get("data", {})
            if "service" in data and "state" in data:
                states[data["service"]] = data["state"]
    return states


def tail_events(run_id: str, follow: bool = False, poll_interval: float = 0.1):
    """
    Generator that yields events as they're written.

    Args:
        run_id: Run ID
        follow: If True, keep watching for new events

    Yields:
        Event dictionaries
    """
    logs_file = get_run_dir(run_id) / "logs.ndjson"

    if not logs_file.exists():
        return

    with open(logs_file, "r") as f:
        for line in f:
            line = line.strip()
            if line:
                try:
                    yield json.loads(line)
                except json.JSONDecodeError:
                    continue

    if not follow:
        return

    last_size = logs_file.stat().st_size

    while True:
        try:
            current_size = logs_file.stat().st_size
            if current_size > last_size:
                with open(logs_file, "r") as f:
                    f.seek(last_size)
                    for line in f:
                        line = line.strip()
                        if line:
                            try:
                                yield json.loads(line)
                            except json.JSONDecodeError:
                                continue
                last_size = current_size
            time.sleep(poll_interval)
        except (FileNotFoundError, KeyboardInterrupt):
            break


class EventTypes:
    INIT = "INIT"
    PLAN = "PLAN"
    NETWORK_CREATED = "NETWORK_CREATED"
    # Builder
    BUILD_START = "BUILD_START"
    BUILD_STAGE = "BUILD_STAGE"
    BUILD_LINE = "BUILD_LINE"
    BUILD_DONE = "BUILD_DONE"
    BUILD_FAILED = "BUILD_FAILED"
    # Topology
    VOLUME_CREATED = "VOLUME_CREATED"
    SERVICE_STATE = "SERVICE_STATE"
    SERVICE_FAILED = "SERVICE_FAILED"
    # Smoke checks
    SMOKE_OK = "SMOKE_OK"
    SMOKE_FAIL = "SMOKE_FAIL"
    DONE = "DONE"
    ERROR = "ERROR"
    CANCELLED = "CANCELLED"
    # Teardown
    DOWN_START = "DOWN_START"
    DOWN_DONE = "DOWN_DONE"
    VOLUME_REMOVED = "VOLUME_REMOVED"
