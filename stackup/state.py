"""
State management for bring-up runs.
"""

import json
import os
from pathlib import Path
from typing import Dict, Any, Optional
from datetime import datetime

from .ids import is_valid_run_id


def get_stackup_home() -> Path:
    """
    Get the Stackup home directory.

    Returns:
        Path: Stackup home directory
    """
    stackup_home = os.environ.get("STACKUP_HOME", ".stackup")
    return Path(stackup_home).resolve()


def get_engine_name() -> str:
    """Engine selected through STACKUP_ENGINE ("docker" or "local")."""
    return os.environ.get("STACKUP_ENGINE", "docker").strip().lower() or "docker"


def get_docker_bin() -> str:
    """Docker CLI binary, overridable through STACKUP_DOCKER_BIN."""
    return os.environ.get("STACKUP_DOCKER_BIN", "docker")


def get_log_level() -> str:
    return os.environ.get("STACKUP_LOG_LEVEL", "WARNING").upper()


def get_run_dir(run_id: str) -> Path:
    """
    Get the directory for a specific run.

    Args:
        run_id: Run ID

    Returns:
        Path: Run directory

    Raises:
        ValueError: If run ID is invalid
    """
    if not is_valid_run_id(run_id):
        raise ValueError(f"Invalid run ID: {run_id}")

    return get_stackup_home() / run_id


def create_run_dir(run_id: str) -> Path:
    """
    Create run directory and return its path.

    Args:
        run_id: Run ID

    Returns:
        Path: Created run directory
    """
    run_dir = get_run_dir(run_id)
    run_dir.mkdir(parents=True, exist_ok=True)
    return run_dir


def write_run_json(run_id: str, manifest_path: str, project: str, engine: str) -> None:
    """
    Write run metadata to run.json.

    Args:
        run_id: Run ID
        manifest_path: Path of the manifest that was brought up
        project: Project name
        engine: Engine name used for the run
    """
    run_dir = get_run_dir(run_id)
    run_data = {
        "manifest": manifest_path,
        "project": project,
        "engine": engine,
        "created_at": datetime.now().isoformat()
    }

    with open(run_dir / "run.json", "w") as f:
        json.dump(run_data, f, indent=2)


def read_run_json(run_id: str) -> Dict[str, Any]:
    """
    Read run metadata from run.json.

    Raises:
        FileNotFoundError: If run.json doesn't exist
    """
    run_file = get_run_dir(run_id) / "run.json"

    if not run_file.exists():
        raise FileNotFoundError(f"Run {run_id} not found")

    with open(run_file, "r") as f:
        return json.load(f)


def write_outputs_json(run_id: str, outputs: Dict[str, Any]) -> None:
    """Write final service states and endpoints to outputs.json."""
    run_dir = get_run_dir(run_id)

    with open(run_dir / "outputs.json", "w") as f:
        json.dump(outputs, f, indent=2)


def read_outputs_json(run_id: str) -> Optional[Dict[str, Any]]:
    """
    Read outputs.json.

    Returns:
        Dict: Run outputs or None if not found
    """
    outputs_file = get_run_dir(run_id) / "outputs.json"

    if not outputs_file.exists():
        return None

    with open(outputs_file, "r") as f:
        return json.load(f)


def list_runs() -> list[str]:
    """
    List all run IDs, most recent first.
    """
    stackup_home = get_stackup_home()

    if not stackup_home.exists():
        return []

    runs = []
    for item in stackup_home.iterdir():
        if item.is_dir() and is_valid_run_id(item.name):
            runs.append(item.name)

    return sorted(runs, reverse=True)


def run_exists(run_id: str) -> bool:
    run_dir = get_run_dir(run_id)
    return run_dir.exists() and (run_dir / "run.json").exists()
