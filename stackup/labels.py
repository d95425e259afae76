"""
Container labelling utilities so runs can find their own containers again.
"""

from datetime import datetime, timezone
from typing import Dict, Optional

LABEL_PREFIX = "stackup"


def base_labels(project: str, service: str, run_id: Optional[str] = None,
                extra: Optional[Dict[str, str]] = None) -> Dict[str, str]:
    """
    Generate base labels for a service container.

    Args:
        project: Project name
        service: Service name
        run_id: Run that started the container
        extra: Additional labels to include

    Returns:
        Dictionary of labels to apply to the container
    """
    labels = {
        f"{LABEL_PREFIX}.project": project,
        f"{LABEL_PREFIX}.service": service,
        f"{LABEL_PREFIX}.created_at": datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ"),
    }
    if run_id:
        labels[f"{LABEL_PREFIX}.run_id"] = run_id

    if extra:
        labels.update(extra)

    return labels


def parse_user_labels(label_strings: list[str]) -> Dict[str, str]:
    """
    Parse user-provided label strings in format "key=value".

    Raises:
        ValueError: If label string format is invalid
    """
    labels = {}

    for label_str in label_strings:
        if "=" not in label_str:
            raise ValueError(f"Invalid label format: {label_str}. Expected 'key=value'")

        key, value = label_str.split("=", 1)
        if not key.strip() or not value.strip():
            raise ValueError(f"Invalid label format: {label_str}. Key and value must not be empty")

        labels[key.strip()] = value.strip()

    return labels


def project_filter(project: str) -> str:
    """Label filter expression selecting every container of a project."""
    return f"label={LABEL_PREFIX}.project={project}"
