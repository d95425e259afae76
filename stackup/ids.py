"""
Run ID generation utilities.
"""

import random
import string
from datetime import datetime


def new_run_id() -> str:
    """
    Generate a new run ID in format: r-YYYYMMDD-hhmmss-XXXX

    Returns:
        str: Unique run ID
    """
    now = datetime.now()
    date_str = now.strftime("%Y%m%d")
    time_str = now.strftime("%H%M%S")

    random_suffix = ''.join(random.choices(string.ascii_lowercase + string.digits, k=4))

    return f"r-{date_str}-{time_str}-{random_suffix}"


def is_valid_run_id(run_id: str) -> bool:
    """
    Validate run ID format.

    Args:
        run_id: ID to validate

    Returns:
        bool: True if valid format
    """
    if not run_id.startswith("r-"):
        return False

    parts = run_id.split("-")
    if len(parts) != 4:
        return False

    # YYYYMMDD
    if len(parts[1]) != 8 or not parts[1].isdigit():
        return False

    # HHMMSS
    if len(parts[2]) != 6 or not parts[2].isdigit():
        return False

    if len(parts[3]) != 4 or not parts[3].isalnum():
        return False

    return True
