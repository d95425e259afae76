"""
Smoke checks run against a topology after it launches.

Launch order does not imply readiness, so these checks retry for a while
before declaring a service unreachable.
"""

import logging
import socket
import time
from typing import Any, Dict, List, Optional

import requests

logger = logging.getLogger(__name__)


class SmokeTestResult:
    """Result of a smoke test."""

    def __init__(self, success: bool, message: str, details: Dict[str, Any] = None):
        self.success = success
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        return {"success": self.success, "message": self.message, "details": self.details}


def wait_for_port(host: str, port: int, timeout: float = 30.0, interval: float = 0.5) -> bool:
    """
    Poll until a TCP port accepts connections.

    Returns:
        True if the port accepted a connection before ``timeout`` elapsed
    """
    deadline = time.monotonic() + timeout
    while True:
        try:
            with socket.create_connection((host, port), timeout=interval):
                return True
        except OSError:
            if time.monotonic() >= deadline:
                return False
            time.sleep(interval)


def run_smoke_test(base_url: str, smoke_checks: List[Dict], max_retries: int = 12,
                   retry_delay: float = 2) -> SmokeTestResult:
    """
    Run HTTP smoke checks against a published service.

    Each check is a dict with ``path`` (default "/"), ``expect`` (status code
    or list of codes, default 200), optional ``contains`` and optional
    ``max_tries``.

    Args:
        base_url: Base URL of the service, e.g. http://localhost:8080
        smoke_checks: Checks to run
        max_retries: Attempts per check unless the check overrides it
        retry_delay: Seconds between attempts

    Returns:
        SmokeTestResult with success status and details
    """
    logger.info(f"Starting smoke tests for {base_url}")

    if not smoke_checks:
        return SmokeTestResult(True, "No smoke checks configured")

    base_url = base_url.rstrip('/')

    failed_checks = []
    successful_checks = []

    for check in smoke_checks:
        path = check.get("path", "/")
        expected_status = check.get("expect", 200)
        expected_content = check.get("contains")
        max_tries = max(1, check.get("max_tries", max_retries))

        if isinstance(expected_status, int):
            expected_status = [expected_status]

        success = False
        last_error = None
        status_code = None

        for attempt in range(max_tries):
            try:
                response = requests.get(f"{base_url}{path}", timeout=10)
                status_code = response.status_code

                if status_code not in expected_status:
                    last_error = f"Expected status {expected_status}, got {status_code}"
                elif expected_content and expected_content not in response.text:
                    last_error = f"Expected content '{expected_content}' not found in response"
                else:
                    success = True
                    break

            except requests.exceptions.RequestException as e:
                last_error = f"Request failed: {str(e)}"

            if attempt < max_tries - 1:
                logger.debug(f"Attempt {attempt + 1} failed, retrying in {retry_delay}s...")
                time.sleep(retry_delay)

        if success:
            successful_checks.append({
                "path": path,
                "status": status_code,
                "content_check": expected_content is not None
            })
            logger.info(f"{path} passed")
        else:
            failed_checks.append({
                "path": path,
                "expected_status": expected_status,
                "expected_content": expected_content,
                "error": last_error,
                "attempts": max_tries
            })
            logger.error(f"{path} failed: {last_error}")

    details = {
        "successful_checks": successful_checks,
        "failed_checks": failed_checks,
        "total_checks": len(smoke_checks)
    }
    if failed_checks:
        return SmokeTestResult(
            success=False,
            message=f"Smoke tests failed: {len(failed_checks)}/{len(smoke_checks)} checks failed",
            details=details
        )
    return SmokeTestResult(
        success=True,
        message=f"All smoke tests passed: {len(successful_checks)}/{len(smoke_checks)} checks successful",
        details=details
    )


def smoke_url(host_port: int, host: Optional[str] = None) -> str:
    return f"http://{host or 'localhost'}:{host_port}"
