"""
Failure detection and classification for engine output.
"""

import re
from typing import List, Optional
from dataclasses import dataclass
from enum import Enum


class Severity(Enum):
    """Failure severity levels."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


@dataclass
class FailureRule:
    """A rule for detecting specific failure patterns."""
    id: str
    name: str
    regexes: List[str]
    message: str
    hint: str
    severity: Severity
    phase: str = "any"  # "build" | "start" | "any"


class FailureClassifier:
    """Classifies build and start failures from engine output using regex patterns."""

    def __init__(self):
        self.rules = self._load_default_rules()

    def _load_default_rules(self) -> List[FailureRule]:
        """Load default failure detection rules."""
        return [
            FailureRule(
                id="daemon_unreachable",
                name="Engine Unreachable",
                regexes=[
                    r'Cannot connect to the Docker daemon',
                    r'error during connect',
                    r'docker: command not found',
                    r'No such file or directory: .docker.'
                ],
                message="Container engine is not reachable",
                hint="Start the Docker daemon or set STACKUP_ENGINE=local",
                severity=Severity.CRITICAL
            ),

            # Build-time
            FailureRule(
                id="missing_stage",
                name="Unknown Build Stage",
                regexes=[
                    r'copies from unknown stage',
                    r'invalid from flag value',
                    r'failed to resolve source metadata for .*(builder|stage)',
                    r'target stage .* could not be found'
                ],
                message="A COPY --from references a stage that does not exist",
                hint="COPY --from must name an earlier FROM ... AS <stage>",
                severity=Severity.HIGH,
                phase="build"
            ),

            FailureRule(
                id="copy_path_not_found",
                name="Copy Source Missing",
                regexes=[
                    r'failed to compute cache key: .*not found',
                    r'COPY .*not found',
                    r'COPY failed: .*no such file or directory'
                ],
                message="A COPY source path does not exist",
                hint="Check the artifact path produced by the earlier stage or the build context",
                severity=Severity.HIGH,
                phase="build"
            ),

            FailureRule(
                id="base_image_not_found",
                name="Base Image Unavailable",
                regexes=[
                    r'pull access denied',
                    r'manifest unknown',
                    r'manifest for .* not found',
                    r'repository does not exist',
                    r'failed to resolve source metadata'
                ],
                message="Image could not be resolved",
                hint="Check the image reference and registry credentials",
                severity=Severity.HIGH
            ),

            FailureRule(
                id="registry_unreachable",
                name="Registry Unreachable",
                regexes=[
                    r'dial tcp: lookup .* no such host',
                    r'TLS handshake timeout',
                    r'i/o timeout',
                    r'failed to fetch .*(index|registry|crates)',
                    r'failed to download from .*crates'
                ],
                message="A registry needed by the build is unreachable",
                hint="Check network access to the image and package registries",
                severity=Severity.HIGH,
                phase="build"
            ),

            FailureRule(
                id="compile_error",
                name="Compile Failed",
                regexes=[
                    r'error\[E\d+\]',
                    r'could not compile',
                    r'no targets specified',
                    r'could not find `Cargo.toml`',
                    r'go\.mod file not found',
                    r'no Go files in'
                ],
                message="The build command failed to compile the artifact",
                hint="Fix the compile error; no image was produced",
                severity=Severity.HIGH,
                phase="build"
            ),

            FailureRule(
                id="command_not_found",
                name="Build Tool Missing",
                regexes=[
                    r'/bin/sh: \d+: .*: not found',
                    r'executable file not found in \$PATH'
                ],
                message="A build command is not available in the stage's base image",
                hint="Use a toolchain base image for the compile stage",
                severity=Severity.HIGH,
                phase="build"
            ),

            # Start-time
            FailureRule(
                id="address_in_use",
                name="Port Conflict",
                regexes=[
                    r'port is already allocated',
                    r'address already in use',
                    r'Host port \d+ is already in use',
                    r'Bind for .* failed'
                ],
                message="Port already in use",
                hint="Free the host port or change the published port mapping",
                severity=Severity.HIGH,
                phase="start"
            ),

            FailureRule(
                id="name_conflict",
                name="Container Name Conflict",
                regexes=[
                    r'container name .* is already in use',
                    r'Conflict\. The container name'
                ],
                message="A container with the same name already exists",
                hint="Run `stackup down` or remove the stale container",
                severity=Severity.MEDIUM,
                phase="start"
            ),

            FailureRule(
                id="volume_mount_failed",
                name="Volume Mount Failed",
                regexes=[
                    r'error while mounting volume',
                    r'invalid mount config',
                    r'bind source path does not exist',
                    r'volume .* not found'
                ],
                message="Volume could not be attached",
                hint="Check the volume declaration and host path",
                severity=Severity.HIGH,
                phase="start"
            ),

            FailureRule(
                id="volume_in_use",
                name="Volume In Use",
                regexes=[
                    r'volume is in use'
                ],
                message="Volume is still mounted by a container",
                hint="Run `stackup down` before removing the volume",
                severity=Severity.LOW
            ),
        ]

    def classify_message(self, message: str, phase: str = "any") -> Optional[FailureRule]:
        """Classify a message and return the first matching failure rule."""
        for rule in self.rules:
            if phase != "any" and rule.phase not in ("any", phase):
                continue
            for regex_pattern in rule.regexes:
                try:
                    if re.search(regex_pattern, message, re.IGNORECASE):
                        return rule
                except re.error:
                    continue

        return None


def classify(output: str, phase: str = "any") -> Optional[FailureRule]:
    """One-shot classification of a whole output blob."""
    return FailureClassifier().classify_message(output, phase)
